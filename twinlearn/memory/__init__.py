"""Memory subsystem package.

Architectural role:
    Groups the stateful short-term memory components:
    - `embedding_model`: shared in-process embedding model bootstrap.
    - `embedding_client`: async text-to-vector client over local or remote backends.
    - `conversation_store`: bounded, expiring conversation histories.
    - `interaction_cache`: scored responses awaiting feedback.
"""
