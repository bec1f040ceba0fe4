"""twinlearn: conversational context retention with a per-user learned reranker.

Package layout:
    - `config`: environment-driven `Settings`.
    - `errors`: shared error taxonomy.
    - `llm`: completion transport, payload construction, retry policy.
    - `memory`: embedding client, conversation store, interaction cache.
    - `learning`: ranking model, model store, registry, per-key locks.
    - `core`: turn orchestration, feedback ingestion, service facade.
    - `api`: HTTP and CLI adapters.
"""

__version__ = "0.1.0"
