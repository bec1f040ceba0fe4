"""LLM access package.

Architectural role:
    Provides provider configuration, request-payload construction, retry policy,
    and the async completion transport used by the orchestrator.

Module split:
    - `provider_config`: environment-driven provider and model configuration.
    - `service`: history-to-payload adapter.
    - `client`: provider-specific HTTP transport and response parsing.
    - `retry`: bounded retry/backoff policy shared with the embedding client.
"""
