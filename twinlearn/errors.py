"""Error taxonomy shared across the subsystem.

- `InvalidInputError`: caller fault (empty ids, non-finite vectors, wrong
  dimensions). Raised immediately, never retried.
- `UpstreamUnavailable`: completion or embedding service unreachable. Retried by
  `RetryPolicy`, then degraded by the orchestrator; never surfaced by `turn`.
- `PersistenceUnavailable`: model store unreachable. Training continues in
  memory; the registry logs a warning and retries on the next persist.

Stale feedback (unknown response id) is not an error and has no exception type.
"""


class TwinError(Exception):
    """Base class for all subsystem errors."""


class InvalidInputError(TwinError, ValueError):
    """Input rejected before any state was touched."""


class UpstreamUnavailable(TwinError):
    """An external text-generation or embedding call failed."""


class CompletionUnavailable(UpstreamUnavailable):
    """The completion service failed (network, timeout, bad payload)."""


class EmbeddingUnavailable(UpstreamUnavailable):
    """The embedding service failed (network, timeout, bad vector)."""


class PersistenceUnavailable(TwinError):
    """Durable model storage could not be read or written."""
