"""Core orchestration package.

Architectural role:
    Exposes the request-orchestration layer that sits between API/CLI entrypoints
    and the lower-level subsystems (conversation memory, embedding, completion,
    and per-user ranking models).

Composition:
    - `types`: Shared data records (messages, sessions, interactions, turn results).
    - `engine`: Candidate generation, embedding, ranking, and delivery of one turn.
    - `feedback`: Converts ratings into training steps on the owning user's model.
    - `service`: Facade wiring every component and running periodic maintenance.

Determinism and side effects:
    Package import itself is deterministic and side-effect free. Runtime side effects
    are performed by `engine`, `feedback`, and `service` during request processing.
"""
