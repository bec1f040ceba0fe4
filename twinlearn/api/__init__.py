"""twinlearn API adapter package.

Architectural role:
- Defines the external interaction boundary for HTTP and CLI interfaces.
- Performs transport-level validation and response shaping.
- Delegates turns, feedback, and maintenance to `twinlearn.core.service.TwinService`.

Scope:
- Request lifecycle control for adapter concerns only.
- No ranking or completion logic is implemented in this package.
"""
