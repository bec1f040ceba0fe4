"""Runtime configuration for the context-retention and reranking subsystem.

Architectural role:
    Centralizes the tunables shared by the conversation store, the ranking models,
    the model registry, and the response orchestrator. Provider endpoints and
    credentials live separately in `twinlearn.llm.provider_config`.

Resolution:
    Field defaults are read from environment variables at import time, after
    `load_dotenv()` has merged a local `.env` file. Tests and embedding callers
    construct `Settings(...)` with explicit values instead.

Relevant environment variables:
    - `MAX_CONVERSATION_LENGTH`
    - `CONVERSATION_TTL_SECONDS`
    - `EMBEDDING_DIM`
    - `LEARNING_RATE`
    - `CANDIDATE_COUNT`
    - `IDLE_MODEL_EVICTION_SECONDS`
    - `RANKER_HIDDEN_UNITS` (comma separated, e.g. `128,64`)
    - `BASE_TEMPERATURE`, `TEMPERATURE_STEP`, `FALLBACK_TEMPERATURE`
    - `COMPLETION_TIMEOUT_SECONDS`, `EMBEDDING_TIMEOUT_SECONDS`
    - `RETRY_ATTEMPTS`, `RETRY_BACKOFF_SECONDS`
    - `SWEEP_INTERVAL_SECONDS`
    - `BATCH_EPOCHS`, `BATCH_SIZE`
    - `MODELS_DIR`, `TRAINING_LOG_DIR`
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_units(name: str, default: str) -> tuple[int, ...]:
    """Parse a comma-separated list of positive layer widths."""
    raw = os.getenv(name, default)
    return tuple(int(part) for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Immutable subsystem configuration.

    Durations are expressed in seconds. `training_log_dir=None` disables the
    append-only feedback log.
    """

    max_history: int = int(os.getenv("MAX_CONVERSATION_LENGTH", "20"))
    session_ttl: float = float(os.getenv("CONVERSATION_TTL_SECONDS", "3600"))
    embedding_dim: int = int(os.getenv("EMBEDDING_DIM", "384"))
    learning_rate: float = float(os.getenv("LEARNING_RATE", "0.001"))
    candidate_count: int = int(os.getenv("CANDIDATE_COUNT", "3"))
    idle_model_eviction: float = float(os.getenv("IDLE_MODEL_EVICTION_SECONDS", "1800"))
    hidden_units: tuple[int, ...] = _env_units("RANKER_HIDDEN_UNITS", "128,64")

    base_temperature: float = float(os.getenv("BASE_TEMPERATURE", "0.3"))
    temperature_step: float = float(os.getenv("TEMPERATURE_STEP", "0.3"))
    fallback_temperature: float = float(os.getenv("FALLBACK_TEMPERATURE", "0.2"))

    completion_timeout: float = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "60"))
    embedding_timeout: float = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30"))
    retry_attempts: int = int(os.getenv("RETRY_ATTEMPTS", "3"))
    backoff_seconds: float = float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5"))

    sweep_interval: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
    batch_epochs: int = int(os.getenv("BATCH_EPOCHS", "10"))
    batch_size: int = int(os.getenv("BATCH_SIZE", "32"))

    models_dir: str = os.getenv("MODELS_DIR", "./models/twin-ranker")
    training_log_dir: str | None = os.getenv("TRAINING_LOG_DIR") or None

    def __post_init__(self) -> None:
        if self.max_history < 1:
            raise ValueError("max_history must be >= 1")
        if self.session_ttl <= 0:
            raise ValueError("session_ttl must be positive")
        if self.embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.candidate_count < 1:
            raise ValueError("candidate_count must be >= 1")
        if not self.hidden_units or any(units < 1 for units in self.hidden_units):
            raise ValueError("hidden_units must contain positive layer widths")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if self.batch_epochs < 1 or self.batch_size < 1:
            raise ValueError("batch_epochs and batch_size must be >= 1")

    @property
    def temperatures(self) -> list[float]:
        """Sampling temperatures for candidate generation, lowest first."""
        return [
            round(self.base_temperature + i * self.temperature_step, 4)
            for i in range(self.candidate_count)
        ]
