import asyncio
import hashlib

import numpy as np
import pytest

from twinlearn.config import Settings
from twinlearn.core.service import TwinService
from twinlearn.errors import CompletionUnavailable, EmbeddingUnavailable
from twinlearn.learning.model_store import MemoryModelStore


DIM = 8


def text_vector(text: str, dim: int = DIM) -> np.ndarray:
    """Deterministic unit vector derived from the text."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    vector = np.random.default_rng(seed).standard_normal(dim).astype(np.float32)
    return vector / np.linalg.norm(vector)


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCompletion:
    """Completion backend answering `reply at <temperature>`."""

    provider = "fake"
    model = "fake-model"

    def __init__(self, fail_temperatures=(), fail_all=False, available=True, gate=None):
        self.fail_temperatures = set(fail_temperatures)
        self.fail_all = fail_all
        self.available = available
        self.gate = gate
        self.calls = []
        self.finished = 0

    async def generate(self, history, temperature):
        self.calls.append((temperature, list(history)))
        if self.gate is not None:
            await self.gate.wait()
        self.finished += 1
        if self.fail_all or temperature in self.fail_temperatures:
            raise CompletionUnavailable(f"fake completion down at t={temperature}")
        return f"reply at {temperature}"

    async def ping(self):
        return self.available


class FakeEmbedder:
    backend = "fake"

    def __init__(self, dim=DIM, fail_texts=(), fail_all=False, available=True):
        self.dim = dim
        self.fail_texts = set(fail_texts)
        self.fail_all = fail_all
        self.available = available
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        await asyncio.sleep(0)
        if self.fail_all or text in self.fail_texts:
            raise EmbeddingUnavailable(f"fake embedding down for {text!r}")
        return text_vector(text, self.dim)

    async def ping(self):
        return self.available


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        max_history=20,
        session_ttl=3600,
        embedding_dim=DIM,
        learning_rate=0.001,
        candidate_count=3,
        idle_model_eviction=1800,
        hidden_units=(16, 8),
        base_temperature=0.3,
        temperature_step=0.3,
        fallback_temperature=0.2,
        retry_attempts=1,
        backoff_seconds=0.0,
        sweep_interval=300,
        batch_epochs=10,
        batch_size=32,
        models_dir=str(tmp_path / "models"),
        training_log_dir=None,
    )


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def model_store():
    return MemoryModelStore()


@pytest.fixture
def service(settings, completion, embedder, model_store, clock):
    return TwinService(
        settings=settings,
        completion=completion,
        embedder=embedder,
        model_store=model_store,
        clock=clock,
    )
