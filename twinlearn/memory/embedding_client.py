"""Embedding client turning text into fixed-dimension vectors.

Architectural role:
    Narrow wrapper over the embedding service used by the orchestrator (candidate
    and prompt vectors) and the service facade (batch training texts).

Backends:
    - `local`: shared `SentenceTransformer` from `embedding_model`, executed in a
      worker thread via `asyncio.to_thread` so the event loop never blocks.
    - `ollama`: `POST /api/embeddings` with `{"model", "prompt"}`.
    - `openai`: `POST /v1/embeddings` with `{"model", "input"}`.

Output contract:
    A read-only, 1-D `float32` numpy array of length `dim`. Vectors of the wrong
    length or with non-finite values are treated as an upstream failure.

Failure handling model:
    Every failure surfaces as `EmbeddingUnavailable` after the retry policy is
    exhausted. Empty input text raises `InvalidInputError` immediately.
"""

import asyncio
import logging
from typing import Callable, Sequence

import httpx
import numpy as np

from twinlearn.errors import EmbeddingUnavailable, InvalidInputError
from twinlearn.llm.provider_config import (
    EMBED_MODEL,
    EMBEDDING_BACKEND,
    EMBEDDING_PROVIDERS,
    load_key,
)
from twinlearn.llm.retry import RetryPolicy


logger = logging.getLogger(__name__)


def as_embedding(values, dim: int) -> np.ndarray:
    """Coerce raw values into an immutable `float32` vector of length `dim`.

    Raises:
        EmbeddingUnavailable: On wrong shape, wrong length, or non-finite values.
    """
    try:
        vector = np.asarray(values, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise EmbeddingUnavailable("embedding is not numeric") from exc

    if vector.shape[0] != dim:
        raise EmbeddingUnavailable(
            f"embedding has dimension {vector.shape[0]}, expected {dim}"
        )
    if not np.all(np.isfinite(vector)):
        raise EmbeddingUnavailable("embedding contains non-finite values")

    vector = vector.copy()
    vector.setflags(write=False)
    return vector


class EmbeddingClient:
    """Async text-to-vector client.

    Args:
        backend: `local`, `ollama`, or `openai`.
        dim: Expected embedding dimension.
        model: Embedding model name.
        url: Endpoint override for remote backends.
        api_key: Key override for remote backends.
        timeout: HTTP timeout per request in seconds.
        retry_policy: Retry/backoff schedule applied to every `embed` call.
        transport: Optional httpx transport, used by tests.
        encoder: Optional synchronous `text -> vector` callable replacing the
            shared sentence-transformers model for the `local` backend.
    """

    def __init__(
        self,
        backend: str = EMBEDDING_BACKEND,
        dim: int = 384,
        model: str = EMBED_MODEL,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        encoder: Callable[[str], Sequence[float]] | None = None,
    ) -> None:
        if backend != "local" and backend not in EMBEDDING_PROVIDERS and url is None:
            raise ValueError(f"Unknown embedding backend: {backend!r}")

        config = EMBEDDING_PROVIDERS.get(backend, {"url": url, "key_file": None})
        self.backend = backend
        self.dim = dim
        self.model = model
        self.url = url or config["url"]
        self.api_key = api_key if api_key is not None else load_key(config["key_file"])
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._encoder = encoder

    async def embed(self, text: str) -> np.ndarray:
        """Embed one text.

        Raises:
            InvalidInputError: For empty text.
            EmbeddingUnavailable: When every retry attempt failed.
        """
        if not text or not str(text).strip():
            raise InvalidInputError("cannot embed empty text")

        return await self.retry_policy.run(
            lambda: self._embed_once(str(text)),
            label=f"embedding[{self.backend}]",
            timeout_error=EmbeddingUnavailable,
        )

    async def ping(self) -> bool:
        """Return whether one unretried embedding call succeeds."""
        try:
            await self._embed_once("ping")
            return True
        except EmbeddingUnavailable:
            logger.warning("Embedding backend %s unreachable", self.backend)
            return False

    async def _embed_once(self, text: str) -> np.ndarray:
        if self.backend == "local":
            values = await asyncio.to_thread(self._encode_local, text)
        else:
            values = await self._request(text)
        return as_embedding(values, self.dim)

    def _encode_local(self, text: str):
        """Run the in-process encoder; called from a worker thread."""
        try:
            if self._encoder is not None:
                return self._encoder(text)

            from twinlearn.memory.embedding_model import get_model

            return get_model(self.model).encode(
                f"passage: {text}",
                normalize_embeddings=True,
            )
        except (OSError, RuntimeError, ValueError) as exc:
            raise EmbeddingUnavailable(f"local embedding failed: {exc}") from exc

    async def _request(self, text: str):
        """Call the remote embedding endpoint and return the raw vector."""
        if self.backend == "ollama":
            payload = {"model": self.model, "prompt": text}
        else:
            payload = {"model": self.model, "input": text}

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise EmbeddingUnavailable(
                f"{self.backend.upper()} HTTP ERROR ({exc.response.status_code})"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingUnavailable(f"{self.backend.upper()} REQUEST FAILED") from exc

        try:
            if self.backend == "ollama":
                return data["embedding"]
            return data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingUnavailable(
                f"{self.backend.upper()} returned an unexpected payload"
            ) from exc
