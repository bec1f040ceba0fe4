"""Provider-specific async transport client for completion requests.

Architectural role:
    Executes HTTP requests against the configured text-generation provider and
    normalizes the response to plain text. Used by the orchestrator to produce
    one candidate per sampling temperature.

Model invocation flow:
    `CompletionClient.generate(history, temperature)` -> `service.build_payload`
    -> `RetryPolicy.run(_request)` -> provider branch (Ollama native /
    OpenAI-compatible) -> stripped text.

Failure handling model:
    Network errors, retryable HTTP statuses, malformed bodies, and empty texts
    raise `CompletionUnavailable`. Provider error bodies are never echoed to the
    caller; only the status code is kept in the message.
"""

import logging
from typing import Iterable

import httpx

from twinlearn.core.types import Message
from twinlearn.errors import CompletionUnavailable
from twinlearn.llm.provider_config import (
    MODEL_NAME,
    OLLAMA_HOST,
    PROVIDER,
    PROVIDERS,
    load_key,
)
from twinlearn.llm.retry import RetryPolicy
from twinlearn.llm.service import build_payload


logger = logging.getLogger(__name__)


class CompletionClient:
    """Async text-generation client.

    Args:
        provider: Key into `PROVIDERS`.
        model: Model name forwarded in the payload.
        url: Endpoint override (defaults to the provider entry).
        api_key: Key override (defaults to `load_key(provider key file)`).
        timeout: HTTP timeout per request in seconds.
        retry_policy: Retry/backoff schedule applied to every `generate` call.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        provider: str = PROVIDER,
        model: str = MODEL_NAME,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if provider not in PROVIDERS and url is None:
            raise ValueError(f"Unknown completion provider: {provider!r}")

        config = PROVIDERS.get(provider, {"url": url, "key_file": None})
        self.provider = provider
        self.model = model
        self.url = url or config["url"]
        self.api_key = api_key if api_key is not None else load_key(config["key_file"])
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport

    async def generate(self, history: Iterable[Message], temperature: float) -> str:
        """Generate one completion for `history` at `temperature`.

        Raises:
            CompletionUnavailable: When every retry attempt failed.
        """
        payload = build_payload(list(history), temperature, self.model, self.provider)
        return await self.retry_policy.run(
            lambda: self._request(payload),
            label=f"completion[{self.provider} t={temperature}]",
            timeout_error=CompletionUnavailable,
        )

    async def ping(self) -> bool:
        """Return whether the provider answers a cheap listing request."""
        if self.provider == "ollama":
            url = f"{OLLAMA_HOST}/api/tags"
        else:
            url = self.url.rsplit("/chat/completions", 1)[0] + "/models"

        try:
            async with self._client() as client:
                response = await client.get(url)
            return response.status_code < 400
        except httpx.HTTPError:
            logger.warning("Completion provider %s unreachable at %s", self.provider, url)
            return False

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=headers,
            transport=self._transport,
        )

    async def _request(self, payload: dict) -> str:
        """Send one request and extract the generated text."""
        try:
            async with self._client() as client:
                response = await client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise CompletionUnavailable(
                f"{self.provider.upper()} HTTP ERROR ({exc.response.status_code})"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise CompletionUnavailable(f"{self.provider.upper()} REQUEST FAILED") from exc

        text = self._extract_text(data)
        if not text:
            raise CompletionUnavailable(f"{self.provider.upper()} returned an empty completion")
        return text

    def _extract_text(self, data) -> str:
        """Pull generated text from Ollama-native or OpenAI-compatible bodies."""
        try:
            if self.provider == "ollama":
                content = data["message"]["content"]
            else:
                content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionUnavailable(
                f"{self.provider.upper()} returned an unexpected payload"
            ) from exc
        return str(content or "").strip()
