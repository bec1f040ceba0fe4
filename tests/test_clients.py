import json

import httpx
import numpy as np
import pytest

from twinlearn.core.types import USER, Message
from twinlearn.errors import CompletionUnavailable, EmbeddingUnavailable, InvalidInputError
from twinlearn.llm.client import CompletionClient
from twinlearn.llm.retry import RetryPolicy
from twinlearn.llm.service import build_payload
from twinlearn.memory.embedding_client import EmbeddingClient


NO_WAIT = RetryPolicy(max_attempts=3, backoff_seconds=0)
HISTORY = [Message(role=USER, text="Hello", created_at=0.0)]


def test_ollama_payload_carries_sampling_options():
    payload = build_payload(HISTORY, 0.6, "llama3.2", "ollama", system_message="be brief")

    assert payload["options"] == {"temperature": 0.6, "top_p": 0.9}
    assert payload["stream"] is False
    assert payload["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "Hello"},
    ]


async def test_ollama_completion():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"message": {"role": "assistant", "content": " Hi there "}})

    client = CompletionClient(
        provider="ollama", retry_policy=NO_WAIT, transport=httpx.MockTransport(handler)
    )
    text = await client.generate(HISTORY, 0.3)

    assert text == "Hi there"
    assert seen[0]["options"]["temperature"] == 0.3
    assert seen[0]["messages"][-1] == {"role": "user", "content": "Hello"}


async def test_openai_compatible_completion_sends_bearer_key():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["temperature"] == 0.9
        return httpx.Response(200, json={"choices": [{"message": {"content": "Hey"}}]})

    client = CompletionClient(
        provider="openai",
        api_key="sk-test",
        retry_policy=NO_WAIT,
        transport=httpx.MockTransport(handler),
    )
    assert await client.generate(HISTORY, 0.9) == "Hey"


async def test_server_errors_are_retried_then_raised():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="overloaded")

    client = CompletionClient(
        provider="ollama", retry_policy=NO_WAIT, transport=httpx.MockTransport(handler)
    )
    with pytest.raises(CompletionUnavailable, match="503"):
        await client.generate(HISTORY, 0.3)
    assert len(calls) == 3


async def test_empty_completion_is_a_failure():
    def handler(request):
        return httpx.Response(200, json={"message": {"content": "   "}})

    client = CompletionClient(
        provider="ollama",
        retry_policy=RetryPolicy(max_attempts=1),
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(CompletionUnavailable):
        await client.generate(HISTORY, 0.3)


async def test_completion_ping():
    def healthy(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": []})

    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    up = CompletionClient("ollama", transport=httpx.MockTransport(healthy))
    down = CompletionClient("ollama", transport=httpx.MockTransport(unreachable))

    assert await up.ping() is True
    assert await down.ping() is False


async def test_ollama_embedding():
    def handler(request):
        body = json.loads(request.content)
        assert body["prompt"] == "some text"
        return httpx.Response(200, json={"embedding": [0.5] * 8})

    client = EmbeddingClient(
        backend="ollama", dim=8, retry_policy=NO_WAIT, transport=httpx.MockTransport(handler)
    )
    vector = await client.embed("some text")

    assert vector.dtype == np.float32
    assert vector.shape == (8,)
    assert not vector.flags.writeable


async def test_openai_embedding():
    def handler(request):
        assert json.loads(request.content)["input"] == "abc"
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

    client = EmbeddingClient(
        backend="openai",
        dim=3,
        api_key="sk-test",
        retry_policy=NO_WAIT,
        transport=httpx.MockTransport(handler),
    )
    assert (await client.embed("abc")).tolist() == pytest.approx([0.1, 0.2, 0.3])


async def test_wrong_dimension_is_an_embedding_failure():
    def handler(request):
        return httpx.Response(200, json={"embedding": [0.5] * 5})

    client = EmbeddingClient(
        backend="ollama", dim=8, retry_policy=NO_WAIT, transport=httpx.MockTransport(handler)
    )
    with pytest.raises(EmbeddingUnavailable, match="dimension"):
        await client.embed("text")


async def test_local_backend_uses_injected_encoder():
    client = EmbeddingClient(backend="local", dim=4, encoder=lambda text: [1.0, 0.0, 0.0, 0.0])

    assert (await client.embed("hello")).tolist() == [1.0, 0.0, 0.0, 0.0]
    assert await client.ping() is True


async def test_local_backend_rejects_non_finite_vectors():
    client = EmbeddingClient(
        backend="local",
        dim=2,
        retry_policy=RetryPolicy(max_attempts=1),
        encoder=lambda text: [float("nan"), 0.0],
    )
    with pytest.raises(EmbeddingUnavailable):
        await client.embed("hello")
    assert await client.ping() is False


async def test_empty_text_is_rejected_before_any_call():
    client = EmbeddingClient(backend="local", dim=2, encoder=lambda text: [0.0, 1.0])
    with pytest.raises(InvalidInputError):
        await client.embed("   ")
