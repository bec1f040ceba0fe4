"""History-to-payload adapter for completion requests.

Architectural role:
    Bridges the conversation context window (`Message` objects from the store) to
    provider request bodies consumed by `twinlearn.llm.client`.

Parameter semantics:
    - `temperature`: varied per candidate by the orchestrator.
    - `top_p=0.9`: nucleus sampling cap shared by all candidates.

Determinism:
    Payload construction is deterministic for fixed inputs and configuration.
"""

from typing import Iterable

from twinlearn.core.types import Message
from twinlearn.llm.provider_config import SYSTEM_MESSAGE


TOP_P = 0.9


def build_messages(history: Iterable[Message], system_message: str | None = SYSTEM_MESSAGE):
    """Convert stored history into chat messages, prefixed by the system turn."""
    messages = []
    if system_message:
        messages.append({"role": "system", "content": system_message})
    messages.extend(message.as_chat() for message in history if message.text)
    return messages


def build_payload(
    history: Iterable[Message],
    temperature: float,
    model: str,
    provider: str,
    system_message: str | None = SYSTEM_MESSAGE,
) -> dict:
    """Build a non-streaming request body for the configured provider.

    Args:
        history: Context window in chronological order.
        temperature: Sampling temperature for this candidate.
        model: Provider model name.
        provider: `ollama` uses the native `/api/chat` shape, everything else the
            OpenAI-compatible chat-completions shape.
        system_message: Optional system instruction.

    Returns:
        JSON-serializable payload.
    """
    messages = build_messages(history, system_message)

    if provider == "ollama":
        return {
            "model": model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature, "top_p": TOP_P},
        }

    return {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "top_p": TOP_P,
        "stream": False,
    }
