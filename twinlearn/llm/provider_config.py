"""Provider/runtime configuration for the completion and embedding clients.

Architectural role:
    Centralizes endpoint selection and credential lookup for
    `twinlearn.llm.client` (text generation) and
    `twinlearn.memory.embedding_client` (vectorization).

Determinism:
    Deterministic for a fixed process environment and key files. Values are
    resolved at import time (plus runtime key-file reads in `load_key`).

Failure behavior:
    Missing key material is represented as `None`; the clients turn that into
    `CompletionUnavailable` / `EmbeddingUnavailable` on first use.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# Primary model routing controls.
PROVIDER = os.getenv("PROVIDER", "ollama")
MODEL_NAME = os.getenv("MODEL_NAME", "llama3.2")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434").rstrip("/")

# OpenAI-compatible chat endpoints. `ollama` is handled natively by the client.
PROVIDERS = {

    "local": {
        "url": "http://127.0.0.1:8080/v1/chat/completions",
        "key_file": None
    },

    "openai": {
        "url": "https://api.openai.com/v1/chat/completions",
        "key_file": "config/openai.key"
    },

    "groq": {
        "url": "https://api.groq.com/openai/v1/chat/completions",
        "key_file": "config/groq.key"
    },

    "together": {
        "url": "https://api.together.xyz/v1/chat/completions",
        "key_file": "config/together.key"
    },

    "openrouter": {
        "url": "https://openrouter.ai/api/v1/chat/completions",
        "key_file": "config/openrouter.key"
    },

    "mistral": {
        "url": "https://api.mistral.ai/v1/chat/completions",
        "key_file": "config/mistral.key"
    },

    "ollama": {
        "url": f"{OLLAMA_HOST}/api/chat",
        "key_file": None
    },

}

# Embedding backend: `local` (sentence-transformers in-process), `ollama`, `openai`.
EMBEDDING_BACKEND = os.getenv("EMBEDDING_BACKEND", "local")
EMBED_MODEL = os.getenv("EMBED_MODEL", "intfloat/multilingual-e5-small")

EMBEDDING_PROVIDERS = {

    "ollama": {
        "url": f"{OLLAMA_HOST}/api/embeddings",
        "key_file": None
    },

    "openai": {
        "url": "https://api.openai.com/v1/embeddings",
        "key_file": "config/openai.key"
    },

}

# Instruction prepended to every completion request as the system turn.
SYSTEM_MESSAGE = (
    "You are a personal digital twin assistant.\n"
    "Answer in the user's preferred style, stay consistent with the conversation "
    "so far, and be concise.\n"
)


def load_key(path):
    """Load API key from environment override or key file.

    Resolution order:
        1. Environment variable inferred from file stem (for example
           `config/openai.key` -> `OPENAI_API_KEY`).
        2. Raw file contents at `path`.

    Args:
        path: Configured key file path or `None`.

    Returns:
        Key string or `None` when not available.
    """
    if not path:
        return None
    key_name = os.path.splitext(os.path.basename(path))[0].upper() + "_API_KEY"
    env_value = os.getenv(key_name)
    if env_value:
        return env_value
    if not os.path.exists(path):
        return None
    with open(path, "r") as f:
        return f.read().strip()
