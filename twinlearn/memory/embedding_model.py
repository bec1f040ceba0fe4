"""In-process embedding model bootstrap for the `local` embedding backend.

Architectural role:
    Provides shared `SentenceTransformer` instances used by `EmbeddingClient`
    when no remote embedding service is configured. The loader decides CPU vs
    CUDA execution once per model name and reuses the model afterwards.

Design intent:
    - Keep embedding initialization centralized and lazy (import is cheap).
    - Apply a conservative VRAM gate before enabling GPU execution.
"""

import logging
import os
import threading

from twinlearn.llm.provider_config import EMBED_MODEL


logger = logging.getLogger(__name__)

_models: dict = {}
_model_lock = threading.Lock()


def has_enough_vram(min_required_mb: int = 800) -> bool:
    """Return whether enough free GPU memory is available for embeddings."""
    import torch

    if not torch.cuda.is_available():
        return False

    free_mem, _total_mem = torch.cuda.mem_get_info()
    free_mb = free_mem / 1024 / 1024

    logger.info("Free VRAM: %.0f MB", free_mb)

    return free_mb > min_required_mb


def get_model(model_name: str = EMBED_MODEL):
    """Load and cache the embedding model named `model_name`.

    Returns:
        A `SentenceTransformer` instance configured for CUDA or CPU.

    Behavior:
        - One cached instance per model name in the module-global `_models`,
          guarded by a thread lock because callers reach this through
          `asyncio.to_thread`.
        - Enables CUDA only when `has_enough_vram()` returns `True`.
        - Forces CPU mode by setting `CUDA_VISIBLE_DEVICES=""` otherwise.
    """
    model = _models.get(model_name)
    if model is not None:
        return model

    with _model_lock:
        model = _models.get(model_name)
        if model is not None:
            return model

        try:
            use_gpu = has_enough_vram()
        except RuntimeError:
            use_gpu = False

        if not use_gpu:
            os.environ["CUDA_VISIBLE_DEVICES"] = ""

        from sentence_transformers import SentenceTransformer

        device = "cuda" if use_gpu else "cpu"
        logger.info("Loading embedding model %s on %s", model_name, device.upper())

        model = _models[model_name] = SentenceTransformer(model_name, device=device)

    return model
