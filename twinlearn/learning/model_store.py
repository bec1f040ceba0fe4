"""Durable storage for ranking-model state and the feedback training log.

Architectural role:
    Key-value persistence addressed by user id, consumed by `ModelRegistry`
    (`load`, `save`, `delete`) and an append-only JSON-lines training log consumed
    by `FeedbackIngestor` (append) and `TwinService.retrain_from_log` (read).

File layout:
    - `<models_dir>/user_<sha256(user_id)>.pt`: `torch.save` of
      `RankingModel.state_dict()`.
    - `<log_dir>/user_<sha256(user_id)>.jsonl`: one `FeedbackRecord` per line.
    User ids are hashed so arbitrary ids map to safe, collision-free file names.

Write semantics:
    Each model snapshot is written to its own temporary file in `models_dir`
    and atomically swapped in with `os.replace`, so a crash or a concurrent save
    never leaves a half-written model behind.

Failure model:
    - Write/delete failures raise `PersistenceUnavailable`.
    - A missing model returns `None`. Unreadable or corrupted files are logged
      and also return `None`, so the registry fresh-initializes instead of failing.
"""

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import threading
from typing import Protocol

import torch

from twinlearn.errors import PersistenceUnavailable


logger = logging.getLogger(__name__)


def user_key(user_id: str) -> str:
    """Return the filesystem-safe key for `user_id`."""
    return "user_" + hashlib.sha256(str(user_id).encode("utf-8")).hexdigest()


class ModelStore(Protocol):
    """Minimal durable key-value interface for model snapshots."""

    def load(self, user_id: str) -> dict | None:
        ...

    def save(self, user_id: str, state: dict) -> None:
        ...

    def delete(self, user_id: str) -> None:
        ...


class FileModelStore:
    """Model snapshots stored as `torch.save` files in one directory."""

    def __init__(self, models_dir: str) -> None:
        self.models_dir = models_dir

    def path_for(self, user_id: str) -> str:
        return os.path.join(self.models_dir, user_key(user_id) + ".pt")

    def load(self, user_id: str) -> dict | None:
        """Load a snapshot, or `None` when missing or unreadable."""
        path = self.path_for(user_id)
        if not os.path.exists(path):
            return None

        try:
            state = torch.load(path, map_location="cpu", weights_only=True)
        except Exception:
            logger.warning(
                "Unreadable model state for user %s at %s; starting fresh",
                user_id, path, exc_info=True,
            )
            return None

        if not isinstance(state, dict):
            logger.warning("Model state for user %s is not a mapping; starting fresh", user_id)
            return None
        return state

    def save(self, user_id: str, state: dict) -> None:
        """Atomically persist a snapshot.

        Each call writes its own temporary file in `models_dir`, so concurrent
        saves never share a partial file; the last `os.replace` wins.
        """
        path = self.path_for(user_id)
        tmp = None
        try:
            os.makedirs(self.models_dir, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=self.models_dir,
                prefix=user_key(user_id) + ".",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp = f.name
                torch.save(state, f)
            os.replace(tmp, path)
        except (OSError, RuntimeError) as exc:
            if tmp is not None:
                with contextlib.suppress(OSError):
                    os.remove(tmp)
            raise PersistenceUnavailable(f"failed to save model for user {user_id}") from exc

    def delete(self, user_id: str) -> None:
        path = self.path_for(user_id)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as exc:
            raise PersistenceUnavailable(f"failed to delete model for user {user_id}") from exc


class MemoryModelStore:
    """Process-local store for tests and ephemeral deployments."""

    def __init__(self) -> None:
        self._states: dict[str, dict] = {}
        self._lock = threading.Lock()
        self.saves = 0

    def load(self, user_id: str) -> dict | None:
        with self._lock:
            return self._states.get(user_id)

    def save(self, user_id: str, state: dict) -> None:
        with self._lock:
            self._states[user_id] = state
            self.saves += 1

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._states.pop(user_id, None)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._states


class TrainingLog:
    """Append-only JSON-lines feedback log, one file per user."""

    def __init__(self, log_dir: str) -> None:
        self.log_dir = log_dir
        self._lock = threading.Lock()

    def path_for(self, user_id: str) -> str:
        return os.path.join(self.log_dir, user_key(user_id) + ".jsonl")

    def append(self, user_id: str, entry: dict) -> None:
        try:
            with self._lock:
                os.makedirs(self.log_dir, exist_ok=True)
                with open(self.path_for(user_id), "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise PersistenceUnavailable(f"failed to append training log for {user_id}") from exc

    def read(self, user_id: str) -> list[dict]:
        """Return all log entries; malformed lines are skipped with a warning."""
        path = self.path_for(user_id)
        if not os.path.exists(path):
            return []

        entries = []
        with self._lock, open(path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed training log line %d in %s", line_no, path)
        return entries

    def delete(self, user_id: str) -> None:
        path = self.path_for(user_id)
        try:
            with self._lock:
                if os.path.exists(path):
                    os.remove(path)
        except OSError as exc:
            raise PersistenceUnavailable(f"failed to delete training log for {user_id}") from exc
