"""Lifecycle owner for per-user ranking models.

Architectural role:
    Keeps at most one live `RankingModel` per user in memory, loads persisted
    state on first use, persists after training, and evicts idle models to bound
    resident memory with many users.

Concurrency model:
    - Creation is single-flight per user (`KeyedLocks`), so concurrent first
      requests share one instance.
    - Every cached model carries its own `AsyncRWLock`: scoring takes the read
      side, training and eviction the write side. There is no global lock.
    - Training runs in a worker thread (`asyncio.to_thread`) while the write lock
      is held; store I/O runs in worker threads as well.
    - An entry evicted while a task waited on its lock is marked `evicted`; the
      waiting task retries against the fresh entry instead of using a detached
      instance.

Persistence model:
    - Store writes for one user are serialized by a per-user save mutex. It is
      held across snapshot and save in `persist`, and across the store call in
      `evict_idle` and `delete`, so saves land in snapshot order and a deleted
      model is never written back.
    - `delete` also holds the creation lock and removes the stored state before
      dropping the entry, so a concurrent first use cannot reload it.
    - Lock order is save mutex, creation lock, then the entry's `AsyncRWLock`.
    - `persist` snapshots under the read lock and saves outside it. A snapshot
      no newer than the last saved `train_steps` is skipped.
    - Failures are logged at warning level and leave the entry dirty for a
      later retry.
    - `persist_soon` schedules the same work as a tracked task; `wait_pending`
      awaits every outstanding one.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Sequence

from twinlearn.config import Settings
from twinlearn.errors import InvalidInputError, PersistenceUnavailable
from twinlearn.learning.locks import AsyncRWLock, KeyedLocks
from twinlearn.learning.model_store import ModelStore
from twinlearn.learning.ranking_model import RankingModel


logger = logging.getLogger(__name__)


@dataclass
class _ModelEntry:
    model: RankingModel
    last_used: float
    lock: AsyncRWLock = field(default_factory=AsyncRWLock)
    dirty: bool = False
    evicted: bool = False
    saved_steps: int = -1


class ModelRegistry:
    """Per-user model cache with lazy creation, persistence, and idle eviction.

    Args:
        store: Durable model store.
        settings: Architecture, learning rate, batch defaults, idle interval.
        clock: Wall-clock source, replaced in tests.
    """

    def __init__(
        self,
        store: ModelStore,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self._clock = clock
        self._entries: dict[str, _ModelEntry] = {}
        self._creation_locks = KeyedLocks()
        self._save_locks = KeyedLocks()
        self._pending: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get(self, user_id: str) -> RankingModel:
        """Return the live model for `user_id`, loading or creating it."""
        return (await self._entry(user_id)).model

    async def _entry(self, user_id: str) -> _ModelEntry:
        if not user_id:
            raise InvalidInputError("user_id must be a non-empty string")

        entry = self._entries.get(user_id)
        if entry is not None:
            entry.last_used = self._clock()
            return entry

        async with self._creation_locks.hold(user_id):
            entry = self._entries.get(user_id)
            if entry is None:
                model = await self._load_or_create(user_id)
                entry = _ModelEntry(
                    model=model, last_used=self._clock(), saved_steps=model.train_steps
                )
                self._entries[user_id] = entry
            else:
                entry.last_used = self._clock()
        return entry

    async def _load_or_create(self, user_id: str) -> RankingModel:
        try:
            state = await asyncio.to_thread(self.store.load, user_id)
        except PersistenceUnavailable:
            logger.warning("Model store unavailable for user %s; starting fresh", user_id)
            state = None

        if state is not None:
            try:
                model = RankingModel.from_state(state)
            except (KeyError, RuntimeError, ValueError, TypeError):
                logger.warning(
                    "Corrupted model state for user %s; starting fresh", user_id, exc_info=True
                )
            else:
                if model.embedding_dim == self.settings.embedding_dim:
                    logger.info(
                        "Loaded model for user %s (%d training steps)", user_id, model.train_steps
                    )
                    return model
                logger.warning(
                    "Stored model for user %s has dimension %d, expected %d; starting fresh",
                    user_id, model.embedding_dim, self.settings.embedding_dim,
                )

        logger.info("Creating new model for user %s", user_id)
        return RankingModel(
            embedding_dim=self.settings.embedding_dim,
            hidden_units=self.settings.hidden_units,
            learning_rate=self.settings.learning_rate,
        )

    # ------------------------------------------------------------------
    # Locked access
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def reading(self, user_id: str) -> AsyncIterator[RankingModel]:
        """Yield the user's model with the read lock held."""
        while True:
            entry = await self._entry(user_id)
            async with entry.lock.read():
                if entry.evicted:
                    continue
                yield entry.model
                return

    @asynccontextmanager
    async def writing(self, user_id: str) -> AsyncIterator[RankingModel]:
        """Yield the user's model with the write lock held.

        The entry is marked dirty only when the block completes without raising.
        """
        while True:
            entry = await self._entry(user_id)
            async with entry.lock.write():
                if entry.evicted:
                    continue
                try:
                    yield entry.model
                finally:
                    entry.last_used = self._clock()
                entry.dirty = True
                return

    async def score(self, user_id: str, embeddings: Sequence) -> list[float]:
        """Score candidate embeddings with the user's model."""
        async with self.reading(user_id) as model:
            return model.score_many(embeddings)

    async def train_one(self, user_id: str, embedding, label) -> float:
        """Apply one training step for `user_id`; returns the sample loss."""
        async with self.writing(user_id) as model:
            return await asyncio.to_thread(model.train_one, embedding, label)

    async def train_batch(self, user_id: str, samples: Sequence[tuple]) -> float:
        """Run batch training with the configured epochs and batch size."""
        async with self.writing(user_id) as model:
            return await asyncio.to_thread(
                model.train_batch,
                samples,
                self.settings.batch_epochs,
                self.settings.batch_size,
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist(self, user_id: str) -> bool:
        """Save the user's model if it is resident.

        Returns:
            `True` when the snapshot was saved or nothing needed saving, `False`
            when the store was unavailable.
        """
        async with self._save_locks.hold(user_id):
            entry = self._entries.get(user_id)
            if entry is None:
                return True

            async with entry.lock.read():
                steps = entry.model.train_steps
                if steps <= entry.saved_steps:
                    entry.dirty = False
                    logger.debug("Model for user %s already saved at step %d", user_id, steps)
                    return True
                state = entry.model.state_dict()
                entry.dirty = False

            try:
                await asyncio.to_thread(self.store.save, user_id, state)
            except PersistenceUnavailable:
                entry.dirty = True
                logger.warning(
                    "Model store unavailable; user %s keeps unsaved training steps in memory",
                    user_id, exc_info=True,
                )
                return False
            entry.saved_steps = steps
            return True

    def persist_soon(self, user_id: str) -> asyncio.Task:
        """Schedule `persist(user_id)` as a tracked background task."""
        task = asyncio.create_task(self.persist(user_id), name=f"persist-model:{user_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_pending(self) -> None:
        """Wait for every scheduled persistence task to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Eviction and deletion
    # ------------------------------------------------------------------

    async def evict_idle(self, now: float | None = None) -> int:
        """Persist and drop models unused for longer than `idle_model_eviction`.

        Models whose persistence fails stay resident so no training is lost. A
        model being trained or saved is waited for, then re-checked.

        Returns:
            Number of models evicted.
        """
        now = self._clock() if now is None else now
        cutoff = self.settings.idle_model_eviction
        evicted = 0

        for user_id, entry in list(self._entries.items()):
            if now - entry.last_used <= cutoff:
                continue

            async with self._save_locks.hold(user_id), entry.lock.write():
                if entry.evicted or self._entries.get(user_id) is not entry:
                    continue
                if now - entry.last_used <= cutoff:
                    continue

                if entry.dirty and entry.model.train_steps > entry.saved_steps:
                    try:
                        await asyncio.to_thread(self.store.save, user_id, entry.model.state_dict())
                    except PersistenceUnavailable:
                        logger.warning(
                            "Keeping idle model for user %s resident: persistence failed",
                            user_id, exc_info=True,
                        )
                        continue

                entry.evicted = True
                del self._entries[user_id]
                evicted += 1

        if evicted:
            logger.info("Evicted %d idle ranking models", evicted)
        return evicted

    async def delete(self, user_id: str) -> None:
        """Drop the user's model from memory and durable storage.

        Waits for any save or training in progress for the same user, so the
        model cannot be written back or reloaded from the store after deletion.
        """
        async with self._save_locks.hold(user_id), self._creation_locks.hold(user_id):
            entry = self._entries.get(user_id)
            if entry is None:
                await asyncio.to_thread(self.store.delete, user_id)
            else:
                async with entry.lock.write():
                    await asyncio.to_thread(self.store.delete, user_id)
                    entry.evicted = True
                    self._entries.pop(user_id, None)
        logger.info("Deleted ranking model for user %s", user_id)

    async def close(self) -> None:
        """Persist every dirty model and drain pending persistence tasks."""
        await self.wait_pending()
        for user_id, entry in list(self._entries.items()):
            if entry.dirty:
                await self.persist(user_id)
