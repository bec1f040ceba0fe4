"""Feedback ingestion: ratings become training steps.

Architectural role:
    Resolves a response id to the interaction that produced it and trains the
    owning user's ranking model. Ranked replies train on the exact embedding
    that was scored; replies delivered unranked are re-embedded from their text.

Ordering guarantees:
    - The label is validated before anything is consumed, so an invalid rating
      leaves the interaction available for a valid one.
    - A missing embedding is computed before the record is consumed, so an
      embedding outage leaves the rating retryable.
    - The interaction is removed from the cache before training. A response id
      is therefore applied at most once, even when two ratings race.
    - Persistence is scheduled after the training step completes.

Failure handling model:
    - Unknown, expired, or already-consumed ids are a normal outcome (`False`).
    - Non-finite labels raise `InvalidInputError`.
    - A failed re-embedding raises `EmbeddingUnavailable` and consumes nothing.
    - Training-log write failures are logged; the training step is kept.
"""

import asyncio
import logging
import time
from typing import Callable, Sequence

from twinlearn.core.engine import EmbeddingBackend
from twinlearn.core.types import FeedbackRecord, InteractionRecord
from twinlearn.errors import InvalidInputError, PersistenceUnavailable
from twinlearn.learning.model_store import TrainingLog
from twinlearn.learning.ranking_model import clamp_label
from twinlearn.learning.registry import ModelRegistry
from twinlearn.memory.interaction_cache import InteractionCache


logger = logging.getLogger(__name__)


class FeedbackIngestor:
    """Applies user ratings to per-user ranking models.

    Args:
        registry: Per-user model registry.
        interactions: Cache of delivered interactions awaiting feedback.
        embedder: Embedding backend used for replies recorded without an
            embedding. Without one, such ratings are not accepted.
        training_log: Optional append-only log of applied ratings.
        clock: Wall-clock source, replaced in tests.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        interactions: InteractionCache,
        embedder: EmbeddingBackend | None = None,
        training_log: TrainingLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.interactions = interactions
        self.embedder = embedder
        self.training_log = training_log
        self._clock = clock

    async def submit(self, response_id: str, label) -> bool:
        """Train on one rating.

        Returns:
            `True` when the rating was applied, `False` when `response_id` does
            not resolve to a live interaction.

        Raises:
            InvalidInputError: For empty ids or non-finite labels.
            EmbeddingUnavailable: When an unranked reply cannot be re-embedded.
        """
        if not isinstance(response_id, str) or not response_id.strip():
            raise InvalidInputError("response_id must be a non-empty string")
        label = clamp_label(label)

        pending = self.interactions.get(response_id)
        if pending is None:
            logger.info("Feedback for unknown or expired response %s ignored", response_id)
            return False

        embedding = pending.candidate_embedding
        if embedding is None:
            embedding = await self._reembed(pending)
            if embedding is None:
                return False

        record = self.interactions.pop(response_id)
        if record is None:
            logger.info("Feedback for response %s already applied", response_id)
            return False

        loss = await self.registry.train_one(record.user_id, embedding, label)
        self.registry.persist_soon(record.user_id)
        logger.info(
            "Applied feedback %.2f for user %s (loss=%.4f)", label, record.user_id, loss
        )

        await self._log(
            FeedbackRecord(
                response_id=response_id,
                user_id=record.user_id,
                label=label,
                text=record.generated_text,
                created_at=self._clock(),
            )
        )
        return True

    async def batch_train(self, user_id: str, samples: Sequence[tuple]) -> tuple[int, float]:
        """Train on pre-embedded `(embedding, label)` pairs and persist.

        Returns:
            `(trained, avg_loss)` where `avg_loss` is the last-epoch mean loss.
        """
        if not samples:
            return 0, 0.0

        samples = [(embedding, clamp_label(label)) for embedding, label in samples]
        loss = await self.registry.train_batch(user_id, samples)
        await self.registry.persist(user_id)
        logger.info("Batch-trained user %s on %d samples (loss=%.4f)", user_id, len(samples), loss)
        return len(samples), loss

    async def _log(self, record: FeedbackRecord) -> None:
        if self.training_log is None:
            return
        try:
            await asyncio.to_thread(self.training_log.append, record.user_id, record.to_json())
        except PersistenceUnavailable:
            logger.warning(
                "Training log unavailable; rating %s not recorded", record.response_id,
                exc_info=True,
            )

    async def _reembed(self, record: InteractionRecord):
        if self.embedder is None:
            logger.info(
                "Response %s has no embedding and no embedder is configured; ignored",
                record.response_id,
            )
            return None
        logger.debug("Re-embedding unranked response %s for feedback", record.response_id)
        return await self.embedder.embed(record.generated_text)
