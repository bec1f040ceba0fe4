"""Facade over the context-retention and reranking subsystem.

Architectural role:
    Wires the conversation store, interaction cache, model registry, completion
    and embedding clients, orchestrator, and feedback ingestor into one object
    the HTTP and CLI adapters call. Also owns periodic maintenance.

Exposed operations:
    - `turn`: one chat turn (creates the conversation when no id is given).
    - `feedback`: rate a delivered response.
    - `batch_train` / `retrain_from_log`: bulk training from labelled texts.
    - `status`: live reachability of upstream services plus resident counts.
    - Conversation management: `create_conversation`, `list_conversations`,
      `delete_conversation`, `clear_expired`.
    - `run_maintenance`, `start`, `stop`, `delete_user_data`.

Maintenance model:
    `start()` launches one background task that calls `run_maintenance` every
    `sweep_interval` seconds. A failing sweep is logged and the loop continues.
    `stop()` cancels the loop, waits for external calls still running for
    abandoned turns, and flushes every dirty model to the store.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Mapping, Sequence

from twinlearn.config import Settings
from twinlearn.core.engine import CompletionBackend, EmbeddingBackend, ResponseOrchestrator
from twinlearn.core.feedback import FeedbackIngestor
from twinlearn.core.types import TurnResult
from twinlearn.errors import InvalidInputError, PersistenceUnavailable, UpstreamUnavailable
from twinlearn.learning.model_store import FileModelStore, ModelStore, TrainingLog
from twinlearn.learning.ranking_model import clamp_label
from twinlearn.learning.registry import ModelRegistry
from twinlearn.llm.client import CompletionClient
from twinlearn.llm.retry import RetryPolicy
from twinlearn.memory.conversation_store import ConversationStore
from twinlearn.memory.embedding_client import EmbeddingClient
from twinlearn.memory.interaction_cache import InteractionCache


logger = logging.getLogger(__name__)


class TwinService:
    """Entry point for adapters.

    Every collaborator can be injected; omitted ones are built from `settings`
    and the provider configuration.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        completion: CompletionBackend | None = None,
        embedder: EmbeddingBackend | None = None,
        model_store: ModelStore | None = None,
        training_log: TrainingLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        settings = self.settings

        self.completion = completion or CompletionClient(
            timeout=settings.completion_timeout,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_attempts,
                backoff_seconds=settings.backoff_seconds,
                timeout_seconds=settings.completion_timeout,
            ),
        )
        self.embedder = embedder or EmbeddingClient(
            dim=settings.embedding_dim,
            timeout=settings.embedding_timeout,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_attempts,
                backoff_seconds=settings.backoff_seconds,
                timeout_seconds=settings.embedding_timeout,
            ),
        )
        if training_log is None and settings.training_log_dir:
            training_log = TrainingLog(settings.training_log_dir)
        self.training_log = training_log

        self.conversations = ConversationStore(
            max_history=settings.max_history,
            session_ttl=settings.session_ttl,
            clock=clock,
        )
        self.interactions = InteractionCache(ttl=settings.session_ttl, clock=clock)
        self.registry = ModelRegistry(
            model_store or FileModelStore(settings.models_dir), settings, clock=clock
        )
        self.orchestrator = ResponseOrchestrator(
            self.conversations,
            self.registry,
            self.completion,
            self.embedder,
            self.interactions,
            settings=settings,
            clock=clock,
        )
        self.feedback_ingestor = FeedbackIngestor(
            self.registry,
            self.interactions,
            embedder=self.embedder,
            training_log=training_log,
            clock=clock,
        )
        self._maintenance_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Chat and feedback
    # ------------------------------------------------------------------

    async def turn(
        self,
        user_id: str,
        conversation_id: str | None,
        user_text: str,
    ) -> TurnResult:
        if conversation_id is None:
            conversation_id = await self.conversations.create(user_id)
        return await self.orchestrator.turn(user_id, conversation_id, user_text)

    async def feedback(self, response_id: str, label) -> dict:
        accepted = await self.feedback_ingestor.submit(response_id, label)
        return {"accepted": accepted}

    async def batch_train(self, user_id: str, samples: Sequence[Mapping[str, Any]]) -> dict:
        """Embed labelled texts and train the user's model on them.

        Args:
            user_id: Owner of the model.
            samples: Items with `text` and `label` keys.

        Returns:
            `{"trained": n, "avg_loss": loss}`. Texts that fail to embed are
            skipped; when nothing embeds the model is left untouched.

        Raises:
            InvalidInputError: For an empty user id, items without text, or
            non-finite labels.
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError("user_id must be a non-empty string")

        texts, labels = [], []
        for item in samples:
            text = item.get("text") if isinstance(item, Mapping) else None
            if not isinstance(text, str) or not text.strip():
                raise InvalidInputError("every sample needs a non-empty 'text'")
            texts.append(text)
            labels.append(clamp_label(item.get("label")))

        results = await asyncio.gather(
            *(self.embedder.embed(text) for text in texts), return_exceptions=True
        )

        pairs = []
        for text, label, result in zip(texts, labels, results):
            if isinstance(result, UpstreamUnavailable):
                logger.warning("Skipping batch sample that failed to embed: %s", result)
                continue
            if isinstance(result, BaseException):
                raise result
            pairs.append((result, label))

        trained, avg_loss = await self.feedback_ingestor.batch_train(user_id, pairs)
        return {"trained": trained, "avg_loss": avg_loss}

    async def retrain_from_log(self, user_id: str) -> dict:
        """Replay the user's training log through `batch_train`."""
        if self.training_log is None:
            return {"trained": 0, "avg_loss": 0.0}

        entries = await asyncio.to_thread(self.training_log.read, user_id)
        samples = [
            {"text": entry["text"], "label": entry["label"]}
            for entry in entries
            if isinstance(entry.get("text"), str) and entry["text"].strip() and "label" in entry
        ]
        logger.info("Replaying %d logged ratings for user %s", len(samples), user_id)
        return await self.batch_train(user_id, samples)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, user_id: str) -> str:
        return await self.conversations.create(user_id)

    def list_conversations(self, user_id: str) -> list[dict]:
        return self.conversations.list_for_owner(user_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        return await self.conversations.delete(conversation_id)

    async def clear_expired(self) -> int:
        return await self.conversations.sweep_expired()

    # ------------------------------------------------------------------
    # Health and maintenance
    # ------------------------------------------------------------------

    async def status(self) -> dict:
        """Report live upstream reachability and resident state."""
        completion_ok, embedding_ok = await asyncio.gather(
            self.completion.ping(), self.embedder.ping(), return_exceptions=True
        )
        completion_ok = completion_ok is True
        embedding_ok = embedding_ok is True

        return {
            "operational": completion_ok and embedding_ok,
            "completion": {
                "available": completion_ok,
                "provider": getattr(self.completion, "provider", None),
                "model": getattr(self.completion, "model", None),
            },
            "embedding": {
                "available": embedding_ok,
                "backend": getattr(self.embedder, "backend", None),
                "dim": self.settings.embedding_dim,
            },
            "conversations": len(self.conversations),
            "models": len(self.registry),
            "pending_interactions": len(self.interactions),
            "pending_persistence": self.registry.pending,
            "settings": {
                "max_history": self.settings.max_history,
                "session_ttl": self.settings.session_ttl,
                "candidate_count": self.settings.candidate_count,
                "temperatures": self.settings.temperatures,
                "learning_rate": self.settings.learning_rate,
                "hidden_units": list(self.settings.hidden_units),
            },
        }

    async def run_maintenance(self, now: float | None = None) -> dict:
        """One sweep of sessions, interactions, and idle models."""
        sessions = await self.conversations.sweep_expired(now)
        interactions = self.interactions.sweep_expired(now)
        models = await self.registry.evict_idle(now)
        if sessions or interactions or models:
            logger.info(
                "Maintenance: %d sessions, %d interactions, %d models removed",
                sessions, interactions, models,
            )
        return {"sessions": sessions, "interactions": interactions, "models": models}

    async def start(self) -> None:
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(), name="twinlearn-maintenance"
            )

    async def stop(self) -> None:
        task, self._maintenance_task = self._maintenance_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.orchestrator.wait_idle()
        await self.registry.close()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            try:
                await self.run_maintenance()
            except Exception:
                logger.exception("Maintenance sweep failed")

    async def delete_user_data(self, user_id: str) -> None:
        """Remove the user's model, training log, conversations, and pending records."""
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError("user_id must be a non-empty string")

        for summary in self.conversations.list_for_owner(user_id):
            await self.conversations.delete(summary["id"])
        self.interactions.discard_user(user_id)
        await self.registry.delete(user_id)

        if self.training_log is not None:
            try:
                await asyncio.to_thread(self.training_log.delete, user_id)
            except PersistenceUnavailable:
                logger.warning("Could not delete training log for user %s", user_id, exc_info=True)
        logger.info("Deleted all data for user %s", user_id)
