"""Turn orchestration: context, candidate generation, embedding, ranking.

Architectural role:
    Transforms one user message into one delivered assistant reply. Coordinates
    the conversation store, the completion and embedding clients, and the
    per-user ranking model, then records the scored interaction for feedback.

Control-flow model (one turn):
    1. `COLLECTING_CONTEXT`: append the user message, read the context window.
    2. `GENERATING_CANDIDATES`: one completion per configured temperature,
       issued concurrently. Failed or empty candidates are dropped.
    3. `EMBEDDING`: embed every surviving candidate plus the prompt concurrently.
       Candidates whose embedding failed are dropped.
    4. `RANKING`: score through the registry; the highest score wins, ties go to
       the lowest temperature.
    5. `SELECTED` -> `DELIVERED`: append the reply, record the interaction.

Degradation (`DEGRADED_DELIVERED`):
    - No candidate survived generation: one low-temperature fallback completion,
      else a canned apology.
    - No candidate could be embedded, or scoring failed: first surviving
      candidate, unranked.
    Upstream failures are never raised to the caller; only invalid input is.

Cancellation:
    External calls are issued as tracked tasks behind `asyncio.shield`. If the
    caller abandons a turn, in-flight calls run to completion in the background
    and their results are discarded.

Side effects:
    Confined to `ConversationStore.append` and `InteractionCache.put`. Every
    delivered reply except the canned apology is recorded. Replies that never
    got an embedding are recorded without one and re-embedded if rated.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence

import numpy as np

from twinlearn.config import Settings
from twinlearn.core.types import (
    ASSISTANT,
    USER,
    Candidate,
    InteractionRecord,
    Message,
    TurnResult,
    TurnState,
)
from twinlearn.errors import InvalidInputError, UpstreamUnavailable
from twinlearn.learning.registry import ModelRegistry
from twinlearn.memory.conversation_store import ConversationStore
from twinlearn.memory.interaction_cache import InteractionCache


logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I'm sorry, I'm having trouble processing your request right now."


class CompletionBackend(Protocol):
    """Minimal async interface of `CompletionClient`."""

    async def generate(self, history: Sequence[Message], temperature: float) -> str:
        ...

    async def ping(self) -> bool:
        ...


class EmbeddingBackend(Protocol):
    """Minimal async interface of `EmbeddingClient`."""

    async def embed(self, text: str) -> np.ndarray:
        ...

    async def ping(self) -> bool:
        ...


class ResponseOrchestrator:
    """Request-level coordinator for chat turns.

    Args:
        store: Conversation histories.
        registry: Per-user ranking models.
        completion: Text-generation client (retries internally).
        embedder: Embedding client (retries internally).
        interactions: Cache receiving one record per delivered reply.
        settings: Candidate count, temperatures, history bound.
        clock: Wall-clock source, replaced in tests.
    """

    def __init__(
        self,
        store: ConversationStore,
        registry: ModelRegistry,
        completion: CompletionBackend,
        embedder: EmbeddingBackend,
        interactions: InteractionCache,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.registry = registry
        self.completion = completion
        self.embedder = embedder
        self.interactions = interactions
        self.settings = settings or Settings()
        self._clock = clock
        self._inflight: set[asyncio.Future] = set()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def wait_idle(self) -> None:
        """Wait until every detached external call has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def turn(self, user_id: str, conversation_id: str, user_text: str) -> TurnResult:
        """Produce the best-ranked reply for one user message.

        Raises:
            InvalidInputError: For empty ids or empty text. Nothing else escapes.
        """
        if not isinstance(user_text, str) or not user_text.strip():
            raise InvalidInputError("user_text must be a non-empty string")
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError("user_id must be a non-empty string")

        self._transition(conversation_id, TurnState.COLLECTING_CONTEXT)
        await self.store.append(
            conversation_id, user_id, self.store.new_message(USER, user_text)
        )
        history = await self.store.get_window(conversation_id, self.settings.max_history)

        self._transition(conversation_id, TurnState.GENERATING_CANDIDATES)
        candidates = await self._generate_candidates(history)
        if not candidates:
            return await self._deliver_fallback(user_id, conversation_id, user_text, history)

        self._transition(conversation_id, TurnState.EMBEDDING)
        embeddings, prompt_embedding = await self._embed(user_text, candidates)
        embedded = [
            (candidate, embedding)
            for candidate, embedding in zip(candidates, embeddings)
            if embedding is not None
        ]
        if not embedded:
            logger.warning(
                "No candidate could be embedded for conversation %s; delivering unranked",
                conversation_id,
            )
            return await self._deliver(
                user_id, conversation_id, candidates[0],
                state=TurnState.DEGRADED_DELIVERED,
                candidate_count=len(candidates),
                prompt_embedding=prompt_embedding,
                prompt_text=user_text,
            )

        self._transition(conversation_id, TurnState.RANKING)
        try:
            scores = await self.registry.score(user_id, [e for _, e in embedded])
        except InvalidInputError:
            logger.warning(
                "Ranking failed for user %s; delivering first candidate unranked",
                user_id, exc_info=True,
            )
            return await self._deliver(
                user_id, conversation_id, embedded[0][0],
                state=TurnState.DEGRADED_DELIVERED,
                candidate_count=len(candidates),
                embedding=embedded[0][1],
                prompt_embedding=prompt_embedding,
                prompt_text=user_text,
            )

        best = select_best(scores)
        chosen, chosen_embedding = embedded[best]
        self._transition(conversation_id, TurnState.SELECTED)
        logger.info(
            "Selected candidate t=%.2f score=%.4f for user %s (%d ranked)",
            chosen.temperature, scores[best], user_id, len(embedded),
        )

        return await self._deliver(
            user_id, conversation_id, chosen,
            state=TurnState.DELIVERED,
            candidate_count=len(candidates),
            score=scores[best],
            embedding=chosen_embedding,
            prompt_embedding=prompt_embedding,
            prompt_text=user_text,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _generate_candidates(self, history: list[Message]) -> list[Candidate]:
        temperatures = self.settings.temperatures
        results = await self._gather_detached(
            self.completion.generate(history, temperature) for temperature in temperatures
        )

        candidates = []
        for index, (temperature, result) in enumerate(zip(temperatures, results)):
            text = _usable_text(result, f"completion t={temperature}")
            if text is not None:
                candidates.append(Candidate(index=index, temperature=temperature, text=text))

        candidates.sort(key=lambda c: (c.temperature, c.index))
        return candidates

    async def _embed(
        self,
        prompt_text: str,
        candidates: list[Candidate],
    ) -> tuple[list[np.ndarray | None], np.ndarray | None]:
        results = await self._gather_detached(
            [self.embedder.embed(candidate.text) for candidate in candidates]
            + [self.embedder.embed(prompt_text)]
        )

        *candidate_results, prompt_result = results
        vectors = [_usable_vector(result, "candidate embedding") for result in candidate_results]
        return vectors, _usable_vector(prompt_result, "prompt embedding")

    async def _deliver_fallback(
        self,
        user_id: str,
        conversation_id: str,
        user_text: str,
        history: list[Message],
    ) -> TurnResult:
        temperature = self.settings.fallback_temperature
        logger.warning(
            "All %d candidates failed for conversation %s; requesting fallback completion",
            self.settings.candidate_count, conversation_id,
        )
        (result,) = await self._gather_detached(
            [self.completion.generate(history, temperature)]
        )
        text = _usable_text(result, "fallback completion")

        if text is None:
            fallback = Candidate(index=0, temperature=temperature, text=FALLBACK_REPLY)
            return await self._deliver(
                user_id, conversation_id, fallback,
                state=TurnState.DEGRADED_DELIVERED,
                candidate_count=0,
                canned=True,
            )

        return await self._deliver(
            user_id, conversation_id,
            Candidate(index=0, temperature=temperature, text=text),
            state=TurnState.DEGRADED_DELIVERED,
            candidate_count=0,
            prompt_text=user_text,
        )

    async def _deliver(
        self,
        user_id: str,
        conversation_id: str,
        candidate: Candidate,
        state: TurnState,
        candidate_count: int,
        score: float | None = None,
        embedding: np.ndarray | None = None,
        prompt_embedding: np.ndarray | None = None,
        prompt_text: str = "",
        canned: bool = False,
    ) -> TurnResult:
        await self.store.append(
            conversation_id, user_id, self.store.new_message(ASSISTANT, candidate.text)
        )
        response_id = uuid.uuid4().hex

        if not canned:
            self.interactions.put(
                InteractionRecord(
                    response_id=response_id,
                    user_id=user_id,
                    conversation_id=conversation_id,
                    prompt_text=prompt_text,
                    generated_text=candidate.text,
                    candidate_embedding=embedding,
                    prompt_embedding=prompt_embedding,
                    temperature=candidate.temperature,
                    score=score,
                    created_at=self._clock(),
                )
            )

        self._transition(conversation_id, state)
        return TurnResult(
            text=candidate.text,
            response_id=response_id,
            conversation_id=conversation_id,
            state=state,
            score=score,
            temperature=None if canned else candidate.temperature,
            candidates=candidate_count,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _gather_detached(self, calls: Iterable[Awaitable[Any]]) -> list[Any]:
        """Run calls concurrently; survive caller cancellation; never raise."""
        tasks = [asyncio.ensure_future(call) for call in calls]
        for task in tasks:
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(asyncio.gather(*tasks, return_exceptions=True))

    def _transition(self, conversation_id: str, state: TurnState) -> None:
        logger.debug("turn[%s] -> %s", conversation_id, state.value)


def select_best(scores: Sequence[float]) -> int:
    """Index of the highest score; ties resolve to the earliest index."""
    return max(range(len(scores)), key=lambda i: (scores[i], -i))


def _usable_text(result: Any, label: str) -> str | None:
    if isinstance(result, UpstreamUnavailable):
        logger.warning("%s failed: %s", label, result)
        return None
    if isinstance(result, BaseException):
        logger.error("%s raised unexpectedly", label, exc_info=result)
        return None
    text = str(result or "").strip()
    if not text:
        logger.warning("%s returned empty text", label)
        return None
    return text


def _usable_vector(result: Any, label: str) -> np.ndarray | None:
    if isinstance(result, (UpstreamUnavailable, InvalidInputError)):
        logger.warning("%s failed: %s", label, result)
        return None
    if isinstance(result, BaseException):
        logger.error("%s raised unexpectedly", label, exc_info=result)
        return None
    return result
