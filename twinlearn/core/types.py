"""Data contracts shared by the store, registry, orchestrator, and feedback layers.

Architectural role:
    Defines the value types that cross component boundaries. Mutable session state
    is owned by `ConversationStore`; everything handed to callers is a copy or an
    immutable record.

Determinism:
    The classes are purely structural. Timestamps are supplied by callers so that
    tests can drive a fake clock.
"""

from dataclasses import dataclass, field
from enum import Enum

import numpy as np


USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)


@dataclass(frozen=True)
class Message:
    """One conversation turn as stored and as sent to the completion service."""

    role: str
    text: str
    created_at: float

    def as_chat(self) -> dict[str, str]:
        """Return the OpenAI-style `{"role", "content"}` mapping."""
        return {"role": self.role, "content": self.text}


@dataclass
class ConversationSession:
    """Bounded message history for one conversation id.

    Attributes:
        id: Opaque conversation key.
        owner_id: User that created the conversation.
        messages: Chronological history, at most `max_history` long.
        created_at: Creation timestamp.
        last_active_at: Timestamp of the latest append; never decreases.
    """

    id: str
    owner_id: str
    created_at: float
    last_active_at: float
    messages: list[Message] = field(default_factory=list)


@dataclass(frozen=True)
class InteractionRecord:
    """A delivered response awaiting feedback.

    Held in `InteractionCache` until feedback consumes it or the TTL expires.
    `candidate_embedding` is the exact vector that was scored, so a rating
    trains on it without re-embedding; it is `None` for replies delivered
    unranked, which feedback re-embeds from `generated_text`.
    """

    response_id: str
    user_id: str
    conversation_id: str
    prompt_text: str
    generated_text: str
    candidate_embedding: np.ndarray | None
    prompt_embedding: np.ndarray | None
    temperature: float
    score: float | None
    created_at: float


@dataclass(frozen=True)
class FeedbackRecord:
    """One applied rating, as written to the append-only training log."""

    response_id: str
    user_id: str
    label: float
    text: str
    created_at: float

    def to_json(self) -> dict:
        return {
            "response_id": self.response_id,
            "user_id": self.user_id,
            "label": self.label,
            "text": self.text,
            "created_at": self.created_at,
        }


class TurnState(str, Enum):
    """Stages of one chat turn in `ResponseOrchestrator`."""

    COLLECTING_CONTEXT = "collecting_context"
    GENERATING_CANDIDATES = "generating_candidates"
    EMBEDDING = "embedding"
    RANKING = "ranking"
    SELECTED = "selected"
    DELIVERED = "delivered"
    DEGRADED_DELIVERED = "degraded_delivered"


@dataclass(frozen=True)
class Candidate:
    """One generated response before ranking."""

    index: int
    temperature: float
    text: str


@dataclass(frozen=True)
class TurnResult:
    """Outcome of `ResponseOrchestrator.turn`.

    Attributes:
        text: Delivered assistant text.
        response_id: Key for later feedback. Feedback on the canned apology is
            not accepted.
        conversation_id: Conversation the turn was appended to.
        state: `DELIVERED` or `DEGRADED_DELIVERED`.
        score: Ranker score of the chosen candidate, `None` when unranked.
        temperature: Sampling temperature of the chosen text, `None` for the
            canned apology.
        candidates: Number of candidates that survived generation.
    """

    text: str
    response_id: str
    conversation_id: str
    state: TurnState
    score: float | None = None
    temperature: float | None = None
    candidates: int = 0

    @property
    def degraded(self) -> bool:
        return self.state is TurnState.DEGRADED_DELIVERED
