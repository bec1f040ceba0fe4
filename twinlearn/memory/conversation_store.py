"""Short-term conversation memory with bounded, expiring histories.

Purpose of this abstraction:
    Hold the active message history of every conversation in process memory so
    the orchestrator can hand a bounded context window to the completion service.
    Each store instance owns its sessions; nothing is module-global, so tests and
    embedders can run isolated stores side by side.

Bounding and expiry:
    - Each session keeps at most `max_history` messages; appends beyond the bound
      drop the oldest messages first.
    - A session idle for longer than `session_ttl` seconds is removed by the next
      `sweep_expired` call, never before.
    - `last_active_at` only moves forward, even if the injected clock does not.

Concurrency model:
    Mutations of one conversation are serialized by a per-id `asyncio.Lock`
    (`KeyedLocks`); different conversations never contend. The TTL sweep takes the
    same per-id lock and re-checks expiry after acquiring it, so a session being
    appended to is never evicted mid-mutation.

Failure handling:
    Only programmer errors raise: empty or non-string ids and unknown roles
    produce `InvalidInputError`. Unknown ids read as empty history.
"""

import logging
import time
import uuid
from dataclasses import replace
from typing import Callable

from twinlearn.core.types import ROLES, ConversationSession, Message
from twinlearn.errors import InvalidInputError
from twinlearn.learning.locks import KeyedLocks


logger = logging.getLogger(__name__)


def _require_id(value, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{name} must be a non-empty string")
    return value


class ConversationStore:
    """In-memory conversation histories keyed by conversation id.

    Args:
        max_history: Maximum messages retained per conversation.
        session_ttl: Idle seconds after which a session is swept.
        clock: Wall-clock source, replaced in tests.
    """

    def __init__(
        self,
        max_history: int = 20,
        session_ttl: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be >= 1")
        self.max_history = max_history
        self.session_ttl = session_ttl
        self._clock = clock
        self._sessions: dict[str, ConversationSession] = {}
        self._locks = KeyedLocks()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions

    def new_message(self, role: str, text: str) -> Message:
        """Build a `Message` stamped with the store clock."""
        return Message(role=role, text=str(text), created_at=self._clock())

    async def create(self, owner_id: str) -> str:
        """Create an empty conversation for `owner_id` and return its id."""
        _require_id(owner_id, "owner_id")
        conversation_id = f"{owner_id}-{uuid.uuid4()}"
        async with self._locks.hold(conversation_id):
            now = self._clock()
            self._sessions[conversation_id] = ConversationSession(
                id=conversation_id,
                owner_id=owner_id,
                created_at=now,
                last_active_at=now,
            )
        logger.info("Created conversation %s", conversation_id)
        return conversation_id

    async def append(self, conversation_id: str, owner_id: str, message: Message) -> None:
        """Append `message`, creating the session on first use.

        Side effects:
            - Creates the session when `conversation_id` is unknown.
            - Drops the oldest messages while the history exceeds `max_history`.
            - Advances `last_active_at` under the same lock as the append.
        """
        _require_id(conversation_id, "conversation_id")
        _require_id(owner_id, "owner_id")
        if message.role not in ROLES:
            raise InvalidInputError(f"unsupported message role: {message.role!r}")

        async with self._locks.hold(conversation_id):
            now = self._clock()
            session = self._sessions.get(conversation_id)
            if session is None:
                session = ConversationSession(
                    id=conversation_id,
                    owner_id=owner_id,
                    created_at=now,
                    last_active_at=now,
                )
                self._sessions[conversation_id] = session
                logger.debug("Created conversation %s on first append", conversation_id)

            session.messages.append(message)
            overflow = len(session.messages) - self.max_history
            if overflow > 0:
                del session.messages[:overflow]

            session.last_active_at = max(session.last_active_at, now)

    async def get_window(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Return the most recent `limit` messages in chronological order.

        Unknown ids and non-positive limits return an empty list.
        """
        _require_id(conversation_id, "conversation_id")
        limit = self.max_history if limit is None else limit
        if limit <= 0:
            return []

        async with self._locks.hold(conversation_id):
            session = self._sessions.get(conversation_id)
            if session is None:
                return []
            return list(session.messages[-limit:])

    async def get(self, conversation_id: str) -> ConversationSession | None:
        """Return a detached snapshot of one session, or `None`."""
        _require_id(conversation_id, "conversation_id")
        async with self._locks.hold(conversation_id):
            session = self._sessions.get(conversation_id)
            if session is None:
                return None
            return replace(session, messages=list(session.messages))

    def list_for_owner(self, owner_id: str) -> list[dict]:
        """Summaries of every conversation owned by `owner_id`, oldest first."""
        _require_id(owner_id, "owner_id")
        summaries = [
            {
                "id": session.id,
                "message_count": len(session.messages),
                "created_at": session.created_at,
                "last_active_at": session.last_active_at,
            }
            for session in self._sessions.values()
            if session.owner_id == owner_id
        ]
        return sorted(summaries, key=lambda s: s["created_at"])

    async def delete(self, conversation_id: str) -> bool:
        """Remove a conversation; returns whether it existed."""
        _require_id(conversation_id, "conversation_id")
        async with self._locks.hold(conversation_id):
            removed = self._sessions.pop(conversation_id, None) is not None
        if removed:
            logger.info("Deleted conversation %s", conversation_id)
        return removed

    async def sweep_expired(self, now: float | None = None) -> int:
        """Remove sessions idle for longer than `session_ttl`.

        Returns:
            Number of sessions removed.
        """
        now = self._clock() if now is None else now
        candidates = [
            conversation_id
            for conversation_id, session in list(self._sessions.items())
            if now - session.last_active_at > self.session_ttl
        ]

        removed = 0
        for conversation_id in candidates:
            async with self._locks.hold(conversation_id):
                session = self._sessions.get(conversation_id)
                if session is None or now - session.last_active_at <= self.session_ttl:
                    continue
                del self._sessions[conversation_id]
                removed += 1

        if removed:
            logger.info("Cleared %d expired conversations", removed)
        return removed
