"""Short-lived cache of delivered interactions awaiting feedback.

Architectural role:
    Maps a delivered response id to the `InteractionRecord` describing it, so
    `FeedbackIngestor` can train on the exact embedding that was scored, or
    re-embed the reply when the turn was delivered unranked.

Expiry model:
    Backed by `cachetools.TTLCache` driven by the injected clock. A record lives
    for `ttl` seconds after it is stored; `sweep_expired` purges eagerly, reads
    never return an expired record. `maxsize` bounds memory; when it is reached
    the least recently stored record is dropped first.

Concurrency model:
    All operations are synchronous and contain no suspension points, so on a
    single event loop each call is atomic. `pop` is the only way feedback
    consumes a record, which guarantees a record is applied at most once.
"""

import logging
import time
from typing import Callable

from cachetools import TTLCache

from twinlearn.core.types import InteractionRecord


logger = logging.getLogger(__name__)


class InteractionCache:
    """Response-id keyed `InteractionRecord` store with TTL expiry."""

    def __init__(
        self,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.time,
        maxsize: int = 100_000,
    ) -> None:
        self.ttl = ttl
        self._records: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, response_id: str) -> bool:
        return response_id in self._records

    def put(self, record: InteractionRecord) -> None:
        self._records[record.response_id] = record

    def get(self, response_id: str) -> InteractionRecord | None:
        """Return a live record without consuming it."""
        return self._records.get(response_id)

    def pop(self, response_id: str) -> InteractionRecord | None:
        """Remove and return a live record."""
        record = self._records.pop(response_id, None)
        if record is None:
            logger.debug("Interaction %s is unknown, expired, or already consumed", response_id)
        return record

    def discard_user(self, user_id: str) -> int:
        """Drop every record owned by `user_id`."""
        doomed = [rid for rid, record in list(self._records.items()) if record.user_id == user_id]
        for response_id in doomed:
            self._records.pop(response_id, None)
        return len(doomed)

    def sweep_expired(self, now: float | None = None) -> int:
        """Purge expired records; returns how many were removed."""
        return len(self._records.expire(now))
