"""Retry/backoff policy for external service calls.

Architectural role:
    Wraps one awaitable factory (a completion or embedding call) with a per-attempt
    timeout and exponential backoff. The policy object is passed into the client
    wrappers and can be tested without any network.

Retry behavior:
    - Retries on `UpstreamUnavailable` and per-attempt timeouts.
    - Does not retry `InvalidInputError` or unexpected exceptions.
    - Delay before attempt `n+1` is `backoff_seconds * 2**n`, capped at
      `max_backoff_seconds`.
    - After the last attempt the final error is re-raised; timeouts are converted
      to the policy's `timeout_error` type so callers only handle the taxonomy.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from twinlearn.errors import UpstreamUnavailable


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule.

    Attributes:
        max_attempts: Total attempts, including the first one.
        backoff_seconds: Base delay for exponential backoff.
        max_backoff_seconds: Upper bound for a single delay.
        timeout_seconds: Per-attempt timeout; `None` disables it.
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    timeout_seconds: float | None = None

    def backoff(self, attempt: int) -> float:
        """Compute exponential backoff delay after a failed attempt."""
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** attempt))

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        label: str = "call",
        timeout_error: type[UpstreamUnavailable] = UpstreamUnavailable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """Invoke `call` until it succeeds or attempts are exhausted.

        Args:
            call: Zero-argument factory returning a fresh awaitable per attempt.
            label: Short description used in log lines.
            timeout_error: Error type raised when the last attempt timed out.
            sleep: Injectable sleep, replaced in tests.

        Returns:
            The first successful result.

        Raises:
            UpstreamUnavailable: When every attempt failed or timed out.
        """
        attempts = max(1, self.max_attempts)
        last_error: UpstreamUnavailable | None = None

        for attempt in range(attempts):
            try:
                if self.timeout_seconds is None:
                    return await call()
                return await asyncio.wait_for(call(), timeout=self.timeout_seconds)

            except asyncio.TimeoutError:
                last_error = timeout_error(
                    f"{label} timed out after {self.timeout_seconds}s"
                )

            except UpstreamUnavailable as exc:
                last_error = exc

            if attempt < attempts - 1:
                delay = self.backoff(attempt)
                logger.debug(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    label, attempt + 1, attempts, last_error, delay,
                )
                await sleep(delay)

        logger.warning("%s failed after %d attempts: %s", label, attempts, last_error)
        raise last_error
