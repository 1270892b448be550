"""Gap recovery after a dropped stream connection."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from atstream.firehose.errors import RetriesExhaustedError

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = 1.0, maximum: float = 30.0) -> float:
    """Delay before reconnect ``attempt`` (1-based): doubling, capped at ``maximum``."""
    if attempt < 1:
        return 0.0
    return min(base * 2 ** (attempt - 1), maximum)


@dataclass(frozen=True)
class ReconnectPlan:
    """Where and when the next reconnect attempt resumes."""
    cursor: Optional[int]
    attempt: int
    delay: float


class GapRecoveryCoordinator:
    """Plans reconnect attempts with a bounded retry count and backoff.

    The plan always resumes from the cursor it is given, which the client
    passes as the last accepted sequence.
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Initialize the coordinator.

        Args:
            max_retries: Reconnect attempts allowed per outage
            base_delay: Delay before the first attempt, in seconds
            max_delay: Upper bound on any single delay, in seconds
            sleep: Awaitable used for the delay. Defaults to asyncio.sleep.
        """
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep or asyncio.sleep
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    def recover(self, last_cursor: Optional[int]) -> ReconnectPlan:
        """Plan the next reconnect attempt.

        Raises:
            RetriesExhaustedError: All allowed attempts have been used.
        """
        if self._attempts >= self.max_retries:
            raise RetriesExhaustedError(self._attempts, last_cursor)
        self._attempts += 1
        plan = ReconnectPlan(
            cursor=last_cursor,
            attempt=self._attempts,
            delay=backoff_delay(self._attempts, self.base_delay, self.max_delay),
        )
        logger.debug(
            f"Reconnect attempt {plan.attempt}/{self.max_retries} "
            f"from cursor {plan.cursor} in {plan.delay:.1f}s"
        )
        return plan

    async def wait(self, plan: ReconnectPlan) -> None:
        if plan.delay > 0:
            await self._sleep(plan.delay)

    def reset(self) -> None:
        self._attempts = 0
