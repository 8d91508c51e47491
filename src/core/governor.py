"""Rate-limit governor wrapping upstream fetches.

The governor owns all backoff policy: it turns ``RateLimited`` responses into
bounded, interruptible waits inside a single tick and gives up with
``Stalled`` once the accumulated wait would exceed the tick budget.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from core.cancellation import interruptible_sleep, until_shutdown
from core.errors import RateLimited, Stalled, TickCancelled
from core.models import Cursor, PollBatch, RateLimitState
from core.ports import UpstreamFeed

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleeper = Callable[[float, Optional[asyncio.Event]], Awaitable[bool]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitGovernor:
    """Retry a fetch across rate-limit windows without unbounded waiting."""

    def __init__(
        self,
        stall_budget_seconds: float,
        max_single_wait_seconds: Optional[float] = None,
        retry_margin_seconds: float = 1.0,
        clock: Clock = utc_now,
        sleep: Sleeper = interruptible_sleep,
    ) -> None:
        if stall_budget_seconds < 0:
            raise ValueError("stall_budget_seconds must be >= 0")
        self._stall_budget = float(stall_budget_seconds)
        self._max_single_wait = max_single_wait_seconds
        self._retry_margin = max(0.0, retry_margin_seconds)
        self._clock = clock
        self._sleep = sleep
        self.last_rate_limit: Optional[RateLimitState] = None

    def _reset_in(self, exc: RateLimited) -> float:
        return max(0.0, (exc.retry_at - self._clock()).total_seconds())

    def _exceeds_limits(self, waited: float, reset_in: float) -> bool:
        if self._max_single_wait is not None and reset_in > float(self._max_single_wait):
            return True
        return waited + reset_in > self._stall_budget

    def _wait_for(self, reset_in: float) -> float:
        # The cap trims only the margin, never the wait up to the reset.
        wait = reset_in + self._retry_margin
        if self._max_single_wait is not None:
            wait = max(reset_in, min(wait, float(self._max_single_wait)))
        return wait

    async def fetch(
        self,
        feed: UpstreamFeed,
        cursor: Cursor,
        shutdown: Optional[asyncio.Event] = None,
    ) -> PollBatch:
        """Fetch items newer than ``cursor``, waiting out rate limits.

        Non rate-limit ``FetchError`` subclasses propagate to the caller
        unchanged; the governor never retries them within a tick.
        """

        waited = 0.0
        attempts = 0
        while True:
            attempts += 1
            try:
                batch = await until_shutdown(feed.fetch_since(cursor), shutdown)
            except RateLimited as exc:
                reset_in = self._reset_in(exc)
                if self._exceeds_limits(waited, reset_in):
                    LOGGER.error(
                        "Rate limit backoff exceeds tick budget: subject=%s cursor=%s waited=%.0fs reset_in=%.0fs budget=%.0fs max_single_wait=%s",
                        feed.subject_id,
                        cursor,
                        waited,
                        reset_in,
                        self._stall_budget,
                        self._max_single_wait,
                    )
                    raise Stalled(waited + reset_in, attempts) from exc
                wait = self._wait_for(reset_in)
                resume_at = self._clock() + timedelta(seconds=wait)
                LOGGER.warning(
                    "Rate limit hit: subject=%s cursor=%s attempt=%s retrying in %s minutes (at %s)",
                    feed.subject_id,
                    cursor,
                    attempts,
                    math.ceil(wait / 60),
                    resume_at.isoformat(),
                )
                if not await self._sleep(wait, shutdown):
                    raise TickCancelled("shutdown requested during rate-limit backoff") from exc
                waited += wait
                continue

            self._record(batch.rate_limit)
            return batch

    def _record(self, state: Optional[RateLimitState]) -> None:
        if state is None:
            return
        self.last_rate_limit = state
        reset_in = state.seconds_until_reset(self._clock())
        LOGGER.info(
            "Rate limits: remaining=%s limit=%s reset=%s (in %s minutes)",
            state.remaining,
            state.limit,
            state.reset_at.isoformat(),
            math.ceil(reset_in / 60),
        )
        if state.remaining == 0:
            LOGGER.warning("Rate limit exhausted until %s; the next fetch may be deferred", state.reset_at.isoformat())
