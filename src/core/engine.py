"""Relay engine: one fetch -> dedup -> deliver -> advance pass per tick.

This module is integration-agnostic. It only relies on ports for the feed,
the chat and cursor persistence, so every deployment variant is the same
engine with a different cursor store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from core.cancellation import until_shutdown
from core.errors import (
    AuthFailure,
    ChannelUnavailable,
    FetchError,
    NotFound,
    Stalled,
    TickCancelled,
    TransientFetchError,
)
from core.governor import Clock, RateLimitGovernor, utc_now
from core.models import Cursor, PollBatch, TickReport, TickStatus
from core.ordering import ColdStartPolicy, plan_delivery
from core.ports import CursorStore, Relay, UpstreamFeed
from core.scheduler import TickScheduler

LOGGER = logging.getLogger(__name__)


class RelayEngine:
    """Orchestrates fetching, ordering, delivery and cursor advancement."""

    def __init__(
        self,
        feed: UpstreamFeed,
        governor: RateLimitGovernor,
        cursor_store: CursorStore,
        relay: Relay,
        cold_start: ColdStartPolicy = ColdStartPolicy.BASELINE,
        clock: Clock = utc_now,
    ) -> None:
        self._feed = feed
        self._governor = governor
        self._store = cursor_store
        self._relay = relay
        self._cold_start = cold_start
        self._clock = clock

    @property
    def subject_id(self) -> str:
        return self._feed.subject_id

    async def prepare(self) -> Cursor:
        """Load the starting cursor. ChannelUnavailable here is fatal."""

        cursor = await self._store.load()
        if cursor is None:
            LOGGER.info("Cold start for subject %s (policy=%s)", self.subject_id, self._cold_start.value)
        else:
            LOGGER.info("Resuming subject %s after item %s", self.subject_id, cursor)
        return cursor

    async def tick(self, shutdown: Optional[asyncio.Event] = None) -> TickReport:
        """Run one tick and return its report; never raises for classified errors."""

        started = time.monotonic()
        cursor = await self._store.read()
        report = TickReport(
            subject_id=self.subject_id,
            started_at=self._clock(),
            cursor_before=cursor,
            cursor_after=cursor,
        )
        LOGGER.info("Checking for new items: subject=%s cursor=%s", self.subject_id, cursor)

        try:
            batch = await self._governor.fetch(self._feed, cursor, shutdown)
        except Stalled as exc:
            self._fail(report, TickStatus.RATE_LIMIT_STALLED, exc)
        except AuthFailure as exc:
            self._fail(report, TickStatus.AUTH_FAILURE, exc, fatal=True)
        except NotFound as exc:
            self._fail(report, TickStatus.NOT_FOUND, exc)
        except TransientFetchError as exc:
            self._fail(report, TickStatus.TRANSIENT, exc)
        except FetchError as exc:
            self._fail(report, TickStatus.UNKNOWN, exc)
        except TickCancelled as exc:
            self._fail(report, TickStatus.CANCELLED, exc)
        else:
            report.items_fetched = len(batch.items)
            await self._deliver(cursor, batch, report, shutdown)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        self._log_report(report)
        return report

    async def _deliver(
        self,
        cursor: Cursor,
        batch: PollBatch,
        report: TickReport,
        shutdown: Optional[asyncio.Event],
    ) -> None:
        plan = plan_delivery(cursor, batch, self._cold_start)
        if plan.is_empty:
            report.status = TickStatus.IDLE
            return

        # Items are sent strictly one after another so ordering holds.
        last_attempted: Optional[int] = None
        try:
            for item in plan.items:
                outcome = await until_shutdown(self._relay.deliver(item, initial=plan.initial), shutdown)
                report.outcomes.append(outcome)
                last_attempted = item.id
        except ChannelUnavailable as exc:
            self._fail(report, TickStatus.CHANNEL_UNAVAILABLE, exc)
            await self._advance(report, last_attempted)
            return
        except TickCancelled as exc:
            self._fail(report, TickStatus.CANCELLED, exc)
            await self._advance(report, last_attempted)
            return

        # The whole batch advances at once, failed deliveries included.
        await self._advance(report, plan.advance_to)
        report.status = TickStatus.DELIVERED if plan.items else TickStatus.BASELINE

    async def _advance(self, report: TickReport, item_id: Optional[int]) -> None:
        if item_id is None:
            return
        if report.cursor_before is not None and item_id <= report.cursor_before:
            return
        await self._store.advance(item_id)
        report.cursor_after = item_id

    def _fail(self, report: TickReport, status: TickStatus, exc: Exception, fatal: bool = False) -> None:
        report.status = status
        report.error = f"{type(exc).__name__}: {exc}"
        report.fatal = fatal

    def _log_report(self, report: TickReport) -> None:
        if report.status in (TickStatus.IDLE, TickStatus.DELIVERED, TickStatus.BASELINE):
            level = logging.WARNING if report.failed else logging.INFO
        elif report.status in (TickStatus.TRANSIENT, TickStatus.CANCELLED, TickStatus.CHANNEL_UNAVAILABLE):
            level = logging.WARNING
        else:
            level = logging.ERROR
        LOGGER.log(
            level,
            "Tick done: subject=%s status=%s cursor=%s->%s fetched=%s delivered=%s failed=%s duration_ms=%s started_at=%s error=%s",
            report.subject_id,
            report.status.value,
            report.cursor_before,
            report.cursor_after,
            report.items_fetched,
            report.delivered,
            report.failed,
            report.duration_ms,
            report.started_at.isoformat(),
            report.error or "-",
        )


async def serve(engine: RelayEngine, scheduler: TickScheduler) -> None:
    """Prepare the engine and relay until the scheduler stops.

    A fatal tick report (authentication failure) stops the scheduler.
    """

    await engine.prepare()

    async def _tick(shutdown: asyncio.Event) -> TickReport:
        report = await engine.tick(shutdown)
        if report.fatal:
            LOGGER.error("Stopping relay for subject %s: %s", engine.subject_id, report.error)
            scheduler.stop()
        return report

    scheduler.start(_tick)
    await scheduler.wait_stopped()
