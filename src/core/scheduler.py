"""Single-flight periodic tick scheduler built on APScheduler."""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.events import EVENT_JOB_MAX_INSTANCES
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

LOGGER = logging.getLogger(__name__)

TickFn = Callable[[asyncio.Event], Awaitable[Any]]


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class TickScheduler:
    """Run a tick immediately and then every ``interval_seconds``.

    At most one tick is in flight; a firing that arrives while a tick is
    still running is dropped by APScheduler (``max_instances=1``) rather than
    queued. ``stop()`` sets the shared shutdown event handed to every tick so
    suspended waits can abort, and lets an in-flight tick finish.
    """

    JOB_ID = "relay-tick"

    def __init__(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._interval = float(interval_seconds)
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._tick_fn: Optional[TickFn] = None
        self._shutdown = asyncio.Event()
        self._stopped = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self.state = SchedulerState.IDLE
        self.ticks_started = 0
        self.ticks_dropped = 0

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown

    def start(self, tick_fn: TickFn) -> None:
        """Register the interval job; must be called from a running loop."""

        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(f"Cannot start a scheduler in state {self.state.value}")

        self._tick_fn = tick_fn
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop(), timezone=timezone.utc)
        self._scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)
        self._scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self._interval, timezone=timezone.utc),
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.start()
        self.state = SchedulerState.RUNNING
        LOGGER.info("Tick scheduler started: interval=%ss", self._interval)

    def stop(self) -> None:
        """Stop scheduling further ticks. Safe to call repeatedly."""

        if self.state is SchedulerState.STOPPED:
            return
        self.state = SchedulerState.STOPPED
        self._shutdown.set()
        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(self.JOB_ID)
            except JobLookupError:
                pass
        # AsyncIOExecutor.shutdown cancels running jobs; close once idle.
        if self._idle.is_set():
            self._close()
        self._stopped.set()
        LOGGER.info("Tick scheduler stopped")

    async def wait_stopped(self) -> None:
        """Return once stopped and no tick is in flight."""

        await self._stopped.wait()
        await self._idle.wait()
        self._close()

    def _close(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def _on_max_instances(self, event) -> None:
        self.ticks_dropped += 1
        LOGGER.warning("Previous tick still running; dropping firing at %s", event.scheduled_run_times)

    async def _run_tick(self) -> None:
        if self.state is not SchedulerState.RUNNING or self._tick_fn is None:
            return
        self._idle.clear()
        self.ticks_started += 1
        try:
            await self._tick_fn(self._shutdown)
        except Exception:
            LOGGER.exception("Tick raised an unexpected error")
        finally:
            self._idle.set()
            if self.state is SchedulerState.STOPPED:
                asyncio.get_running_loop().call_soon(self._close)
