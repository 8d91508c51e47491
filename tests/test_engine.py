from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from adapters.notification_formatting import build_formatter
from core.config import NotificationConfig
from core.cursor_store import MemoryCursorStore, RecoveryScanCursorStore
from core.engine import RelayEngine, serve
from core.errors import AuthFailure, ChannelUnavailable, NotFound, RateLimited, TransientFetchError, UnknownFetchError
from core.governor import RateLimitGovernor, utc_now
from core.models import ChannelMessage, Item, PollBatch, TickStatus
from core.ordering import ColdStartPolicy
from core.permalinks import build_permalink, extract_item_ids
from core.relay import ChannelRelay
from core.scheduler import SchedulerState, TickScheduler

OWN_ID = 7


def _item(item_id: int) -> Item:
    return Item(id=item_id, created_at=None, permalink=build_permalink("someone", item_id))


class TimelineFeed:
    """Serve posts newer than the cursor, newest-first, one page at a time."""

    subject_id = "42"

    def __init__(self, ids=(), page_size: int = 5) -> None:
        self.ids = list(ids)
        self.page_size = page_size
        self.error: Optional[Exception] = None
        self.calls: list = []

    async def fetch_since(self, cursor):
        self.calls.append(cursor)
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        newer = sorted((i for i in self.ids if cursor is None or i > cursor), reverse=True)
        return PollBatch(items=tuple(_item(i) for i in newer[: self.page_size]))


class FixedFeed:
    subject_id = "42"

    def __init__(self, batch: PollBatch) -> None:
        self.batch = batch

    async def fetch_since(self, cursor):
        return self.batch


class FakeChannel:
    def __init__(self, history: Optional[list[ChannelMessage]] = None) -> None:
        self.sent: list[str] = []
        self.history = history if history is not None else []
        self.fail_on: set[int] = set()
        self.unavailable_on: set[int] = set()

    async def send(self, text: str) -> None:
        item_id = extract_item_ids(text)[-1]
        if item_id in self.unavailable_on:
            raise ChannelUnavailable("chat unreachable")
        if item_id in self.fail_on:
            raise RuntimeError("message rejected")
        self.sent.append(text)
        self.history.insert(0, ChannelMessage(author_id=OWN_ID, text=text, outgoing=True))

    async def fetch_recent(self, limit: int) -> list[ChannelMessage]:
        return self.history[:limit]

    async def own_id(self) -> int:
        return OWN_ID

    @property
    def sent_ids(self) -> list[int]:
        return [extract_item_ids(text)[-1] for text in self.sent]


async def _no_sleep(seconds: float, shutdown=None) -> bool:
    return True


def _engine(feed, channel, store=None, cold_start=ColdStartPolicy.BASELINE) -> RelayEngine:
    governor = RateLimitGovernor(stall_budget_seconds=900, sleep=_no_sleep)
    relay = ChannelRelay(channel, build_formatter(NotificationConfig()))
    return RelayEngine(feed, governor, store or MemoryCursorStore(), relay, cold_start=cold_start)


def _run(engine: RelayEngine, ticks: int = 1):
    async def _exercise():
        await engine.prepare()
        return [await engine.tick() for _ in range(ticks)]

    return asyncio.run(_exercise())


def test_baseline_cold_start_then_delivers_only_new_items() -> None:
    feed = TimelineFeed([1, 2, 3])
    channel = FakeChannel()
    store = MemoryCursorStore()
    engine = _engine(feed, channel, store)

    async def _exercise():
        await engine.prepare()
        first = await engine.tick()
        feed.ids.extend([4, 5])
        second = await engine.tick()
        third = await engine.tick()
        return first, second, third

    first, second, third = asyncio.run(_exercise())

    assert first.status is TickStatus.BASELINE
    assert first.cursor_after == 3
    assert second.status is TickStatus.DELIVERED
    assert (second.cursor_before, second.cursor_after) == (3, 5)
    assert third.status is TickStatus.IDLE
    assert channel.sent_ids == [4, 5]


def test_announce_cold_start_delivers_newest_with_initial_wording() -> None:
    channel = FakeChannel()
    (report,) = _run(_engine(TimelineFeed([1, 2, 3]), channel, cold_start=ColdStartPolicy.ANNOUNCE))

    assert channel.sent_ids == [3]
    assert "check out this post" in channel.sent[0]
    assert report.cursor_after == 3


def test_empty_timeline_keeps_cursor_unset() -> None:
    channel = FakeChannel()
    (report,) = _run(_engine(TimelineFeed([]), channel))

    assert report.status is TickStatus.IDLE
    assert report.cursor_after is None


def test_batch_is_delivered_oldest_first_without_duplicates() -> None:
    batch = PollBatch(items=(_item(12), _item(10), _item(11), _item(11), _item(9)))
    channel = FakeChannel()
    store = MemoryCursorStore()
    engine = _engine(FixedFeed(batch), channel, store)

    async def _exercise():
        await engine.prepare()
        await store.advance(9)
        return await engine.tick()

    report = asyncio.run(_exercise())

    assert channel.sent_ids == [10, 11, 12]
    assert report.cursor_after == 12
    assert report.delivered == 3


def test_recovery_resumes_after_last_announced_item() -> None:
    history = [
        ChannelMessage(author_id=99, text="https://x.com/other/status/999"),
        ChannelMessage(author_id=OWN_ID, text=f"🚨 New post alert!\n\n{build_permalink('someone', 100)}", outgoing=True),
    ]
    channel = FakeChannel(history)
    feed = TimelineFeed([98, 99, 100, 101, 102])
    engine = _engine(feed, channel, RecoveryScanCursorStore(channel, "someone"))

    (report,) = _run(engine)

    assert report.cursor_before == 100
    assert channel.sent_ids == [101, 102]

    # A restart rebuilds the cursor from what was just posted.
    feed.ids.append(103)
    restarted = _engine(feed, channel, RecoveryScanCursorStore(channel, "someone"))
    (report,) = _run(restarted)

    assert report.cursor_before == 102
    assert channel.sent_ids == [101, 102, 103]


def test_poison_item_does_not_block_the_batch() -> None:
    feed = TimelineFeed([9])
    channel = FakeChannel()
    channel.fail_on.add(11)
    engine = _engine(feed, channel)

    async def _exercise():
        await engine.prepare()
        await engine.tick()
        feed.ids.extend([10, 11, 12])
        report = await engine.tick()
        again = await engine.tick()
        return report, again

    report, again = asyncio.run(_exercise())

    assert channel.sent_ids == [10, 12]
    assert report.status is TickStatus.DELIVERED
    assert (report.delivered, report.failed) == (2, 1)
    assert report.cursor_after == 12
    assert again.status is TickStatus.IDLE


def test_channel_outage_mid_batch_keeps_undelivered_items() -> None:
    feed = TimelineFeed([9])
    channel = FakeChannel()
    engine = _engine(feed, channel)

    async def _exercise():
        await engine.prepare()
        await engine.tick()
        feed.ids.extend([10, 11, 12])
        channel.unavailable_on.add(11)
        outage = await engine.tick()
        channel.unavailable_on.clear()
        recovered = await engine.tick()
        return outage, recovered

    outage, recovered = asyncio.run(_exercise())

    assert outage.status is TickStatus.CHANNEL_UNAVAILABLE
    assert outage.cursor_after == 10
    assert recovered.cursor_after == 12
    assert channel.sent_ids == [10, 11, 12]


def test_auth_failure_is_fatal_and_keeps_cursor() -> None:
    feed = TimelineFeed([1])
    feed.error = AuthFailure("bad token")
    (report,) = _run(_engine(feed, FakeChannel()))

    assert report.status is TickStatus.AUTH_FAILURE
    assert report.fatal is True
    assert report.cursor_after is None


def test_fetch_errors_are_reported_and_retried_next_tick() -> None:
    for error, status in (
        (TransientFetchError("timeout"), TickStatus.TRANSIENT),
        (NotFound("no such user"), TickStatus.NOT_FOUND),
        (UnknownFetchError("request failed"), TickStatus.UNKNOWN),
    ):
        feed = TimelineFeed([1, 2])
        feed.error = error
        failed, recovered = _run(_engine(feed, FakeChannel()), ticks=2)

        assert failed.status is status
        assert failed.fatal is False
        assert failed.cursor_after is None
        assert recovered.cursor_after == 2


def test_rate_limit_beyond_budget_stalls_the_tick() -> None:
    feed = TimelineFeed([1])
    feed.error = RateLimited(utc_now() + timedelta(hours=2))
    (report,) = _run(_engine(feed, FakeChannel()))

    assert report.status is TickStatus.RATE_LIMIT_STALLED
    assert report.cursor_after is None


def test_tick_after_shutdown_is_cancelled() -> None:
    channel = FakeChannel()
    engine = _engine(TimelineFeed([1]), channel)

    async def _exercise():
        await engine.prepare()
        shutdown = asyncio.Event()
        shutdown.set()
        return await engine.tick(shutdown)

    report = asyncio.run(_exercise())

    assert report.status is TickStatus.CANCELLED
    assert report.cursor_after is None


def test_serve_stops_scheduler_on_fatal_report() -> None:
    feed = TimelineFeed([1])
    feed.error = AuthFailure("revoked")
    engine = _engine(feed, FakeChannel())

    async def _exercise() -> TickScheduler:
        scheduler = TickScheduler(3600)
        await asyncio.wait_for(serve(engine, scheduler), timeout=5)
        return scheduler

    scheduler = asyncio.run(_exercise())

    assert scheduler.state is SchedulerState.STOPPED
    assert scheduler.ticks_started == 1
