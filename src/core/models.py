"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# Last delivered item id; None until the first tick establishes a baseline.
Cursor = Optional[int]


@dataclass(frozen=True)
class Item:
    """One post fetched from the upstream timeline."""

    id: int
    created_at: Optional[datetime]
    permalink: str
    text: str = ""


@dataclass(frozen=True)
class RateLimitState:
    """Rate-limit snapshot returned alongside a fetch response."""

    remaining: int
    limit: int
    reset_at: datetime

    def seconds_until_reset(self, now: datetime) -> float:
        return max(0.0, (self.reset_at - now).total_seconds())


@dataclass(frozen=True)
class PollBatch:
    """Items returned by one fetch call, newest-first."""

    items: tuple[Item, ...]
    rate_limit: Optional[RateLimitState] = None

    @property
    def newest_id(self) -> Optional[int]:
        if not self.items:
            return None
        return max(item.id for item in self.items)


@dataclass(frozen=True)
class ChannelMessage:
    """A message read back from the downstream chat."""

    author_id: Optional[int]
    text: str
    outgoing: bool = False


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of delivering a single item."""

    item_id: int
    delivered: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls, item_id: int) -> "DeliveryOutcome":
        return cls(item_id=item_id, delivered=True)

    @classmethod
    def failed(cls, item_id: int, reason: str) -> "DeliveryOutcome":
        return cls(item_id=item_id, delivered=False, reason=reason)


class TickStatus(str, enum.Enum):
    IDLE = "idle"
    DELIVERED = "delivered"
    BASELINE = "baseline"
    RATE_LIMIT_STALLED = "rate_limit_stalled"
    AUTH_FAILURE = "auth_failure"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    CANCELLED = "cancelled"


@dataclass
class TickReport:
    """Summary of one fetch -> dedup -> deliver -> advance pass."""

    subject_id: str
    started_at: datetime
    cursor_before: Cursor
    cursor_after: Cursor = None
    status: TickStatus = TickStatus.IDLE
    items_fetched: int = 0
    outcomes: list[DeliveryOutcome] = field(default_factory=list)
    error: Optional[str] = None
    fatal: bool = False
    duration_ms: int = 0

    @property
    def delivered(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.delivered)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.delivered)
