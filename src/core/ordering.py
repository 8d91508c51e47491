"""Deduplication and ordering of fetched batches (core domain)."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Optional

from core.models import Cursor, Item, PollBatch


class ColdStartPolicy(str, enum.Enum):
    """What the first tick does when no cursor is known.

    - baseline: adopt the newest id and deliver nothing
    - announce: deliver only the newest item as an initial post, then adopt it
    """

    BASELINE = "baseline"
    ANNOUNCE = "announce"


@dataclass(frozen=True)
class DeliveryPlan:
    """Items to deliver this tick plus the id the cursor moves to afterwards."""

    items: tuple[Item, ...]
    advance_to: Optional[int]
    initial: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.items and self.advance_to is None


def select_new_items(cursor: Cursor, items: Iterable[Item]) -> list[Item]:
    """Return items strictly newer than ``cursor``, oldest-first, one per id."""

    unique: dict[int, Item] = {}
    for item in items:
        if cursor is not None and item.id <= cursor:
            continue
        unique.setdefault(item.id, item)
    return [unique[item_id] for item_id in sorted(unique)]


def plan_delivery(cursor: Cursor, batch: PollBatch, policy: ColdStartPolicy) -> DeliveryPlan:
    """Decide what a tick delivers for ``batch`` given the current cursor."""

    if cursor is None:
        newest = batch.newest_id
        if newest is None:
            return DeliveryPlan(items=(), advance_to=None)
        if policy is ColdStartPolicy.ANNOUNCE:
            latest = next(item for item in batch.items if item.id == newest)
            return DeliveryPlan(items=(latest,), advance_to=newest, initial=True)
        return DeliveryPlan(items=(), advance_to=newest)

    fresh = select_new_items(cursor, batch.items)
    if not fresh:
        return DeliveryPlan(items=(), advance_to=None)
    return DeliveryPlan(items=tuple(fresh), advance_to=fresh[-1].id)
