"""Delivery of single items to the downstream chat."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from core.errors import ChannelUnavailable
from core.models import DeliveryOutcome, Item
from core.ports import Channel

LOGGER = logging.getLogger(__name__)

Formatter = Callable[[Item, bool], str]
OutcomeHook = Callable[[Item, DeliveryOutcome], None]


class ChannelRelay:
    """Format an item and post it as one message.

    ``on_outcome`` is called with every per-item outcome, e.g. to append it to
    the SQLite delivery log.
    """

    def __init__(self, channel: Channel, formatter: Formatter, on_outcome: Optional[OutcomeHook] = None) -> None:
        self._channel = channel
        self._formatter = formatter
        self._on_outcome = on_outcome

    async def deliver(self, item: Item, initial: bool = False) -> DeliveryOutcome:
        """Send ``item``; per-message failures become a failed outcome.

        ChannelUnavailable is re-raised because it affects every remaining
        item, not just this one.
        """

        text = self._formatter(item, initial)
        try:
            await self._channel.send(text)
        except ChannelUnavailable:
            raise
        except Exception as exc:
            LOGGER.exception("Delivery failed for item %s (%s)", item.id, item.permalink)
            outcome = DeliveryOutcome.failed(item.id, f"{type(exc).__name__}: {exc}")
        else:
            LOGGER.info("%s item %s sent: %s", "Initial" if initial else "New", item.id, item.permalink)
            outcome = DeliveryOutcome.ok(item.id)

        if self._on_outcome is not None:
            self._on_outcome(item, outcome)
        return outcome
