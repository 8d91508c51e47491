"""Permalink format shared by the relay and the recovery scan.

Messages posted by the relay embed the subject's permalink; the recovery
cursor store parses the same link back out, so both sides must use these
helpers.
"""

from __future__ import annotations

import re
from typing import Optional

PERMALINK_TEMPLATE = "https://x.com/{handle}/status/{item_id}"
_DEFAULT_HANDLE = "i"
_ID_PLACEHOLDER = "ITEMID"
_ANY_STATUS_PATTERN = re.compile(r"/status/(\d+)")


def build_permalink(handle: str, item_id: int) -> str:
    """Return the canonical permalink for an item."""

    return PERMALINK_TEMPLATE.format(handle=handle or _DEFAULT_HANDLE, item_id=item_id)


def permalink_pattern(handle: str) -> re.Pattern:
    """Compile the exact permalink ``build_permalink`` emits for ``handle``."""

    literal = re.escape(PERMALINK_TEMPLATE.format(handle=handle or _DEFAULT_HANDLE, item_id=_ID_PLACEHOLDER))
    return re.compile(literal.replace(_ID_PLACEHOLDER, r"(\d+)"))


def extract_item_ids(text: str, handle: Optional[str] = None) -> list[int]:
    """Return item ids embedded in a message, in order of appearance.

    With ``handle`` only the relay's own permalinks for that account count;
    without it any ``/status/<id>`` link does.
    """

    pattern = _ANY_STATUS_PATTERN if handle is None else permalink_pattern(handle)
    return [int(raw) for raw in pattern.findall(text or "")]
