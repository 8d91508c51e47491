"""Core configuration dataclasses.

``settings.py`` reads config.json and hands the raw dict to
``relay_config_from_dict``; the dataclasses define the shape the core and the
app layer build from.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from core.ordering import ColdStartPolicy

CURSOR_STRATEGIES = ("memory", "recovery", "sqlite")
NOTIFICATION_METHODS = ("telethon", "bot")
NOTIFICATION_FORMATS = ("markdown", "html")


@dataclass(frozen=True)
class SubjectConfig:
    """Upstream account whose timeline is relayed."""

    user_id: str
    handle: str


@dataclass(frozen=True)
class PollConfig:
    interval_seconds: int = 900
    page_size: int = 5
    exclude: tuple[str, ...] = ("replies",)
    only_since_startup: bool = False


@dataclass(frozen=True)
class RateLimitConfig:
    """Backoff bounds; ``stall_budget_seconds`` defaults to one poll interval."""

    stall_budget_seconds: float
    max_single_wait_seconds: Optional[float] = None
    retry_margin_seconds: float = 1.0


@dataclass(frozen=True)
class CursorConfig:
    strategy: str = "memory"
    scan_limit: int = 20
    rescan_each_tick: bool = False
    db_path: str = "telerelay.db"


@dataclass(frozen=True)
class NotificationConfig:
    """Downstream chat and message formatting settings."""

    method: str = "telethon"
    chat: str = "me"
    mention: str = ""
    format: str = "markdown"
    include_text: bool = False
    snippet_chars: int = 280


@dataclass(frozen=True)
class RelayConfig:
    subject: SubjectConfig
    poll: PollConfig
    rate_limit: RateLimitConfig
    cursor: CursorConfig
    notifications: NotificationConfig
    cold_start: ColdStartPolicy = ColdStartPolicy.BASELINE


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"config.{key} must be an object")
    return value


def _positive_int(section: dict, key: str, default: int, where: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool):
        raise ValueError(f"{where}.{key} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.{key} must be an integer") from exc
    if number <= 0:
        raise ValueError(f"{where}.{key} must be > 0")
    return number


def _optional_float(section: dict, key: str, default: Optional[float], where: str) -> Optional[float]:
    value = section.get(key, default)
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.{key} must be a number") from exc
    if number < 0:
        raise ValueError(f"{where}.{key} must be >= 0")
    return number


def _choice(section: dict, key: str, default: str, choices: tuple[str, ...], where: str) -> str:
    value = str(section.get(key, default)).strip().lower()
    if value not in choices:
        raise ValueError(f"{where}.{key} must be one of {', '.join(choices)}")
    return value


def relay_config_from_dict(raw: dict[str, Any]) -> RelayConfig:
    """Validate the parsed config.json and build a RelayConfig."""

    subject_raw = _section(raw, "subject")
    user_id = str(subject_raw.get("user_id") or "").strip()
    if not user_id.isdigit():
        raise ValueError("subject.user_id must be the numeric account id (see `telerelay lookup-user`)")
    subject = SubjectConfig(user_id=user_id, handle=str(subject_raw.get("handle") or "i").lstrip("@"))

    poll_raw = _section(raw, "poll")
    page_size = _positive_int(poll_raw, "page_size", 5, "poll")
    if not 5 <= page_size <= 100:
        raise ValueError("poll.page_size must be between 5 and 100")
    poll = PollConfig(
        interval_seconds=_positive_int(poll_raw, "interval_seconds", 900, "poll"),
        page_size=page_size,
        exclude=tuple(str(value) for value in poll_raw.get("exclude", ["replies"])),
        only_since_startup=bool(poll_raw.get("only_since_startup", False)),
    )

    rate_raw = _section(raw, "rate_limit")
    stall_budget = _optional_float(rate_raw, "stall_budget_seconds", None, "rate_limit")
    rate_limit = RateLimitConfig(
        stall_budget_seconds=float(poll.interval_seconds) if stall_budget is None else stall_budget,
        max_single_wait_seconds=_optional_float(rate_raw, "max_single_wait_seconds", None, "rate_limit"),
        retry_margin_seconds=_optional_float(rate_raw, "retry_margin_seconds", 1.0, "rate_limit") or 0.0,
    )

    cursor_raw = _section(raw, "cursor")
    cursor = CursorConfig(
        strategy=_choice(cursor_raw, "strategy", "memory", CURSOR_STRATEGIES, "cursor"),
        scan_limit=_positive_int(cursor_raw, "scan_limit", 20, "cursor"),
        rescan_each_tick=bool(cursor_raw.get("rescan_each_tick", False)),
        db_path=str(cursor_raw.get("db_path") or "telerelay.db"),
    )

    notify_raw = _section(raw, "notifications")
    method = _choice(notify_raw, "method", "telethon", NOTIFICATION_METHODS, "notifications")
    default_format = "html" if method == "bot" else "markdown"
    message_format = _choice(notify_raw, "format", default_format, NOTIFICATION_FORMATS, "notifications")
    if method == "bot" and message_format != "html":
        raise ValueError("notifications.format must be html when notifications.method=bot")
    notifications = NotificationConfig(
        method=method,
        chat=str(notify_raw.get("chat") or "me"),
        mention=str(notify_raw.get("mention") or ""),
        format=message_format,
        include_text=bool(notify_raw.get("include_text", False)),
        snippet_chars=_positive_int(notify_raw, "snippet_chars", 280, "notifications"),
    )

    if notifications.method == "bot" and notifications.chat == "me":
        raise ValueError("notifications.chat must be a chat id or @username for bot notifications")
    # The Bot API cannot read chat history, so it cannot back the recovery scan.
    if cursor.strategy == "recovery" and notifications.method == "bot":
        raise ValueError("cursor.strategy=recovery requires notifications.method=telethon")

    cold_start = _choice(raw, "cold_start", ColdStartPolicy.BASELINE.value, tuple(p.value for p in ColdStartPolicy), "config")

    return RelayConfig(
        subject=subject,
        poll=poll,
        rate_limit=rate_limit,
        cursor=cursor,
        notifications=notifications,
        cold_start=ColdStartPolicy(cold_start),
    )
