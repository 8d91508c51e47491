"""Shared notification formatting helpers.

Keeping formatting here prevents drift between channel adapters. Every
message ends with the item's permalink on its own line; the recovery cursor
store parses that link back out of the chat history.
"""

from __future__ import annotations

import html
from typing import Callable

from core.config import NotificationConfig
from core.models import Item

NEW_HEADER = "🚨 New post alert"
INITIAL_HEADER = "🔔 Hey, check out this post"


def _header(initial: bool, mention: str) -> str:
    header = INITIAL_HEADER if initial else NEW_HEADER
    if mention:
        header = f"{header} {mention}"
    return f"{header}!"


def _snippet(item: Item, snippet_chars: int) -> str:
    text = " ".join(item.text.split())
    if len(text) <= snippet_chars:
        return text
    return text[: snippet_chars - 1].rstrip() + "…"


def _format_markdown(item: Item, initial: bool, mention: str, excerpt: str) -> str:
    """Create the Markdown body used with Telethon's ``md`` parse mode."""

    def escape_md(value: str) -> str:
        for ch in r"*[`":
            value = value.replace(ch, f"\\{ch}")
        return value

    lines = [f"**{escape_md(_header(initial, mention))}**"]
    if excerpt:
        lines.extend(["", escape_md(excerpt)])
    lines.extend(["", item.permalink])
    return "\n".join(lines)


def _format_html(item: Item, initial: bool, mention: str, excerpt: str) -> str:
    """Create the HTML body used by the Bot API adapter."""

    safe_link = html.escape(item.permalink)
    parts = [f"<b>{html.escape(_header(initial, mention))}</b>"]
    if excerpt:
        parts.extend(["", html.escape(excerpt)])
    parts.extend(["", f"<a href=\"{safe_link}\">{safe_link}</a>"])
    return "\n".join(parts)


def format_notification(
    item: Item,
    initial: bool,
    mention: str,
    mode: str,
    include_text: bool = False,
    snippet_chars: int = 280,
) -> str:
    """Return the notification formatted for the requested mode."""

    excerpt = _snippet(item, snippet_chars) if include_text else ""
    if mode == "markdown":
        return _format_markdown(item, initial, mention, excerpt)
    if mode == "html":
        return _format_html(item, initial, mention, excerpt)
    raise ValueError(f"Unsupported notification format: {mode}")


def build_formatter(config: NotificationConfig) -> Callable[[Item, bool], str]:
    """Bind notification settings into the formatter the relay calls."""

    def _format(item: Item, initial: bool) -> str:
        return format_notification(
            item,
            initial,
            mention=config.mention,
            mode=config.format,
            include_text=config.include_text,
            snippet_chars=config.snippet_chars,
        )

    return _format
