"""Application entry point for the telerelay service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.notification_formatting import build_formatter
from adapters.sqlite_storage import SqliteCursorStore
from adapters.telegram_bot_channel import BotApiChannel
from adapters.telegram_channel import TelethonChannel
from adapters.x_timeline import XTimelineFeed
from client import build_client
from core.config import RelayConfig
from core.cursor_store import MemoryCursorStore, RecoveryScanCursorStore
from core.engine import RelayEngine, serve
from core.governor import RateLimitGovernor, utc_now
from core.relay import ChannelRelay
from core.scheduler import TickScheduler
from session import authorize

NAME = "TELERELAY"
FONT = "tarty-1"

# Environment variables masked in log output unless logging.redact says otherwise.
DEFAULT_REDACT_PATTERNS = ["X_BEARER_TOKEN", "BOT_API", "API_HASH"]


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", DEFAULT_REDACT_PATTERNS):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = settings.resolve_path(file_cfg.get("path", "logs/telerelay.log"))
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _require_env(name: str, purpose: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"{name} is required {purpose}")
    return value


def _install_signal_handlers(scheduler: TickScheduler) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(scheduler.stop))


async def _serve(config: RelayConfig) -> None:
    logger = logging.getLogger(__name__)
    bearer_token = _require_env("X_BEARER_TOKEN", "to poll the X API")

    client = None
    if config.notifications.method == "bot":
        channel = BotApiChannel(
            bot_token=_require_env("BOT_API", "when notifications.method=bot"),
            chat_id=config.notifications.chat,
        )
    else:
        client = build_client()
        await client.connect()
        await authorize(client)
        parse_mode = "html" if config.notifications.format == "html" else "md"
        channel = TelethonChannel(client, chat=config.notifications.chat, parse_mode=parse_mode)
    logger.info("Selected notification method - %s (chat=%s)", config.notifications.method, config.notifications.chat)

    on_outcome = None
    if config.cursor.strategy == "sqlite":
        store = SqliteCursorStore(settings.resolve_path(config.cursor.db_path), config.subject.user_id)
        on_outcome = store.record_delivery
    elif config.cursor.strategy == "recovery":
        store = RecoveryScanCursorStore(
            channel,
            handle=config.subject.handle,
            scan_limit=config.cursor.scan_limit,
            rescan_each_tick=config.cursor.rescan_each_tick,
        )
    else:
        store = MemoryCursorStore()
    logger.info("Cursor strategy - %s", config.cursor.strategy)

    feed = XTimelineFeed(
        subject_id=config.subject.user_id,
        handle=config.subject.handle,
        bearer_token=bearer_token,
        page_size=config.poll.page_size,
        exclude=config.poll.exclude,
        start_time=utc_now() if config.poll.only_since_startup else None,
    )
    governor = RateLimitGovernor(
        stall_budget_seconds=config.rate_limit.stall_budget_seconds,
        max_single_wait_seconds=config.rate_limit.max_single_wait_seconds,
        retry_margin_seconds=config.rate_limit.retry_margin_seconds,
    )
    engine = RelayEngine(
        feed=feed,
        governor=governor,
        cursor_store=store,
        relay=ChannelRelay(channel, build_formatter(config.notifications), on_outcome=on_outcome),
        cold_start=config.cold_start,
    )
    scheduler = TickScheduler(config.poll.interval_seconds)
    _install_signal_handlers(scheduler)

    logger.info(
        "Relaying @%s (%s) every %ss",
        config.subject.handle,
        config.subject.user_id,
        config.poll.interval_seconds,
    )
    try:
        await serve(engine, scheduler)
    finally:
        await feed.aclose()
        if isinstance(channel, BotApiChannel):
            await channel.aclose()
        if client is not None:
            await client.disconnect()
    logger.info("Relay stopped")


def _run() -> None:
    _print_banner()
    _configure_logging()
    load_dotenv()
    config = settings.relay_config()

    logging.getLogger(__name__).info("Starting telerelay")
    asyncio.run(_serve(config))


def _login() -> None:
    _print_banner()
    _configure_logging()
    client = build_client()

    async def _run_login() -> None:
        await client.connect()
        try:
            await authorize(client)
            me = await client.get_me()
            print(f"Session authorized for id {me.id}")
        finally:
            await client.disconnect()

    asyncio.run(_run_login())


def _lookup_user(username: str) -> None:
    _configure_logging()
    load_dotenv()
    bearer_token = _require_env("X_BEARER_TOKEN", "to query the X API")

    async def _run_lookup() -> str:
        feed = XTimelineFeed(subject_id="", handle=username, bearer_token=bearer_token)
        try:
            return await feed.lookup_user_id(username)
        finally:
            await feed.aclose()

    print(asyncio.run(_run_lookup()))


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="telerelay")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the relay")
    subparsers.add_parser("login", help="Authorize the Telegram session (QR code or phone code)")
    lookup = subparsers.add_parser("lookup-user", help="Print the numeric X user id for a username")
    lookup.add_argument("username", help="X username, with or without @")

    args = parser.parse_args(argv)
    if args.command == "login":
        _login()
        return
    if args.command == "lookup-user":
        _lookup_user(args.username)
        return
    _run()


if __name__ == "__main__":
    main()
