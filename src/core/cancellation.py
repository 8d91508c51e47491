"""Helpers that make tick suspension points abortable by a shutdown event."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from core.errors import TickCancelled

T = TypeVar("T")


async def interruptible_sleep(seconds: float, shutdown: Optional[asyncio.Event] = None) -> bool:
    """Sleep for ``seconds``; return False if shutdown was requested first."""

    if shutdown is None:
        await asyncio.sleep(seconds)
        return True
    if shutdown.is_set():
        return False
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=max(0.0, seconds))
    except asyncio.TimeoutError:
        return True
    return False


async def until_shutdown(awaitable: Awaitable[T], shutdown: Optional[asyncio.Event] = None) -> T:
    """Await ``awaitable`` unless shutdown fires first, then raise TickCancelled."""

    if shutdown is None:
        return await awaitable
    if shutdown.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise TickCancelled("shutdown requested")

    work = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(shutdown.wait())
    try:
        await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        stopper.cancel()
    if work.done():
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise TickCancelled("shutdown requested")
