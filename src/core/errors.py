"""Error taxonomy shared by the core and its adapters."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class FetchError(Exception):
    """Base class for classified upstream fetch failures."""

    def __init__(self, message: str, *, subject_id: Optional[str] = None, cursor: Optional[int] = None) -> None:
        super().__init__(message)
        self.subject_id = subject_id
        self.cursor = cursor


class RateLimited(FetchError):
    """Upstream asked us to retry no earlier than ``retry_at``."""

    def __init__(self, retry_at: datetime, message: str = "rate limited", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_at = retry_at


class AuthFailure(FetchError):
    pass


class NotFound(FetchError):
    pass


class TransientFetchError(FetchError):
    pass


class UnknownFetchError(FetchError):
    pass


class Stalled(Exception):
    """Rate-limit backoff would exceed the per-tick wait budget."""

    def __init__(self, total_wait_seconds: float, attempts: int) -> None:
        super().__init__(
            f"rate-limit backoff of {total_wait_seconds:.0f}s after {attempts} attempt(s) exceeds the tick budget"
        )
        self.total_wait_seconds = total_wait_seconds
        self.attempts = attempts


class TickCancelled(Exception):
    """Shutdown was requested while the tick was suspended."""


class ChannelUnavailable(Exception):
    """The downstream chat could not be reached."""
