"""X (Twitter) v2 user timeline adapter.

Implements the core UpstreamFeed port over the public v2 REST API with an
app-only bearer token and classifies every failure into the core error
taxonomy.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import httpx

from core.errors import AuthFailure, NotFound, RateLimited, TransientFetchError, UnknownFetchError
from core.governor import Clock, utc_now
from core.models import Cursor, Item, PollBatch, RateLimitState
from core.permalinks import build_permalink

LOGGER = logging.getLogger(__name__)

API_BASE = "https://api.twitter.com/2"
DEFAULT_RATE_LIMIT_WAIT = timedelta(seconds=60)
_NOT_FOUND_TYPE = "resource-not-found"


def parse_rate_limit(headers: Mapping[str, str]) -> Optional[RateLimitState]:
    """Build a RateLimitState from x-rate-limit-* headers, if present."""

    try:
        remaining = int(headers["x-rate-limit-remaining"])
        limit = int(headers["x-rate-limit-limit"])
        reset = int(headers["x-rate-limit-reset"])
    except (KeyError, TypeError, ValueError):
        return None
    return RateLimitState(
        remaining=max(0, remaining),
        limit=max(1, limit),
        reset_at=datetime.fromtimestamp(reset, tz=timezone.utc),
    )


def _parse_created_at(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class XTimelineFeed:
    """Fetch posts of one account newer than a cursor."""

    def __init__(
        self,
        subject_id: str,
        handle: str,
        bearer_token: str,
        page_size: int = 5,
        exclude: tuple[str, ...] = ("replies",),
        start_time: Optional[datetime] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.subject_id = subject_id
        self._handle = handle
        self._bearer_token = bearer_token
        self._page_size = page_size
        self._exclude = exclude
        self._start_time = start_time
        self._client = client or httpx.AsyncClient(base_url=API_BASE, timeout=20.0)
        self._clock = clock

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._bearer_token}",
            "User-Agent": "telerelay",
        }

    def _params(self, cursor: Cursor) -> dict[str, str]:
        params = {
            "max_results": str(self._page_size),
            "tweet.fields": "created_at",
        }
        if self._exclude:
            params["exclude"] = ",".join(self._exclude)
        if cursor is not None:
            params["since_id"] = str(cursor)
        if self._start_time is not None:
            params["start_time"] = _format_time(self._start_time)
        return params

    async def _get(self, path: str, params: Optional[dict[str, str]], cursor: Cursor) -> httpx.Response:
        context = {"subject_id": self.subject_id, "cursor": cursor}
        try:
            response = await self._client.get(path, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"timeout calling {path}: {exc}", **context) from exc
        except httpx.TransportError as exc:
            raise TransientFetchError(f"network error calling {path}: {exc}", **context) from exc
        except httpx.RequestError as exc:
            raise UnknownFetchError(f"request to {path} failed: {exc}", **context) from exc

        status = response.status_code
        if status == 429:
            state = parse_rate_limit(response.headers)
            retry_at = state.reset_at if state else self._clock() + DEFAULT_RATE_LIMIT_WAIT
            raise RateLimited(retry_at, f"rate limited until {retry_at.isoformat()}", **context)
        if status in (401, 403):
            raise AuthFailure(f"authentication rejected ({status}): {response.text[:200]}", **context)
        if status == 404:
            raise NotFound(f"{path} not found", **context)
        if status >= 500:
            raise TransientFetchError(f"server error {status}", **context)
        if status != 200:
            raise UnknownFetchError(f"unexpected status {status}: {response.text[:200]}", **context)
        return response

    def _payload(self, response: httpx.Response, cursor: Cursor) -> dict[str, Any]:
        context = {"subject_id": self.subject_id, "cursor": cursor}
        try:
            payload = response.json()
        except ValueError as exc:
            raise UnknownFetchError(f"invalid JSON response: {response.text[:200]}", **context) from exc
        if not isinstance(payload, dict):
            raise UnknownFetchError(f"expected a JSON object, got {type(payload).__name__}", **context)

        errors = payload.get("errors") or []
        if "data" not in payload and errors:
            if any(_NOT_FOUND_TYPE in str(error.get("type", "")) for error in errors if isinstance(error, dict)):
                raise NotFound(f"subject {self.subject_id} not found: {errors!r}"[:300], **context)
            raise UnknownFetchError(f"API returned errors: {errors!r}"[:300], **context)
        return payload

    async def fetch_since(self, cursor: Cursor) -> PollBatch:
        """Return posts newer than ``cursor``, newest-first."""

        response = await self._get(f"/users/{self.subject_id}/tweets", self._params(cursor), cursor)
        rate_limit = parse_rate_limit(response.headers)
        payload = self._payload(response, cursor)

        items: list[Item] = []
        for entry in payload.get("data") or []:
            if not isinstance(entry, dict):
                continue
            try:
                item_id = int(str(entry.get("id")))
            except ValueError:
                LOGGER.warning("Skipping post with malformed id %r", entry.get("id"))
                continue
            items.append(
                Item(
                    id=item_id,
                    created_at=_parse_created_at(entry.get("created_at")),
                    permalink=build_permalink(self._handle, item_id),
                    text=str(entry.get("text") or ""),
                )
            )

        items.sort(key=lambda item: item.id, reverse=True)
        meta = payload.get("meta") or {}
        if cursor is not None and isinstance(meta, dict) and meta.get("next_token"):
            LOGGER.warning(
                "More than %s new posts for subject %s since %s; posts older than %s are not relayed",
                self._page_size,
                self.subject_id,
                cursor,
                items[-1].id if items else None,
            )
        LOGGER.debug("Fetched %s posts for subject %s since %s", len(items), self.subject_id, cursor)
        return PollBatch(items=tuple(items), rate_limit=rate_limit)

    async def lookup_user_id(self, username: str) -> str:
        """Resolve a username (without @) to the numeric account id."""

        username = username.lstrip("@")
        response = await self._get(f"/users/by/username/{username}", None, None)
        payload = self._payload(response, None)
        data = payload.get("data") or {}
        user_id = data.get("id") if isinstance(data, dict) else None
        if not user_id:
            raise NotFound(f"user @{username} not found", subject_id=username)
        return str(user_id)
