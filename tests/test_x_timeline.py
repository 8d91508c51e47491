from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from adapters.x_timeline import API_BASE, XTimelineFeed, parse_rate_limit
from core.errors import AuthFailure, NotFound, RateLimited, TransientFetchError, UnknownFetchError

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
RESET = int((NOW + timedelta(minutes=15)).timestamp())


def _feed(handler, **kwargs) -> XTimelineFeed:
    client = httpx.AsyncClient(base_url=API_BASE, transport=httpx.MockTransport(handler))
    return XTimelineFeed("42", "someone", "secret-token", client=client, clock=lambda: NOW, **kwargs)


def _fetch(feed: XTimelineFeed, cursor):
    return asyncio.run(feed.fetch_since(cursor))


def test_fetch_maps_posts_and_rate_limit_headers() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "1800000000000000002", "text": "second", "created_at": "2024-01-01T11:59:00.000Z"},
                    {"id": "1800000000000000003", "text": "third"},
                    {"id": "1800000000000000001", "text": "first"},
                ],
                "meta": {"result_count": 3},
            },
            headers={"x-rate-limit-remaining": "4", "x-rate-limit-limit": "5", "x-rate-limit-reset": str(RESET)},
        )

    batch = _fetch(_feed(handler), 1799999999999999999)

    request = requests[0]
    assert request.url.path == "/2/users/42/tweets"
    assert request.url.params["since_id"] == "1799999999999999999"
    assert request.url.params["max_results"] == "5"
    assert request.url.params["exclude"] == "replies"
    assert request.headers["Authorization"] == "Bearer secret-token"

    assert [item.id for item in batch.items] == [
        1800000000000000003,
        1800000000000000002,
        1800000000000000001,
    ]
    assert batch.items[0].permalink == "https://x.com/someone/status/1800000000000000003"
    assert batch.items[1].created_at == datetime(2024, 1, 1, 11, 59, tzinfo=timezone.utc)
    assert batch.rate_limit.remaining == 4
    assert batch.rate_limit.reset_at == NOW + timedelta(minutes=15)


def test_cold_fetch_omits_since_id_and_passes_start_time() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"meta": {"result_count": 0}})

    batch = _fetch(_feed(handler, start_time=NOW, page_size=10), None)

    params = requests[0].url.params
    assert "since_id" not in params
    assert params["start_time"] == "2024-01-01T12:00:00Z"
    assert params["max_results"] == "10"
    assert batch.items == ()


def test_429_uses_reset_header() -> None:
    feed = _feed(lambda request: httpx.Response(429, headers={
        "x-rate-limit-remaining": "0",
        "x-rate-limit-limit": "5",
        "x-rate-limit-reset": str(RESET),
    }))

    with pytest.raises(RateLimited) as info:
        _fetch(feed, 1)

    assert info.value.retry_at == NOW + timedelta(minutes=15)
    assert info.value.subject_id == "42"


def test_429_without_headers_falls_back_to_a_minute() -> None:
    feed = _feed(lambda request: httpx.Response(429))

    with pytest.raises(RateLimited) as info:
        _fetch(feed, 1)

    assert info.value.retry_at == NOW + timedelta(seconds=60)


@pytest.mark.parametrize(
    "status, error",
    [
        (401, AuthFailure),
        (403, AuthFailure),
        (404, NotFound),
        (500, TransientFetchError),
        (503, TransientFetchError),
        (418, UnknownFetchError),
    ],
)
def test_status_codes_are_classified(status, error) -> None:
    feed = _feed(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(error):
        _fetch(feed, 1)


def test_network_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientFetchError):
        _fetch(_feed(handler), 1)


def test_malformed_json_is_unknown() -> None:
    feed = _feed(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(UnknownFetchError):
        _fetch(feed, 1)


def test_error_payload_for_missing_user_is_not_found() -> None:
    payload = {
        "errors": [
            {
                "title": "Not Found Error",
                "type": "https://api.twitter.com/2/problems/resource-not-found",
                "detail": "Could not find user with id: [42].",
            }
        ]
    }
    feed = _feed(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(NotFound):
        _fetch(feed, 1)


def test_lookup_user_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/2/users/by/username/someone"
        return httpx.Response(200, json={"data": {"id": "2244994945", "username": "someone"}})

    assert asyncio.run(_feed(handler).lookup_user_id("@someone")) == "2244994945"


def test_parse_rate_limit_ignores_missing_headers() -> None:
    assert parse_rate_limit({}) is None
    assert parse_rate_limit({"x-rate-limit-remaining": "x", "x-rate-limit-limit": "5", "x-rate-limit-reset": "1"}) is None


def test_other_request_errors_are_unknown() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.TooManyRedirects("Exceeded maximum allowed redirects.", request=request)

    with pytest.raises(UnknownFetchError):
        _fetch(_feed(handler), 1)


def test_truncated_page_is_logged(caplog) -> None:
    payload = {
        "data": [{"id": "20"}, {"id": "19"}, {"id": "18"}, {"id": "17"}, {"id": "16"}],
        "meta": {"result_count": 5, "next_token": "7140dibdnow9c7btw4"},
    }
    feed = _feed(lambda request: httpx.Response(200, json=payload))

    with caplog.at_level("WARNING", logger="adapters.x_timeline"):
        batch = _fetch(feed, 3)

    assert len(batch.items) == 5
    assert "posts older than 16 are not relayed" in caplog.text


def test_cold_start_page_is_not_reported_as_truncated(caplog) -> None:
    payload = {"data": [{"id": "20"}], "meta": {"result_count": 1, "next_token": "abc"}}
    feed = _feed(lambda request: httpx.Response(200, json=payload))

    with caplog.at_level("WARNING", logger="adapters.x_timeline"):
        _fetch(feed, None)

    assert "not relayed" not in caplog.text
