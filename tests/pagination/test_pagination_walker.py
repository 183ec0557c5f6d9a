"""Tests for continuation URL validation and the pagination walker."""

from __future__ import annotations

import httpx
import pytest

from admin_usage_ingest.ingestion.errors import AuthorizationError, ProviderError
from admin_usage_ingest.ingestion.pagination import PaginationWalker, sanitize_next_page_url
from admin_usage_ingest.ingestion.transport import ResilientTransport, RetryPolicy

BASE_URL = "https://api.openai.com/v1/organization/usage/completions?start_time=1727740800"


@pytest.mark.parametrize(
    ("next_page", "reason"),
    [
        ("https://attacker.example.com/v1/organization/usage/completions?page=2", "unexpected-host"),
        ("https://api.openai.com:8443/v1/organization/usage/completions?page=2", "unexpected-host"),
        ("http://api.openai.com/v1/organization/usage/completions?page=2", "unexpected-protocol"),
        ("https://api.openai.com/v1/organization/users", "unexpected-path"),
        ("/v1/organization/usage/completions-export?page=2", "unexpected-path"),
        ("   ", "parse-error"),
        ("page 2", "parse-error"),
    ],
)
def test_sanitize_rejects_untrusted_continuations(next_page: str, reason: str) -> None:
    """Continuations leaving the original host, scheme or endpoint are rejected with a reason."""
    resolution = sanitize_next_page_url(BASE_URL, BASE_URL, next_page)

    assert resolution.ok is False
    assert resolution.url is None
    assert resolution.reason == reason


def test_sanitize_resolves_relative_query_against_current_page() -> None:
    """A relative `?page=2` keeps the current endpoint path."""
    resolution = sanitize_next_page_url(BASE_URL, BASE_URL, "?page=2")

    assert resolution.ok is True
    assert resolution.url is not None
    assert str(resolution.url) == "https://api.openai.com/v1/organization/usage/completions?page=2"


def test_sanitize_applies_bare_cursor_as_page_parameter() -> None:
    """A bare cursor token becomes the `page` query parameter of the current URL."""
    resolution = sanitize_next_page_url(BASE_URL, BASE_URL, "page_AAAAZ2")

    assert resolution.ok is True
    assert resolution.url is not None
    assert resolution.url.params["page"] == "page_AAAAZ2"
    assert resolution.url.params["start_time"] == "1727740800"


def test_sanitize_accepts_nested_path_under_endpoint() -> None:
    """Paths nested under the endpoint path stay trusted."""
    resolution = sanitize_next_page_url(
        BASE_URL, BASE_URL, "https://api.openai.com/v1/organization/usage/completions/next?page=3"
    )

    assert resolution.ok is True


def test_walker_follows_trusted_continuations_until_has_more_is_false() -> None:
    """Two linked pages are both fetched in order with exactly two requests."""
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if "page" not in request.url.params:
            return httpx.Response(200, json={"data": [{"id": 1}], "has_more": True, "next_page": "page_2"})
        return httpx.Response(200, json={"data": [{"id": 2}], "has_more": False, "next_page": None})

    result = _build_walker(_handler).walk(BASE_URL, headers={"Authorization": "Bearer sk-test"})

    assert [page["data"][0]["id"] for page in result.pages] == [1, 2]
    assert result.halted_reason is None
    assert len(calls) == 2
    assert calls[1].url.params["page"] == "page_2"
    assert calls[1].headers["Authorization"] == "Bearer sk-test"


def test_walker_halts_on_attacker_host_without_further_calls() -> None:
    """An untrusted next_page keeps the fetched page and makes no further request."""
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200,
            json={
                "data": [{"id": 1}],
                "has_more": True,
                "next_page": "https://attacker.example.com/v1/organization/usage/completions?page=2",
            },
        )

    result = _build_walker(_handler).walk(BASE_URL, headers={})

    assert len(result.pages) == 1
    assert result.halted_reason == "unexpected-host"
    assert len(calls) == 1


def test_walker_halts_on_wrong_path() -> None:
    """A same-host continuation to another endpoint is rejected."""
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200,
            json={"data": [], "has_more": True, "next_page": "https://api.openai.com/v1/organization/admin_api_keys"},
        )

    result = _build_walker(_handler).walk(BASE_URL, headers={})

    assert result.halted_reason == "unexpected-path"
    assert len(calls) == 1


def test_walker_stops_when_has_more_lacks_next_page() -> None:
    """has_more without a continuation ends the walk with the fetched pages."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [], "has_more": True, "next_page": ""})

    result = _build_walker(_handler).walk(BASE_URL, headers={})

    assert len(result.pages) == 1
    assert result.halted_reason == "missing-continuation"


def test_walker_enforces_page_limit() -> None:
    """An endless chain of trusted pages stops at the safety limit."""
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": [], "has_more": True, "next_page": f"?page={len(calls) + 1}"})

    result = _build_walker(_handler, max_pages=3).walk(BASE_URL, headers={})

    assert len(result.pages) == 3
    assert result.halted_reason == "page-limit"
    assert len(calls) == 3


def test_walker_raises_authorization_error_on_403() -> None:
    """401/403 responses surface as AuthorizationError carrying status and code."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403,
            json={"error": {"message": "Missing scope api.usage.read", "type": "insufficient_permissions"}},
        )

    with pytest.raises(AuthorizationError) as exc_info:
        _ = _build_walker(_handler).walk(BASE_URL, headers={})

    assert exc_info.value.status == 403
    assert exc_info.value.code == "insufficient_permissions"
    assert "api.usage.read" in str(exc_info.value)


def test_walker_rejects_non_object_payloads() -> None:
    """A JSON array body is a provider error."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[1, 2, 3])

    with pytest.raises(ProviderError):
        _ = _build_walker(_handler).walk(BASE_URL, headers={})


def _build_walker(handler, max_pages: int = 20) -> PaginationWalker:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    transport = ResilientTransport(client, policy=RetryPolicy(max_attempts=1), sleep=lambda _: None)
    return PaginationWalker(transport, max_pages=max_pages)
