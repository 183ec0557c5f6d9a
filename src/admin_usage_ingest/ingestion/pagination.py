"""Paginated usage API walker with continuation URL validation."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any, Mapping

import httpx
import orjson

from .deadline import Deadline
from .errors import AuthorizationError, ProviderError
from .transport import ResilientTransport

LOGGER = logging.getLogger(__name__)

MAX_PAGES = 20

_CURSOR_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_\-.~=]+$")


@dataclass(frozen=True)
class NextPageResolution:
    """Result of validating one continuation reference."""

    ok: bool
    url: httpx.URL | None = None
    reason: str | None = None


@dataclass(frozen=True)
class PaginationResult:
    """Fetched page bodies in order; `halted_reason` is None when the provider said there is no more."""

    pages: list[dict[str, Any]] = field(default_factory=list)
    halted_reason: str | None = None


def sanitize_next_page_url(
    base_url: httpx.URL | str,
    current_url: httpx.URL | str,
    next_page: str,
) -> NextPageResolution:
    """Resolve `next_page` against the current page and validate it against the first request.

    A bare cursor token is applied as the `page` query parameter of the current
    URL; anything else is resolved as a URL reference. The result must use
    https, target the original host, and stay under the original endpoint path.
    """
    base = httpx.URL(base_url)
    current = httpx.URL(current_url)
    reference = next_page.strip()
    if not reference or any(character.isspace() for character in reference):
        return NextPageResolution(ok=False, reason="parse-error")

    try:
        if _CURSOR_TOKEN_PATTERN.match(reference):
            candidate = current.copy_set_param("page", reference)
        else:
            candidate = current.join(reference)
    except (httpx.InvalidURL, ValueError):
        return NextPageResolution(ok=False, reason="parse-error")

    if candidate.scheme != "https":
        return NextPageResolution(ok=False, reason="unexpected-protocol")
    if candidate.host != base.host or candidate.port != base.port:
        return NextPageResolution(ok=False, reason="unexpected-host")

    endpoint_path = base.path.rstrip("/")
    if candidate.path != endpoint_path and not candidate.path.startswith(f"{endpoint_path}/"):
        return NextPageResolution(ok=False, reason="unexpected-path")

    return NextPageResolution(ok=True, url=candidate)


class PaginationWalker:
    """Fetches pages sequentially until the provider reports no more pages."""

    def __init__(self, transport: ResilientTransport, max_pages: int = MAX_PAGES) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self._transport = transport
        self._max_pages = max_pages

    def walk(
        self,
        first_url: httpx.URL | str,
        headers: Mapping[str, str],
        params: Mapping[str, Any] | None = None,
        deadline: Deadline | None = None,
    ) -> PaginationResult:
        """Return every page body reachable from `first_url` through trusted continuations."""
        base_url = httpx.URL(first_url)
        if params:
            base_url = base_url.copy_merge_params(params)
        current_url = base_url
        pages: list[dict[str, Any]] = []

        while len(pages) < self._max_pages:
            request = httpx.Request("GET", current_url, headers=dict(headers))
            response = self._transport.send(request, deadline=deadline)
            body = decode_page(response)
            pages.append(body)

            if body.get("has_more") is not True:
                return PaginationResult(pages=pages)

            next_page = body.get("next_page")
            if not isinstance(next_page, str) or not next_page.strip():
                LOGGER.warning(
                    "Usage API reported has_more without a next_page at %s; stopping after %d page(s).",
                    current_url.path,
                    len(pages),
                )
                return PaginationResult(pages=pages, halted_reason="missing-continuation")

            resolution = sanitize_next_page_url(base_url, current_url, next_page)
            if not resolution.ok or resolution.url is None:
                LOGGER.warning(
                    "Rejected untrusted next_page from %s (%s); keeping %d fetched page(s).",
                    base_url.host,
                    resolution.reason,
                    len(pages),
                )
                return PaginationResult(pages=pages, halted_reason=resolution.reason)
            current_url = resolution.url

        LOGGER.warning(
            "Stopped paginating %s after the %d page safety limit.",
            base_url.path,
            self._max_pages,
        )
        return PaginationResult(pages=pages, halted_reason="page-limit")


def decode_page(response: httpx.Response) -> dict[str, Any]:
    """Decode one page body or raise the typed provider error for its status."""
    status = response.status_code
    if status in (401, 403):
        message, code = _error_details(response)
        raise AuthorizationError(
            f"Usage API denied access (HTTP {status}): {message}",
            status=status,
            code=code,
        )
    if not 200 <= status <= 299:
        message, code = _error_details(response)
        raise ProviderError(f"Usage API returned HTTP {status}: {message}", status=status, code=code)

    try:
        body = orjson.loads(response.content)
    except orjson.JSONDecodeError as exc:
        raise ProviderError(f"Usage API returned invalid JSON: {exc}", status=status) from exc
    if not isinstance(body, dict):
        raise ProviderError("Usage API returned a non-object JSON payload.", status=status)
    return body


def _error_details(response: httpx.Response) -> tuple[str, str | None]:
    try:
        payload = orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return (response.reason_phrase or "no details", None)
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = error.get("message")
        code = error.get("code") or error.get("type")
        return (
            str(message) if message else (response.reason_phrase or "no details"),
            str(code) if code else None,
        )
    return (response.reason_phrase or "no details", None)
