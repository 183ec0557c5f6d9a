"""Retrying HTTP transport for the usage API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
import logging
import math
import random
import time
from typing import Callable

import httpx

from .deadline import Deadline
from .errors import ProviderError
from .token_bucket import TokenBucket

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry configuration for one logical request."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    respect_retry_after: bool = True
    max_jitter_seconds: float = 0.25
    max_retry_after_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_jitter_seconds < 0:
            raise ValueError("delays must be non-negative")


@dataclass(frozen=True)
class RetryDecision:
    """What to do after one failed attempt."""

    retry: bool
    delay_seconds: float = 0.0
    advances_backoff: bool = False
    reason: str = ""


def is_retryable_status(status: int) -> bool:
    """Return True for throttling and server-side failures."""
    return status == 429 or 500 <= status <= 599


def decide_retry(
    policy: RetryPolicy,
    attempt: int,
    backoff_step: int,
    *,
    status: int | None = None,
    error: Exception | None = None,
    retry_after: float | None = None,
    jitter: float = 0.0,
) -> RetryDecision:
    """Decide whether the attempt numbered `attempt` (zero-based) should be retried.

    A honored `Retry-After` is slept verbatim and leaves `backoff_step` where it
    was; otherwise the delay is `base_delay * (backoff_step + 1) + jitter`.
    """
    if error is None and (status is None or not is_retryable_status(status)):
        return RetryDecision(retry=False, reason="not-retryable")
    if attempt + 1 >= policy.max_attempts:
        return RetryDecision(retry=False, reason="attempts-exhausted")
    if policy.respect_retry_after and retry_after is not None:
        return RetryDecision(
            retry=True,
            delay_seconds=min(retry_after, policy.max_retry_after_seconds),
            advances_backoff=False,
            reason="retry-after",
        )
    return RetryDecision(
        retry=True,
        delay_seconds=policy.base_delay_seconds * (backoff_step + 1) + jitter,
        advances_backoff=True,
        reason="backoff",
    )


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a `Retry-After` header given as delta-seconds or an HTTP-date."""
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    try:
        seconds = float(stripped)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            return None
        return max(seconds, 0.0)

    try:
        retry_at = parsedate_to_datetime(stripped)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max((retry_at - reference).total_seconds(), 0.0)


class ResilientTransport:
    """Sends one request with token-bucket admission and bounded retries."""

    def __init__(
        self,
        client: httpx.Client,
        policy: RetryPolicy | None = None,
        token_bucket: TokenBucket | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._policy = policy or RetryPolicy()
        self._token_bucket = token_bucket
        self._sleep = sleep
        self._rng = rng or random.Random()

    def send(self, request: httpx.Request, deadline: Deadline | None = None) -> httpx.Response:
        """Send `request`, returning the first non-retryable response.

        Raises:
            ProviderError: When retries are exhausted on 429/5xx or network errors.
            ThrottleTimeout: When the token bucket cannot admit an attempt.
            DeadlineExceeded: When the caller's deadline passes between attempts.
        """
        attempt = 0
        backoff_step = 0
        target = f"{request.method} {request.url.host}{request.url.path}"

        while True:
            if deadline is not None:
                deadline.check(f"request to {target}")
            self._admit(deadline)

            try:
                response = self._client.send(request)
            except httpx.TransportError as exc:
                decision = decide_retry(self._policy, attempt, backoff_step, error=exc, jitter=self._jitter())
                if not decision.retry:
                    raise ProviderError(
                        f"Network error calling {target} after {attempt + 1} attempt(s): {exc}"
                    ) from exc
                LOGGER.warning(
                    "Network error calling %s (attempt %d/%d): %s; retrying in %.2fs.",
                    target,
                    attempt + 1,
                    self._policy.max_attempts,
                    exc,
                    decision.delay_seconds,
                )
            else:
                if not is_retryable_status(response.status_code):
                    return response
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                decision = decide_retry(
                    self._policy,
                    attempt,
                    backoff_step,
                    status=response.status_code,
                    retry_after=retry_after,
                    jitter=self._jitter(),
                )
                response.close()
                if not decision.retry:
                    raise ProviderError(
                        f"{target} returned HTTP {response.status_code} after {attempt + 1} attempt(s).",
                        status=response.status_code,
                    )
                LOGGER.warning(
                    "%s returned HTTP %d (attempt %d/%d); retrying in %.2fs (%s).",
                    target,
                    response.status_code,
                    attempt + 1,
                    self._policy.max_attempts,
                    decision.delay_seconds,
                    decision.reason,
                )

            delay = decision.delay_seconds
            if deadline is not None:
                delay = min(delay, deadline.remaining())
            if delay > 0:
                self._sleep(delay)
            attempt += 1
            if decision.advances_backoff:
                backoff_step += 1

    def _admit(self, deadline: Deadline | None) -> None:
        if self._token_bucket is None:
            return
        timeout = None
        if deadline is not None:
            timeout = min(self._token_bucket.timeout_seconds, deadline.remaining())
        _ = self._token_bucket.acquire(timeout=timeout)

    def _jitter(self) -> float:
        if self._policy.max_jitter_seconds <= 0:
            return 0.0
        return self._rng.uniform(0.0, self._policy.max_jitter_seconds)
