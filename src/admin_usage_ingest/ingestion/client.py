"""Usage API client for admin and standard usage modes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging

from .deadline import Deadline
from .normalizer import parse_usage_page, utc_day_start
from .pagination import PaginationWalker
from .schemas import DAY, Credential, IngestionWindow, RawUsageRecord

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
ADMIN_COMPLETIONS_PATH = "organization/usage/completions"
STANDARD_USAGE_PATH = "usage"
ADMIN_GROUP_BY = "project_id,user_id,api_key_id,model,batch"


@dataclass(frozen=True)
class FetchSegment:
    """Records fetched for one request, with the day start used when they carry no timestamp."""

    fallback_start: datetime
    records: list[RawUsageRecord]


@dataclass(frozen=True)
class FetchResult:
    """Everything fetched for one credential and window."""

    segments: list[FetchSegment] = field(default_factory=list)
    pages: int = 0
    halted_reason: str | None = None

    @property
    def records(self) -> list[RawUsageRecord]:
        """Return all records across segments in fetch order."""
        return [record for segment in self.segments for record in segment.records]


class AdminUsageClient:
    """Fetches raw usage records for one credential."""

    def __init__(self, walker: PaginationWalker, base_url: str = DEFAULT_BASE_URL) -> None:
        self._walker = walker
        self._base_url = base_url.rstrip("/")

    def fetch_usage(
        self,
        credential: Credential,
        window: IngestionWindow,
        deadline: Deadline | None = None,
    ) -> FetchResult:
        """Fetch every usage record of `credential` inside `window`.

        Raises:
            AuthorizationError: When the usage API rejects the credential.
            ProviderError: When the usage API fails after retries.
        """
        if credential.usage.mode == "admin":
            return self._fetch_admin(credential, window, deadline)
        return self._fetch_standard(credential, window, deadline)

    def _fetch_admin(
        self,
        credential: Credential,
        window: IngestionWindow,
        deadline: Deadline | None,
    ) -> FetchResult:
        headers = _auth_headers(credential)
        if credential.usage.organization_id:
            headers["OpenAI-Organization"] = credential.usage.organization_id
        if credential.usage.project_id:
            headers["OpenAI-Project"] = credential.usage.project_id

        result = self._walker.walk(
            f"{self._base_url}/{ADMIN_COMPLETIONS_PATH}",
            headers=headers,
            params={
                "start_time": int(window.start.timestamp()),
                "end_time": int(window.end.timestamp()),
                "bucket_width": "1d",
                "group_by": ADMIN_GROUP_BY,
            },
            deadline=deadline,
        )
        records = [record for page in result.pages for record in parse_usage_page(page)]
        LOGGER.info(
            "Fetched %d admin usage bucket(s) over %d page(s) for %s.",
            len(records),
            len(result.pages),
            credential.credential_ref,
        )
        return FetchResult(
            segments=[FetchSegment(fallback_start=utc_day_start(window.start), records=records)],
            pages=len(result.pages),
            halted_reason=result.halted_reason,
        )

    def _fetch_standard(
        self,
        credential: Credential,
        window: IngestionWindow,
        deadline: Deadline | None,
    ) -> FetchResult:
        headers = _auth_headers(credential)
        segments: list[FetchSegment] = []
        pages = 0
        halted_reason: str | None = None

        day = utc_day_start(window.start)
        while day < window.end:
            result = self._walker.walk(
                f"{self._base_url}/{STANDARD_USAGE_PATH}",
                headers=headers,
                params={"date": day.strftime("%Y-%m-%d")},
                deadline=deadline,
            )
            records = [record for page in result.pages for record in parse_usage_page(page)]
            segments.append(FetchSegment(fallback_start=day, records=records))
            pages += len(result.pages)
            if halted_reason is None:
                halted_reason = result.halted_reason
            day = day + DAY
        LOGGER.info(
            "Fetched %d standard usage record(s) over %d page(s) for %s.",
            sum(len(segment.records) for segment in segments),
            pages,
            credential.credential_ref,
        )
        return FetchResult(segments=segments, pages=pages, halted_reason=halted_reason)


def _auth_headers(credential: Credential) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {credential.secret}",
        "Accept": "application/json",
    }
