"""Typed schemas used by the admin usage ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal, TypeAlias

UsageMode: TypeAlias = Literal["standard", "admin"]

DAY = timedelta(days=1)

TOKEN_SUBCOUNT_FIELDS: tuple[str, ...] = (
    "input_cached_tokens",
    "input_uncached_tokens",
    "input_text_tokens",
    "output_text_tokens",
    "input_cached_text_tokens",
    "input_audio_tokens",
    "input_cached_audio_tokens",
    "output_audio_tokens",
    "input_image_tokens",
    "input_cached_image_tokens",
    "output_image_tokens",
)


@dataclass(frozen=True)
class UsageModeConfiguration:
    """Per-credential usage mode and the organization scope admin mode requires."""

    mode: UsageMode = "standard"
    organization_id: str | None = None
    project_id: str | None = None


@dataclass(frozen=True)
class Credential:
    """One tracked provider key, already decrypted by the credential store."""

    credential_ref: str
    secret: str = field(repr=False)
    usage: UsageModeConfiguration = field(default_factory=UsageModeConfiguration)


@dataclass(frozen=True)
class IngestionWindow:
    """Half-open `[start, end)` interval requested from the usage API."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Ingestion window end {self.end} must be after start {self.start}.")


@dataclass(frozen=True)
class WindowContext:
    """Normalization context shared by all records of one credential fetch."""

    credential_ref: str
    fallback_start: datetime


@dataclass(frozen=True)
class TokenSubcounts:
    """Optional modality/caching breakdown of a usage bucket."""

    input_cached_tokens: int | None = None
    input_uncached_tokens: int | None = None
    input_text_tokens: int | None = None
    output_text_tokens: int | None = None
    input_cached_text_tokens: int | None = None
    input_audio_tokens: int | None = None
    input_cached_audio_tokens: int | None = None
    output_audio_tokens: int | None = None
    input_image_tokens: int | None = None
    input_cached_image_tokens: int | None = None
    output_image_tokens: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        """Return counters keyed by column name."""
        return {name: getattr(self, name) for name in TOKEN_SUBCOUNT_FIELDS}


@dataclass(frozen=True)
class StorageKey:
    """Storage identity of a usage event."""

    credential_ref: str
    model: str
    window_start: datetime


@dataclass(frozen=True)
class UsageEvent:
    """Canonical usage fact for one credential, model and window."""

    model: str
    tokens_in: int
    tokens_out: int
    cost_estimate: float
    timestamp: datetime
    window_start: datetime
    window_end: datetime
    credential_ref: str
    provider_project_id: str | None = None
    provider_key_id: str | None = None
    provider_user_id: str | None = None
    service_tier: str | None = None
    is_batch: bool | None = None
    num_model_requests: int | None = None
    token_subcounts: TokenSubcounts = field(default_factory=TokenSubcounts)
    pricing_key: str | None = None
    pricing_is_fallback: bool = False

    def __post_init__(self) -> None:
        if self.window_end < self.window_start:
            raise ValueError(f"window_end {self.window_end} precedes window_start {self.window_start}.")
        if self.tokens_in < 0 or self.tokens_out < 0:
            raise ValueError(f"Negative token counts for model {self.model}.")

    @property
    def storage_key(self) -> StorageKey:
        """Return the `(credential_ref, model, window_start)` identity."""
        return StorageKey(credential_ref=self.credential_ref, model=self.model, window_start=self.window_start)


@dataclass(frozen=True)
class CompletionsRecord:
    """One `data[]` bucket of a completions-style usage page."""

    start_time: int | None
    start_time_iso: str | None
    end_time: int | None
    end_time_iso: str | None
    attributes: dict[str, Any]
    results: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class DailyCostRecord:
    """One `daily_costs[]` entry of a cost-style usage page."""

    timestamp: int | None
    line_items: tuple[dict[str, Any], ...]


RawUsageRecord: TypeAlias = CompletionsRecord | DailyCostRecord


@dataclass(frozen=True)
class NormalizationResult:
    """Normalizer output for one credential fetch."""

    events: list[UsageEvent]
    fallback_models: list[str]


class UpsertOutcome(Enum):
    """What the persistence layer did with one event."""

    INSERTED = "inserted"
    UPDATED = "updated"


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one upsert plus whether the manual dedupe path served it."""

    outcome: UpsertOutcome
    via_fallback: bool = False


@dataclass(frozen=True)
class IngestionIssue:
    """One anomaly detected while ingesting a credential."""

    credential_ref: str
    message: str
    code: str | None = None
    status: int | None = None


@dataclass(frozen=True)
class IngestionTelemetry:
    """Immutable per-subject ingestion summary."""

    subject_id: str
    run_label: str | None = None
    processed_keys: int = 0
    simulated_keys: int = 0
    failed_keys: int = 0
    stored_events: int = 0
    updated_events: int = 0
    windows_processed: int = 0
    constraint_inserts: int = 0
    constraint_updates: int = 0
    manual_fallback_inserts: int = 0
    manual_fallback_updates: int = 0
    manual_fallback_keys: int = 0
    issues: tuple[IngestionIssue, ...] = ()

    def merge(self, other: IngestionTelemetry) -> IngestionTelemetry:
        """Return the additive combination of two snapshots."""
        counters = {
            item.name: getattr(self, item.name) + getattr(other, item.name)
            for item in fields(self)
            if item.name not in ("subject_id", "run_label", "issues")
        }
        return IngestionTelemetry(
            subject_id=self.subject_id,
            run_label=self.run_label,
            issues=self.issues + other.issues,
            **counters,
        )


@dataclass
class TelemetryAccumulator:
    """Mutable counters for one subject run; frozen by `snapshot()`."""

    subject_id: str
    run_label: str | None = None
    processed_keys: int = 0
    simulated_keys: int = 0
    failed_keys: int = 0
    stored_events: int = 0
    updated_events: int = 0
    windows_processed: int = 0
    constraint_inserts: int = 0
    constraint_updates: int = 0
    manual_fallback_inserts: int = 0
    manual_fallback_updates: int = 0
    manual_fallback_keys: int = 0
    issues: list[IngestionIssue] = field(default_factory=list)

    def record_issue(
        self,
        credential_ref: str,
        message: str,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        """Append one issue."""
        self.issues.append(IngestionIssue(credential_ref=credential_ref, message=message, code=code, status=status))

    def record_upsert(self, result: UpsertResult) -> None:
        """Count one persisted event by outcome and path."""
        if result.outcome is UpsertOutcome.INSERTED:
            self.stored_events += 1
            if result.via_fallback:
                self.manual_fallback_inserts += 1
            else:
                self.constraint_inserts += 1
        else:
            self.updated_events += 1
            if result.via_fallback:
                self.manual_fallback_updates += 1
            else:
                self.constraint_updates += 1

    def snapshot(self) -> IngestionTelemetry:
        """Freeze the current counters."""
        return IngestionTelemetry(
            subject_id=self.subject_id,
            run_label=self.run_label,
            processed_keys=self.processed_keys,
            simulated_keys=self.simulated_keys,
            failed_keys=self.failed_keys,
            stored_events=self.stored_events,
            updated_events=self.updated_events,
            windows_processed=self.windows_processed,
            constraint_inserts=self.constraint_inserts,
            constraint_updates=self.constraint_updates,
            manual_fallback_inserts=self.manual_fallback_inserts,
            manual_fallback_updates=self.manual_fallback_updates,
            manual_fallback_keys=self.manual_fallback_keys,
            issues=tuple(self.issues),
        )
