"""Chunked historical backfill over a UTC date range."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field, fields
from datetime import UTC, date, datetime, timedelta
import logging
import time
from typing import Callable

from .schemas import IngestionTelemetry, IngestionWindow
from .service import IngestionService

LOGGER = logging.getLogger(__name__)

DEFAULT_BACKFILL_DAYS = 30
DEFAULT_CHUNK_DAYS = 5
DEFAULT_RUN_LABEL = "usage-backfill-cli"


@dataclass(frozen=True)
class BackfillChunk:
    """Inclusive run of UTC days ingested in one call."""

    index: int
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def window(self) -> IngestionWindow:
        """Return the half-open datetime window covering this chunk."""
        start = datetime(self.start.year, self.start.month, self.start.day, tzinfo=UTC)
        return IngestionWindow(start=start, end=start + timedelta(days=self.days))


@dataclass
class BackfillTotals:
    """Counters summed across every successful chunk."""

    processed_subjects: int = 0
    processed_chunks: int = 0
    failed_chunks: int = 0
    processed_keys: int = 0
    simulated_keys: int = 0
    failed_keys: int = 0
    stored_events: int = 0
    updated_events: int = 0
    windows_processed: int = 0
    issues: int = 0
    constraint_inserts: int = 0
    constraint_updates: int = 0
    manual_fallback_inserts: int = 0
    manual_fallback_updates: int = 0
    manual_fallback_keys: int = 0

    def add(self, telemetry: IngestionTelemetry) -> None:
        """Fold one chunk's telemetry into the totals."""
        self.processed_chunks += 1
        self.issues += len(telemetry.issues)
        for name in _TELEMETRY_COUNTERS:
            setattr(self, name, getattr(self, name) + getattr(telemetry, name))

    def as_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


_TELEMETRY_COUNTERS: tuple[str, ...] = (
    "processed_keys",
    "simulated_keys",
    "failed_keys",
    "stored_events",
    "updated_events",
    "windows_processed",
    "constraint_inserts",
    "constraint_updates",
    "manual_fallback_inserts",
    "manual_fallback_updates",
    "manual_fallback_keys",
)


@dataclass
class BackfillReport:
    """Totals plus whether any chunk raised."""

    totals: BackfillTotals = field(default_factory=BackfillTotals)
    had_errors: bool = False


def resolve_date_range(
    days: int = DEFAULT_BACKFILL_DAYS,
    start: date | None = None,
    end: date | None = None,
    today: date | None = None,
) -> tuple[date, date]:
    """Return the inclusive `(start, end)` UTC dates to backfill.

    With both bounds given they are used as-is; with one bound the other is
    derived from `days`; with neither the range ends today.
    """
    if days < 1:
        raise ValueError("days must be at least 1")
    if start is not None and end is not None:
        resolved_start, resolved_end = start, end
    elif start is not None:
        resolved_start, resolved_end = start, start + timedelta(days=days - 1)
    elif end is not None:
        resolved_start, resolved_end = end - timedelta(days=days - 1), end
    else:
        resolved_end = today or datetime.now(UTC).date()
        resolved_start = resolved_end - timedelta(days=days - 1)

    if resolved_start > resolved_end:
        raise ValueError(f"Start date {resolved_start} is after end date {resolved_end}.")
    return resolved_start, resolved_end


def iter_chunks(start: date, end: date, chunk_days: int) -> Iterator[BackfillChunk]:
    """Yield consecutive chunks of at most `chunk_days` days covering `[start, end]`."""
    if chunk_days < 1:
        raise ValueError("chunk_days must be at least 1")
    cursor = start
    index = 0
    while cursor <= end:
        chunk_end = min(cursor + timedelta(days=chunk_days - 1), end)
        yield BackfillChunk(index=index, start=cursor, end=chunk_end)
        cursor = chunk_end + timedelta(days=1)
        index += 1


def run_backfill(
    service: IngestionService,
    subject_ids: Sequence[str],
    start: date,
    end: date,
    chunk_days: int = DEFAULT_CHUNK_DAYS,
    run_label: str = DEFAULT_RUN_LABEL,
    sleep_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> BackfillReport:
    """Ingest every subject chunk by chunk, continuing past failing chunks."""
    report = BackfillReport()
    chunks = list(iter_chunks(start, end, chunk_days))
    LOGGER.info(
        "Starting backfill %s for %d subject(s) from %s to %s in %d chunk(s).",
        run_label,
        len(subject_ids),
        start.isoformat(),
        end.isoformat(),
        len(chunks),
    )

    for subject_id in dict.fromkeys(subject_ids):
        report.totals.processed_subjects += 1
        for chunk in chunks:
            chunk_label = f"{run_label}:{subject_id}:chunk-{chunk.index}"
            try:
                telemetry = service.ingest_subject(subject_id, chunk.window(), run_label=chunk_label)
            except Exception:
                report.had_errors = True
                report.totals.failed_chunks += 1
                LOGGER.exception(
                    "Backfill chunk %s (%s to %s) failed.",
                    chunk_label,
                    chunk.start.isoformat(),
                    chunk.end.isoformat(),
                )
            else:
                report.totals.add(telemetry)
                LOGGER.info(
                    "Backfill chunk %s complete: keys=%d stored=%d updated=%d failed=%d issues=%d",
                    chunk_label,
                    telemetry.processed_keys,
                    telemetry.stored_events,
                    telemetry.updated_events,
                    telemetry.failed_keys,
                    len(telemetry.issues),
                )

            if sleep_seconds > 0 and chunk.index < len(chunks) - 1:
                sleep(sleep_seconds)

    LOGGER.info("Backfill %s finished (had_errors=%s).", run_label, report.had_errors)
    return report
