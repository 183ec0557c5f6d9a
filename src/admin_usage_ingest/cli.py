"""CLI entrypoints for admin usage ingestion."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
import logging
from pathlib import Path

import httpx
import typer
from rich.console import Console

from admin_usage_internal.paths import get_default_credentials_path, get_default_database_path
from model_pricing import PricingEstimator, load_pricing_overrides

from .config import IngestionSettings
from .ingestion.backfill import (
    DEFAULT_BACKFILL_DAYS,
    DEFAULT_CHUNK_DAYS,
    DEFAULT_RUN_LABEL,
    BackfillTotals,
    resolve_date_range,
    run_backfill,
)
from .ingestion.client import AdminUsageClient
from .ingestion.credentials import JsonCredentialSource
from .ingestion.errors import IngestionError
from .ingestion.pagination import PaginationWalker
from .ingestion.persistence import UsagePersistence
from .ingestion.repository import DuckDBUsageEventStore
from .ingestion.schemas import IngestionTelemetry, IngestionWindow
from .ingestion.service import IngestionService
from .ingestion.simulation import UsageSimulator
from .ingestion.token_bucket import TokenBucket
from .ingestion.transport import ResilientTransport, RetryPolicy
from .render import render_issues

LOGGER = logging.getLogger(__name__)

TYPER_APP = typer.Typer(help="Provider admin usage ingestion tooling.")


@TYPER_APP.callback()
def main() -> None:
    """Root CLI callback."""


@TYPER_APP.command("ingest")
def ingest_command(
    credentials: Path = typer.Option(
        get_default_credentials_path(),
        "--credentials",
        "-c",
        help="JSON file mapping subject ids to provider credentials.",
    ),
    subjects: list[str] | None = typer.Option(
        None,
        "--subject",
        "-u",
        help="Subject id to ingest; repeatable. Defaults to every subject in the credential file.",
    ),
    days: int = typer.Option(1, "--days", min=1, help="Number of trailing days to ingest."),
    database_path: Path = typer.Option(
        get_default_database_path(),
        "--database-path",
        "-d",
        help="DuckDB file path for usage events.",
    ),
    simulate_on_permission_failure: bool | None = typer.Option(
        None,
        "--simulate-on-permission-failure/--no-simulate-on-permission-failure",
        help="Store synthetic usage when the usage API denies access.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info-level logging."),
) -> None:
    """Ingest the last N days of usage for each subject into DuckDB."""
    _configure_logging(verbose)
    settings = _load_settings(simulate_on_permission_failure)
    end = datetime.now(UTC)
    window = IngestionWindow(start=end - timedelta(days=days), end=end)

    source = JsonCredentialSource(credentials)
    try:
        subject_ids = _resolve_subjects(source, subjects)
        with _open_service(settings, source, database_path) as service:
            telemetries = service.ingest_subjects(subject_ids, window)
    except IngestionError as exc:
        raise typer.BadParameter(str(exc)) from exc

    total = _combine(telemetries)
    _emit_summary(total, subjects=len(telemetries))
    render_issues(telemetries, Console())
    if total is not None and total.failed_keys > 0:
        raise typer.Exit(code=1)


@TYPER_APP.command("backfill")
def backfill_command(
    credentials: Path = typer.Option(
        get_default_credentials_path(),
        "--credentials",
        "-c",
        help="JSON file mapping subject ids to provider credentials.",
    ),
    subjects: list[str] | None = typer.Option(
        None,
        "--subject",
        "-u",
        help="Subject id to backfill; repeatable. Defaults to every subject in the credential file.",
    ),
    days: int = typer.Option(DEFAULT_BACKFILL_DAYS, "--days", min=1, help="Number of days to backfill."),
    chunk_days: int = typer.Option(DEFAULT_CHUNK_DAYS, "--chunk-days", min=1, help="Days per ingestion chunk."),
    start: str | None = typer.Option(None, "--start", help="Inclusive UTC start date (YYYY-MM-DD)."),
    end: str | None = typer.Option(None, "--end", help="Inclusive UTC end date (YYYY-MM-DD)."),
    sleep_seconds: float = typer.Option(0.0, "--sleep-seconds", min=0.0, help="Delay between chunks."),
    label: str = typer.Option(DEFAULT_RUN_LABEL, "--label", help="Label applied to ingestion logs."),
    database_path: Path = typer.Option(
        get_default_database_path(),
        "--database-path",
        "-d",
        help="DuckDB file path for usage events.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info-level logging."),
) -> None:
    """Backfill a historical date range chunk by chunk."""
    _configure_logging(verbose)
    settings = _load_settings(None)
    try:
        start_date, end_date = resolve_date_range(
            days=days,
            start=_parse_date(start, "--start"),
            end=_parse_date(end, "--end"),
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    source = JsonCredentialSource(credentials)
    try:
        subject_ids = _resolve_subjects(source, subjects)
        with _open_service(settings, source, database_path) as service:
            report = run_backfill(
                service,
                subject_ids,
                start=start_date,
                end=end_date,
                chunk_days=chunk_days,
                run_label=label,
                sleep_seconds=sleep_seconds,
            )
    except IngestionError as exc:
        raise typer.BadParameter(str(exc)) from exc

    _emit_backfill_summary(report.totals, start_date, end_date)
    if report.had_errors:
        typer.echo("One or more chunks failed. Inspect logs before retrying.", err=True)
        raise typer.Exit(code=1)


@contextmanager
def _open_service(
    settings: IngestionSettings,
    source: JsonCredentialSource,
    database_path: Path,
) -> Iterator[IngestionService]:
    """Wire the pipeline and close its HTTP client and DuckDB connection afterwards."""
    overrides = None
    if settings.pricing_overrides_path is not None:
        try:
            overrides = load_pricing_overrides(settings.pricing_overrides_path)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    pricing = PricingEstimator(overrides=overrides)

    database_path.parent.mkdir(parents=True, exist_ok=True)
    store = DuckDBUsageEventStore(database_path)
    try:
        store.ensure_schema()
        with _build_http_client(settings) as http_client:
            transport = ResilientTransport(
                http_client,
                policy=RetryPolicy(
                    max_attempts=settings.max_attempts,
                    base_delay_seconds=settings.base_delay_seconds,
                ),
                token_bucket=TokenBucket.per_minute(
                    rate_per_minute=settings.rate_per_minute,
                    burst=settings.burst,
                    timeout_seconds=settings.acquire_timeout_seconds,
                ),
            )
            yield IngestionService(
                credential_source=source,
                usage_client=AdminUsageClient(PaginationWalker(transport), base_url=settings.base_url),
                persistence=UsagePersistence(store),
                pricing=pricing,
                simulator=UsageSimulator(pricing=pricing),
                simulate_on_permission_failure=settings.simulate_on_permission_failure,
                credential_deadline_seconds=settings.credential_deadline_seconds,
            )
    finally:
        store.close()


def _build_http_client(settings: IngestionSettings) -> httpx.Client:
    return httpx.Client(timeout=settings.http_timeout_seconds)


def _load_settings(simulate_on_permission_failure: bool | None) -> IngestionSettings:
    try:
        settings = IngestionSettings.from_env()
    except IngestionError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if simulate_on_permission_failure is None:
        return settings
    return replace(settings, simulate_on_permission_failure=simulate_on_permission_failure)


def _resolve_subjects(source: JsonCredentialSource, subjects: list[str] | None) -> list[str]:
    if subjects:
        return list(dict.fromkeys(subjects))
    subject_ids = source.list_subjects()
    if not subject_ids:
        LOGGER.warning("No subjects found in the credential file.")
    return subject_ids


def _configure_logging(verbose: bool) -> None:
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="[%(asctime)s][%(levelname)s][%(name)s] %(message)s",
    )


def _combine(telemetries: list[IngestionTelemetry]) -> IngestionTelemetry | None:
    total: IngestionTelemetry | None = None
    for telemetry in telemetries:
        total = telemetry if total is None else total.merge(telemetry)
    return total


def _emit_summary(total: IngestionTelemetry | None, subjects: int) -> None:
    typer.echo("\nSummary:")
    typer.echo(f"subjects={subjects}")
    if total is None:
        return
    typer.echo(f"processed_keys={total.processed_keys}")
    typer.echo(f"simulated_keys={total.simulated_keys}")
    typer.echo(f"failed_keys={total.failed_keys}")
    typer.echo(f"stored_events={total.stored_events}")
    typer.echo(f"updated_events={total.updated_events}")
    typer.echo(f"windows_processed={total.windows_processed}")
    typer.echo(f"manual_fallback_keys={total.manual_fallback_keys}")
    typer.echo(f"issues={len(total.issues)}")


def _emit_backfill_summary(totals: BackfillTotals, start: date, end: date) -> None:
    typer.echo("\nBackfill summary:")
    typer.echo(f"start={start.isoformat()}")
    typer.echo(f"end={end.isoformat()}")
    for name, value in totals.as_dict().items():
        typer.echo(f"{name}={value}")


def _parse_date(value: str | None, option: str) -> date | None:
    """Parse a YYYY-MM-DD option value."""
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid {option} value: {value}. Expected YYYY-MM-DD.") from exc


def module_cli_entry_point() -> None:
    TYPER_APP()
