"""Service orchestration for per-subject usage ingestion."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
import time
from typing import Callable, Sequence

from model_pricing import PricingEstimator

from .client import AdminUsageClient
from .credentials import CredentialRecord, CredentialSource, resolve_credential
from .deadline import Deadline
from .errors import (
    AuthorizationError,
    ConfigurationError,
    DeadlineExceeded,
    ProviderError,
    ThrottleTimeout,
)
from .normalizer import fold_events, normalize
from .persistence import UsagePersistence
from .schemas import (
    Credential,
    IngestionTelemetry,
    IngestionWindow,
    TelemetryAccumulator,
    UsageEvent,
    WindowContext,
)
from .simulation import UsageSimulator

LOGGER = logging.getLogger(__name__)

CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
PERMISSION_DENIED = "PERMISSION_DENIED"
PROVIDER_ERROR = "PROVIDER_ERROR"
THROTTLE_TIMEOUT = "THROTTLE_TIMEOUT"
DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
PRICING_FALLBACK = "PRICING_FALLBACK"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

_UNEXPECTED_MESSAGE = "Unexpected error while ingesting usage; see logs for details."


class IngestionService:
    """Coordinates credential checks, usage fetches, normalization and upserts.

    Credentials of one subject are processed sequentially. A failing credential
    is recorded as an issue and never aborts the rest of the subject's run.
    """

    def __init__(
        self,
        credential_source: CredentialSource,
        usage_client: AdminUsageClient,
        persistence: UsagePersistence,
        pricing: PricingEstimator,
        simulator: UsageSimulator | None = None,
        simulate_on_permission_failure: bool = False,
        credential_deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if credential_deadline_seconds is not None and credential_deadline_seconds <= 0:
            raise ValueError("credential_deadline_seconds must be positive")
        self._credential_source = credential_source
        self._usage_client = usage_client
        self._persistence = persistence
        self._pricing = pricing
        self._simulator = simulator or UsageSimulator(pricing=pricing)
        self._simulate_on_permission_failure = simulate_on_permission_failure
        self._credential_deadline_seconds = credential_deadline_seconds
        self._clock = clock

    def ingest_subject(
        self,
        subject_id: str,
        window: IngestionWindow,
        run_label: str | None = None,
    ) -> IngestionTelemetry:
        """Ingest usage for every credential of `subject_id` inside `window`.

        Raises:
            ConfigurationError: When the credential list itself cannot be read.
        """
        records = self._credential_source.list_credentials(subject_id)
        accumulator = TelemetryAccumulator(subject_id=subject_id, run_label=run_label)
        if not records:
            LOGGER.info("No credentials found for subject %s.", subject_id)

        for record in records:
            accumulator.processed_keys += 1
            self._ingest_credential(record, window, accumulator)

        telemetry = accumulator.snapshot()
        LOGGER.info(
            "Subject %s: processed=%d failed=%d simulated=%d stored=%d updated=%d issues=%d",
            subject_id,
            telemetry.processed_keys,
            telemetry.failed_keys,
            telemetry.simulated_keys,
            telemetry.stored_events,
            telemetry.updated_events,
            len(telemetry.issues),
        )
        return telemetry

    def ingest_subjects(
        self,
        subject_ids: Sequence[str],
        window: IngestionWindow,
        run_label: str | None = None,
        max_workers: int = 1,
    ) -> list[IngestionTelemetry]:
        """Ingest several subjects, returning telemetry in input order.

        Subjects may run concurrently; each subject's credentials stay sequential
        and every request still passes the shared token bucket.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if max_workers == 1 or len(subject_ids) <= 1:
            return [self.ingest_subject(subject_id, window, run_label) for subject_id in subject_ids]
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="usage-ingest") as executor:
            futures = [
                executor.submit(self.ingest_subject, subject_id, window, run_label) for subject_id in subject_ids
            ]
            return [future.result() for future in futures]

    def _ingest_credential(
        self,
        record: CredentialRecord,
        window: IngestionWindow,
        accumulator: TelemetryAccumulator,
    ) -> None:
        credential_ref = record.credential_ref
        try:
            credential = resolve_credential(record)
        except ConfigurationError as exc:
            self._fail(accumulator, credential_ref, CONFIGURATION_ERROR, exc)
            return

        deadline = None
        if self._credential_deadline_seconds is not None:
            deadline = Deadline.after(self._credential_deadline_seconds, clock=self._clock)

        try:
            events = self._fetch_events(credential, window, deadline, accumulator)
        except AuthorizationError as exc:
            if not self._simulate_on_permission_failure:
                self._fail(accumulator, credential_ref, PERMISSION_DENIED, exc)
                return
            LOGGER.warning(
                "Usage API denied access for %s; substituting simulated usage: %s",
                credential_ref,
                exc,
            )
            accumulator.record_issue(credential_ref, str(exc), code=PERMISSION_DENIED, status=exc.status)
            accumulator.simulated_keys += 1
            events = self._simulator.generate(credential_ref, window)
        except Exception as exc:
            self._fail(accumulator, credential_ref, _issue_code(exc), exc)
            return

        try:
            self._persist_events(events, deadline, accumulator)
        except Exception as exc:
            self._fail(accumulator, credential_ref, _issue_code(exc), exc)
            return
        accumulator.windows_processed += 1

    def _fetch_events(
        self,
        credential: Credential,
        window: IngestionWindow,
        deadline: Deadline | None,
        accumulator: TelemetryAccumulator,
    ) -> list[UsageEvent]:
        result = self._usage_client.fetch_usage(credential, window, deadline=deadline)
        if result.halted_reason is not None:
            LOGGER.warning(
                "Pagination for %s halted early (%s); keeping %d page(s).",
                credential.credential_ref,
                result.halted_reason,
                result.pages,
            )

        events: list[UsageEvent] = []
        reported_models: set[str] = set()
        for segment in result.segments:
            context = WindowContext(credential_ref=credential.credential_ref, fallback_start=segment.fallback_start)
            normalized = normalize(segment.records, context, self._pricing)
            events.extend(normalized.events)
            for model in normalized.fallback_models:
                if model in reported_models:
                    continue
                reported_models.add(model)
                accumulator.record_issue(
                    credential.credential_ref,
                    f"No price configured for model {model}; cost estimated with the default tier.",
                    code=PRICING_FALLBACK,
                )
        folded = fold_events(events)
        if len(folded) < len(events):
            LOGGER.info(
                "Folded %d usage result(s) into %d event(s) for %s.",
                len(events),
                len(folded),
                credential.credential_ref,
            )
        return folded

    def _persist_events(
        self,
        events: list[UsageEvent],
        deadline: Deadline | None,
        accumulator: TelemetryAccumulator,
    ) -> None:
        used_fallback = False
        try:
            for event in events:
                if deadline is not None:
                    deadline.check(f"persisting usage for {event.credential_ref}")
                result = self._persistence.upsert(event)
                accumulator.record_upsert(result)
                used_fallback = used_fallback or result.via_fallback
        finally:
            if used_fallback:
                accumulator.manual_fallback_keys += 1

    def _fail(
        self,
        accumulator: TelemetryAccumulator,
        credential_ref: str,
        code: str,
        error: Exception,
    ) -> None:
        accumulator.failed_keys += 1
        status = error.status if isinstance(error, ProviderError) else None
        if code == UNEXPECTED_ERROR:
            LOGGER.exception("Unexpected failure while ingesting credential %s", credential_ref)
            message = _UNEXPECTED_MESSAGE
        else:
            LOGGER.error("Ingestion failed for credential %s (%s): %s", credential_ref, code, error)
            message = str(error)
        accumulator.record_issue(credential_ref, message, code=code, status=status)


def _issue_code(error: Exception) -> str:
    if isinstance(error, ConfigurationError):
        return CONFIGURATION_ERROR
    if isinstance(error, AuthorizationError):
        return PERMISSION_DENIED
    if isinstance(error, ProviderError):
        return PROVIDER_ERROR
    if isinstance(error, ThrottleTimeout):
        return THROTTLE_TIMEOUT
    if isinstance(error, DeadlineExceeded):
        return DEADLINE_EXCEEDED
    return UNEXPECTED_ERROR
