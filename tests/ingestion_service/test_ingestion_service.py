"""Integration tests for the per-subject ingestion orchestrator."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import itertools
from pathlib import Path
import random
from typing import Any, Callable

import httpx
import pytest

from admin_usage_ingest.ingestion.client import AdminUsageClient
from admin_usage_ingest.ingestion.credentials import CredentialRecord
from admin_usage_ingest.ingestion.pagination import PaginationWalker
from admin_usage_ingest.ingestion.persistence import UsagePersistence
from admin_usage_ingest.ingestion.repository import DuckDBUsageEventStore
from admin_usage_ingest.ingestion.schemas import IngestionWindow, UpsertResult, UsageEvent
from admin_usage_ingest.ingestion.service import IngestionService
from admin_usage_ingest.ingestion.simulation import UsageSimulator
from admin_usage_ingest.ingestion.transport import ResilientTransport, RetryPolicy
from admin_usage_internal.warnings import OnceRegistry
from model_pricing import PricingEstimator

DAY_START = datetime(2024, 10, 1, tzinfo=UTC)
DAY_START_EPOCH = 1727740800
WINDOW = IngestionWindow(start=DAY_START, end=DAY_START + timedelta(days=1))
COMPLETIONS_PATH = "/v1/organization/usage/completions"

Handler = Callable[[httpx.Request], httpx.Response]


class _StaticCredentialSource:
    def __init__(self, subjects: dict[str, list[CredentialRecord]]) -> None:
        self._subjects = subjects

    def list_credentials(self, subject_id: str) -> list[CredentialRecord]:
        return list(self._subjects.get(subject_id, []))


class _ExplodingPersistence:
    def upsert(self, event: UsageEvent) -> UpsertResult:
        raise RuntimeError("socket closed unexpectedly")


def test_two_page_admin_fetch_stores_both_events(tmp_path: Path) -> None:
    """A two-page admin response produces two stored events with exactly two requests."""
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if "page" not in request.url.params:
            return _page([_result("gpt-4o", 1000, 500)], next_page="page_2")
        return _page([_result("gpt-4o-mini", 2000, 1000)])

    service, store = _build_service(tmp_path, _handler, {"alice": [_admin_record("key-1")]})
    try:
        telemetry = service.ingest_subject("alice", WINDOW, run_label="test-run")
        stored = store.fetch_events()
    finally:
        store.close()

    assert len(calls) == 2
    assert calls[0].url.path == COMPLETIONS_PATH
    assert calls[0].headers["Authorization"] == "Bearer sk-key-1"
    assert calls[0].headers["OpenAI-Organization"] == "org_1"
    assert calls[0].headers["OpenAI-Project"] == "proj_1"
    assert calls[0].url.params["bucket_width"] == "1d"
    assert telemetry.run_label == "test-run"
    assert telemetry.processed_keys == 1
    assert telemetry.failed_keys == 0
    assert telemetry.stored_events == 2
    assert telemetry.constraint_inserts == 2
    assert telemetry.windows_processed == 1
    assert telemetry.issues == ()
    assert sorted(event.model for event in stored) == ["gpt-4o", "gpt-4o-mini"]


def test_rerunning_the_same_window_updates_instead_of_duplicating(tmp_path: Path) -> None:
    """A second run over the same window updates the existing rows."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return _page([_result("gpt-4o", 1000, 500)])

    service, store = _build_service(tmp_path, _handler, {"alice": [_admin_record("key-1")]})
    try:
        first = service.ingest_subject("alice", WINDOW)
        second = service.ingest_subject("alice", WINDOW)
        count = store.count_events()
    finally:
        store.close()

    assert (first.stored_events, first.updated_events) == (1, 0)
    assert (second.stored_events, second.updated_events) == (0, 1)
    assert count == 1


def test_grouped_results_for_one_model_and_day_are_summed(tmp_path: Path) -> None:
    """Results split by project for the same model and bucket persist as one summed row."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return _page(
            [
                {**_result("gpt-4o", 1000, 100), "project_id": "proj_a", "user_id": "user_1"},
                {**_result("gpt-4o", 2000, 200), "project_id": "proj_b", "user_id": "user_1"},
            ]
        )

    service, store = _build_service(tmp_path, _handler, {"alice": [_admin_record("key-1")]})
    try:
        first = service.ingest_subject("alice", WINDOW)
        second = service.ingest_subject("alice", WINDOW)
        stored = store.fetch_events()
    finally:
        store.close()

    assert (first.stored_events, first.updated_events) == (1, 0)
    assert (second.stored_events, second.updated_events) == (0, 1)
    assert len(stored) == 1
    event = stored[0]
    assert (event.tokens_in, event.tokens_out) == (3000, 300)
    assert event.num_model_requests == 2
    assert event.provider_project_id is None
    assert event.provider_user_id == "user_1"
    pricing = PricingEstimator(warning_registry=OnceRegistry())
    expected_cost = pricing.estimate("gpt-4o", 1000, 100)[0] + pricing.estimate("gpt-4o", 2000, 200)[0]
    assert event.cost_estimate == pytest.approx(expected_cost)


def test_one_failing_credential_does_not_abort_the_subject(tmp_path: Path) -> None:
    """Three credentials with the second failing: all processed, one failed, one issue."""

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.headers["Authorization"] == "Bearer sk-key-2":
            return httpx.Response(500, json={"error": {"message": "internal"}})
        return _page([_result("gpt-4o", 10, 5)])

    records = [_admin_record("key-1"), _admin_record("key-2"), _admin_record("key-3")]
    service, store = _build_service(tmp_path, _handler, {"alice": records})
    try:
        telemetry = service.ingest_subject("alice", WINDOW)
    finally:
        store.close()

    assert telemetry.processed_keys == 3
    assert telemetry.failed_keys == 1
    assert telemetry.stored_events == 2
    assert len(telemetry.issues) == 1
    issue = telemetry.issues[0]
    assert issue.credential_ref == "key-2"
    assert issue.code == "PROVIDER_ERROR"
    assert issue.status == 500


def test_admin_mode_without_project_fails_before_any_request(tmp_path: Path) -> None:
    """A misconfigured admin credential records a configuration issue and makes no call."""
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return _page([])

    record = CredentialRecord(credential_ref="key-1", secret="sk-key-1", usage_mode="ADMIN", organization_id="org_1")
    service, store = _build_service(tmp_path, _handler, {"alice": [record]})
    try:
        telemetry = service.ingest_subject("alice", WINDOW)
    finally:
        store.close()

    assert calls == []
    assert telemetry.failed_keys == 1
    assert telemetry.issues[0].code == "CONFIGURATION_ERROR"
    assert "project_id" in telemetry.issues[0].message


def test_permission_failure_without_simulation_marks_credential_failed(tmp_path: Path) -> None:
    """A 403 without the simulation flag fails only that credential."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"message": "Missing scope", "code": "missing_scope"}})

    service, store = _build_service(tmp_path, _handler, {"alice": [_admin_record("key-1")]})
    try:
        telemetry = service.ingest_subject("alice", WINDOW)
    finally:
        store.close()

    assert telemetry.failed_keys == 1
    assert telemetry.simulated_keys == 0
    assert telemetry.issues[0].code == "PERMISSION_DENIED"
    assert telemetry.issues[0].status == 403


def test_permission_failure_with_simulation_persists_synthetic_usage(tmp_path: Path) -> None:
    """With simulation enabled a 403 yields simulated events that are still persisted."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid key"}})

    service, store = _build_service(
        tmp_path,
        _handler,
        {"alice": [_admin_record("key-1")]},
        simulate_on_permission_failure=True,
    )
    try:
        telemetry = service.ingest_subject("alice", WINDOW)
        stored = store.fetch_events()
    finally:
        store.close()

    assert telemetry.failed_keys == 0
    assert telemetry.simulated_keys == 1
    assert 1 <= telemetry.stored_events <= 3
    assert len(stored) == telemetry.stored_events
    assert all(event.credential_ref == "key-1" for event in stored)
    assert [issue.code for issue in telemetry.issues] == ["PERMISSION_DENIED"]


def test_pricing_fallback_is_reported_once_per_model(tmp_path: Path) -> None:
    """Unknown models are stored with the fallback flag and one issue per model."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return _page(
            [_result("mystery-model", 1000, 1000)],
            extra_buckets=[_bucket(DAY_START_EPOCH + 3600, [_result("mystery-model", 1, 1)])],
        )

    service, store = _build_service(tmp_path, _handler, {"alice": [_admin_record("key-1")]})
    try:
        telemetry = service.ingest_subject("alice", WINDOW)
        stored = store.fetch_events()
    finally:
        store.close()

    assert [issue.code for issue in telemetry.issues] == ["PRICING_FALLBACK"]
    assert all(event.pricing_is_fallback for event in stored)
    assert stored[0].cost_estimate == 0.003


def test_standard_mode_queries_legacy_usage_per_day(tmp_path: Path) -> None:
    """Standard credentials call the legacy per-day endpoint with a date parameter."""
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        day_offset = int(request.url.params["date"][-2:]) - 1
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "aggregation_timestamp": DAY_START_EPOCH + day_offset * 86400 + 60,
                        "operation": "completion:gpt-3.5-turbo-0301",
                        "n_context_tokens_total": 100,
                        "n_generated_tokens_total": 40,
                    }
                ]
            },
        )

    record = CredentialRecord(credential_ref="key-1", secret="sk-key-1")
    window = IngestionWindow(start=DAY_START, end=DAY_START + timedelta(days=2))
    service, store = _build_service(tmp_path, _handler, {"alice": [record]})
    try:
        telemetry = service.ingest_subject("alice", window)
    finally:
        store.close()

    assert [call.url.params["date"] for call in calls] == ["2024-10-01", "2024-10-02"]
    assert all(call.url.path == "/v1/usage" for call in calls)
    assert telemetry.stored_events == 2
    assert telemetry.updated_events == 0


def test_unexpected_errors_are_recorded_with_a_generic_message(tmp_path: Path) -> None:
    """Exceptions outside the taxonomy become UNEXPECTED_ERROR issues."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return _page([_result("gpt-4o", 10, 5)])

    service = IngestionService(
        credential_source=_StaticCredentialSource({"alice": [_admin_record("key-1")]}),
        usage_client=_build_client(_handler),
        persistence=_ExplodingPersistence(),
        pricing=PricingEstimator(warning_registry=OnceRegistry()),
    )

    telemetry = service.ingest_subject("alice", WINDOW)

    assert telemetry.failed_keys == 1
    assert telemetry.issues[0].code == "UNEXPECTED_ERROR"
    assert "socket closed" not in telemetry.issues[0].message


def test_credential_deadline_turns_into_an_issue(tmp_path: Path) -> None:
    """An expired per-credential deadline fails that credential with DEADLINE_EXCEEDED."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return _page([])

    service, store = _build_service(
        tmp_path,
        _handler,
        {"alice": [_admin_record("key-1")]},
        credential_deadline_seconds=1,
        clock=itertools.count(0, 10).__next__,
    )
    try:
        telemetry = service.ingest_subject("alice", WINDOW)
    finally:
        store.close()

    assert telemetry.failed_keys == 1
    assert telemetry.issues[0].code == "DEADLINE_EXCEEDED"


def test_ingest_subjects_returns_telemetry_in_input_order(tmp_path: Path) -> None:
    """Concurrent subjects return their telemetry in the order requested."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return _page([_result("gpt-4o", 10, 5)])

    subjects = {
        "alice": [_admin_record("key-a")],
        "bob": [_admin_record("key-b1"), _admin_record("key-b2")],
        "carol": [],
    }
    service, store = _build_service(tmp_path, _handler, subjects)
    try:
        telemetries = service.ingest_subjects(["bob", "carol", "alice"], WINDOW, max_workers=3)
    finally:
        store.close()

    assert [telemetry.subject_id for telemetry in telemetries] == ["bob", "carol", "alice"]
    assert [telemetry.processed_keys for telemetry in telemetries] == [2, 0, 1]
    merged = telemetries[0].merge(telemetries[2])
    assert merged.stored_events == 3


def _build_service(
    tmp_path: Path,
    handler: Handler,
    subjects: dict[str, list[CredentialRecord]],
    **service_options: Any,
) -> tuple[IngestionService, DuckDBUsageEventStore]:
    store = DuckDBUsageEventStore(tmp_path / "usage.duckdb")
    store.ensure_schema()
    pricing = PricingEstimator(warning_registry=OnceRegistry())
    service = IngestionService(
        credential_source=_StaticCredentialSource(subjects),
        usage_client=_build_client(handler),
        persistence=UsagePersistence(store, warning_registry=OnceRegistry()),
        pricing=pricing,
        simulator=UsageSimulator(rng=random.Random(7), pricing=pricing),
        **service_options,
    )
    return service, store


def _build_client(handler: Handler) -> AdminUsageClient:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    transport = ResilientTransport(client, policy=RetryPolicy(max_attempts=2), sleep=lambda _: None)
    return AdminUsageClient(PaginationWalker(transport), base_url="https://api.openai.com/v1")


def _admin_record(credential_ref: str) -> CredentialRecord:
    return CredentialRecord(
        credential_ref=credential_ref,
        secret=f"sk-{credential_ref}",
        usage_mode="admin",
        organization_id="org_1",
        project_id="proj_1",
    )


def _result(model: str, tokens_in: int, tokens_out: int) -> dict[str, Any]:
    return {
        "object": "organization.usage.completions.result",
        "model": model,
        "input_tokens": tokens_in,
        "output_tokens": tokens_out,
        "num_model_requests": 1,
    }


def _bucket(start_time: int, results: list[dict[str, Any]]) -> dict[str, Any]:
    return {"object": "bucket", "start_time": start_time, "end_time": start_time + 86400, "results": results}


def _page(
    results: list[dict[str, Any]],
    next_page: str | None = None,
    extra_buckets: list[dict[str, Any]] | None = None,
) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "object": "page",
            "data": [_bucket(DAY_START_EPOCH, results), *(extra_buckets or [])],
            "has_more": next_page is not None,
            "next_page": next_page,
        },
    )
