"""Normalize raw usage API pages into canonical usage events."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime
import logging
import math
import re
from typing import Any

from model_pricing import PricingEstimator

from .schemas import (
    DAY,
    TOKEN_SUBCOUNT_FIELDS,
    CompletionsRecord,
    DailyCostRecord,
    NormalizationResult,
    RawUsageRecord,
    StorageKey,
    TokenSubcounts,
    UsageEvent,
    WindowContext,
)

LOGGER = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown"

_MODEL_SEPARATORS = re.compile(r"[^a-z0-9.]+")

_INPUT_TOKEN_FIELDS = ("input_tokens", "prompt_tokens", "n_context_tokens_total")
_OUTPUT_TOKEN_FIELDS = ("output_tokens", "completion_tokens", "n_generated_tokens_total")
_NESTED_INPUT_FIELDS = ("prompt_tokens", "input_tokens")
_NESTED_OUTPUT_FIELDS = ("completion_tokens", "output_tokens")


def parse_usage_page(body: dict[str, Any]) -> list[RawUsageRecord]:
    """Resolve one page body into the known record shapes."""
    records: list[RawUsageRecord] = []

    for bucket in _as_list(body.get("data")):
        if not isinstance(bucket, dict):
            continue
        results = bucket.get("results")
        if isinstance(results, list):
            attributes = {key: value for key, value in bucket.items() if key != "results"}
            records.append(
                CompletionsRecord(
                    start_time=_as_epoch(bucket.get("start_time")),
                    start_time_iso=_as_str(bucket.get("start_time_iso")),
                    end_time=_as_epoch(bucket.get("end_time")),
                    end_time_iso=_as_str(bucket.get("end_time_iso")),
                    attributes=attributes,
                    results=tuple(item for item in results if isinstance(item, dict)),
                )
            )
        else:
            # Legacy per-operation rows carry their own aggregation timestamp.
            records.append(
                CompletionsRecord(
                    start_time=_as_epoch(bucket.get("aggregation_timestamp", bucket.get("start_time"))),
                    start_time_iso=_as_str(bucket.get("start_time_iso")),
                    end_time=None,
                    end_time_iso=None,
                    attributes={},
                    results=(bucket,),
                )
            )

    for daily in _as_list(body.get("daily_costs")):
        if not isinstance(daily, dict):
            continue
        line_items = daily.get("line_items")
        records.append(
            DailyCostRecord(
                timestamp=_as_epoch(daily.get("timestamp")),
                line_items=tuple(item for item in _as_list(line_items) if isinstance(item, dict)),
            )
        )

    return records


def normalize(
    records: list[RawUsageRecord],
    context: WindowContext,
    pricing: PricingEstimator,
) -> NormalizationResult:
    """Map raw records to usage events for one credential."""
    events: list[UsageEvent] = []
    fallback_models: list[str] = []

    for record in records:
        if isinstance(record, CompletionsRecord):
            window_start, window_end = resolve_window(
                start_iso=record.start_time_iso,
                start_epoch=record.start_time,
                end_iso=record.end_time_iso,
                end_epoch=record.end_time,
                fallback_start=context.fallback_start,
            )
            items = record.results
            attributes = record.attributes
        else:
            window_start, window_end = resolve_window(
                start_iso=None,
                start_epoch=record.timestamp,
                end_iso=None,
                end_epoch=None,
                fallback_start=context.fallback_start,
            )
            items = record.line_items
            attributes = {}

        for item in items:
            event = _normalize_item(item, attributes, window_start, window_end, context, pricing)
            if event.pricing_is_fallback and event.model not in fallback_models:
                fallback_models.append(event.model)
            events.append(event)

    return NormalizationResult(events=events, fallback_models=fallback_models)


def fold_events(events: list[UsageEvent]) -> list[UsageEvent]:
    """Combine events sharing a storage key into one event per key.

    Grouped admin results split one model's day across projects, users, keys
    and batch flags. Counters and costs are summed; a dimension survives only
    when every folded event agrees on it.
    """
    groups: dict[StorageKey, list[UsageEvent]] = {}
    for event in events:
        groups.setdefault(event.storage_key, []).append(event)
    return [group[0] if len(group) == 1 else _fold_group(group) for group in groups.values()]


def normalize_model_name(raw: str) -> str:
    """Lower-case and hyphenate a model name."""
    collapsed = _MODEL_SEPARATORS.sub("-", raw.strip().lower())
    return collapsed.strip("-") or UNKNOWN_MODEL


def extract_model_name(item: dict[str, Any]) -> str:
    """Probe the model candidates in priority order."""
    for field_name in ("model", "name", "snapshot_id"):
        candidate = _as_str(item.get(field_name))
        if candidate:
            return normalize_model_name(candidate)

    operation = _as_str(item.get("operation"))
    if operation:
        segments = [segment for segment in operation.split(":") if segment.strip()]
        if segments:
            return normalize_model_name(segments[-1])

    return UNKNOWN_MODEL


def utc_day_start(value: datetime) -> datetime:
    """Return UTC midnight of the day containing `value`."""
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    aware = aware.astimezone(UTC)
    return aware.replace(hour=0, minute=0, second=0, microsecond=0)


def resolve_window(
    start_iso: str | None,
    start_epoch: int | None,
    end_iso: str | None,
    end_epoch: int | None,
    fallback_start: datetime,
) -> tuple[datetime, datetime]:
    """Derive `[start, end)` preferring explicit provider timestamps."""
    start = _parse_iso(start_iso)
    if start is None and start_epoch is not None:
        start = _epoch_to_datetime(start_epoch)
    explicit_start = start is not None
    if start is None:
        start = utc_day_start(fallback_start)

    end = None
    if explicit_start:
        end = _parse_iso(end_iso)
        if end is None and end_epoch is not None:
            end = _epoch_to_datetime(end_epoch)
    if end is None or end < start:
        end = start + DAY
    return start, end


def _normalize_item(
    item: dict[str, Any],
    attributes: dict[str, Any],
    window_start: datetime,
    window_end: datetime,
    context: WindowContext,
    pricing: PricingEstimator,
) -> UsageEvent:
    model = extract_model_name(item)
    usage = item.get("usage") if isinstance(item.get("usage"), dict) else {}

    tokens_in = _first_count(item, _INPUT_TOKEN_FIELDS)
    if tokens_in is None:
        tokens_in = _first_count(usage, _NESTED_INPUT_FIELDS)
    tokens_out = _first_count(item, _OUTPUT_TOKEN_FIELDS)
    if tokens_out is None:
        tokens_out = _first_count(usage, _NESTED_OUTPUT_FIELDS)
    tokens_in = tokens_in or 0
    tokens_out = tokens_out or 0

    provider_cost = _provider_cost(item, usage)
    pricing_key = None
    pricing_is_fallback = False
    if provider_cost is not None and provider_cost > 0:
        cost = round(provider_cost, 6)
    else:
        cost, resolution = pricing.estimate(model, tokens_in, tokens_out)
        pricing_key = resolution.pricing_key
        pricing_is_fallback = resolution.is_fallback

    return UsageEvent(
        model=model,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        cost_estimate=cost,
        timestamp=window_start,
        window_start=window_start,
        window_end=window_end,
        credential_ref=context.credential_ref,
        provider_project_id=_as_str(_read_attribute(item, attributes, "project_id")),
        provider_key_id=_as_str(_read_attribute(item, attributes, "api_key_id"))
        or _as_str(_read_attribute(item, attributes, "service_account_key_id")),
        provider_user_id=_as_str(_read_attribute(item, attributes, "user_id")),
        service_tier=_as_str(_read_attribute(item, attributes, "service_tier")),
        is_batch=_as_bool(_read_attribute(item, attributes, "batch")),
        num_model_requests=_request_count(item, attributes),
        token_subcounts=_token_subcounts(item, tokens_in),
        pricing_key=pricing_key,
        pricing_is_fallback=pricing_is_fallback,
    )


def _fold_group(group: list[UsageEvent]) -> UsageEvent:
    first = group[0]
    subcounts = {
        name: _sum_optional(getattr(event.token_subcounts, name) for event in group)
        for name in TOKEN_SUBCOUNT_FIELDS
    }
    return replace(
        first,
        tokens_in=sum(event.tokens_in for event in group),
        tokens_out=sum(event.tokens_out for event in group),
        cost_estimate=round(sum(event.cost_estimate for event in group), 6),
        timestamp=min(event.timestamp for event in group),
        window_end=max(event.window_end for event in group),
        provider_project_id=_agreed(event.provider_project_id for event in group),
        provider_key_id=_agreed(event.provider_key_id for event in group),
        provider_user_id=_agreed(event.provider_user_id for event in group),
        service_tier=_agreed(event.service_tier for event in group),
        is_batch=_agreed(event.is_batch for event in group),
        num_model_requests=_sum_optional(event.num_model_requests for event in group),
        token_subcounts=TokenSubcounts(**subcounts),
        pricing_key=_agreed(event.pricing_key for event in group),
        pricing_is_fallback=any(event.pricing_is_fallback for event in group),
    )


def _agreed(values: Iterable[Any]) -> Any:
    distinct = set(values)
    return distinct.pop() if len(distinct) == 1 else None


def _sum_optional(values: Iterable[int | None]) -> int | None:
    present = [value for value in values if value is not None]
    return sum(present) if present else None


def _request_count(item: dict[str, Any], attributes: dict[str, Any]) -> int | None:
    count = _as_count(_read_attribute(item, attributes, "num_model_requests"))
    if count is None:
        count = _as_count(item.get("n_requests"))
    return count


def _token_subcounts(item: dict[str, Any], tokens_in: int) -> TokenSubcounts:
    values = {name: _as_count(item.get(name)) for name in TOKEN_SUBCOUNT_FIELDS}
    if values["input_uncached_tokens"] is None and values["input_cached_tokens"] is not None:
        values["input_uncached_tokens"] = max(tokens_in - values["input_cached_tokens"], 0)
    return TokenSubcounts(**values)


def _read_attribute(item: dict[str, Any], attributes: dict[str, Any], field_name: str) -> Any:
    value = item.get(field_name)
    if value is not None:
        return value
    metadata = item.get("metadata")
    if isinstance(metadata, dict) and metadata.get(field_name) is not None:
        return metadata[field_name]
    return attributes.get(field_name)


def _provider_cost(item: dict[str, Any], usage: dict[str, Any]) -> float | None:
    for candidate in (item.get("cost"), item.get("amount"), usage.get("total_cost")):
        if isinstance(candidate, dict):
            candidate = candidate.get("value")
        value = _as_finite(candidate)
        if value is not None:
            return value
    return None


def _first_count(payload: dict[str, Any], field_names: tuple[str, ...]) -> int | None:
    for field_name in field_names:
        if payload.get(field_name) is not None:
            return _as_count(payload.get(field_name)) or 0
    return None


def _as_count(value: Any) -> int | None:
    number = _as_finite(value)
    if number is None:
        return None
    return max(int(number), 0)


def _as_finite(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, int | float) or not math.isfinite(value):
        return None
    return float(value)


def _as_epoch(value: Any) -> int | None:
    number = _as_finite(value)
    return int(number) if number is not None else None


def _as_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _as_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _epoch_to_datetime(value: int) -> datetime | None:
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        LOGGER.warning("Ignoring out-of-range epoch timestamp %r.", value)
        return None


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        LOGGER.warning("Ignoring unparseable window timestamp %r.", value)
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
