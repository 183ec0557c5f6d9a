"""DuckDB repository for usage event persistence."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import duckdb

from .errors import StorageConstraintMissing, StorageError, UnexpectedStorageError
from .schemas import TOKEN_SUBCOUNT_FIELDS, StorageKey, TokenSubcounts, UpsertOutcome, UsageEvent

LOGGER = logging.getLogger(__name__)

UNIQUE_INDEX_NAME = "usage_admin_bucket_idx"

_EVENT_COLUMNS: tuple[str, ...] = (
    "credential_ref",
    "model",
    "tokens_in",
    "tokens_out",
    "cost_estimate",
    "event_timestamp",
    "window_start",
    "window_end",
    "provider_project_id",
    "provider_key_id",
    "provider_user_id",
    "service_tier",
    "is_batch",
    "num_model_requests",
    *TOKEN_SUBCOUNT_FIELDS,
    "pricing_key",
    "pricing_is_fallback",
)
_KEY_COLUMNS = ("credential_ref", "model", "window_start")
_TIMESTAMP_COLUMNS = ("event_timestamp", "window_start", "window_end")
_PLACEHOLDERS = ", ".join("?" for _ in _EVENT_COLUMNS)
_UPDATE_ASSIGNMENTS = ",\n    ".join(
    f"{column} = EXCLUDED.{column}" for column in _EVENT_COLUMNS if column not in _KEY_COLUMNS
)
_MANUAL_ASSIGNMENTS = ",\n    ".join(f"{column} = ?" for column in _EVENT_COLUMNS if column not in _KEY_COLUMNS)


class UsageEventStore(Protocol):
    """Storage operations the persistence layer relies on."""

    def upsert_on_conflict(self, event: UsageEvent) -> UpsertOutcome:
        """Insert or update atomically through the unique bucket constraint."""
        ...

    def find_event_id(self, key: StorageKey) -> int | None:
        """Return the row id stored under `key`, if any."""
        ...

    def insert_event(self, event: UsageEvent) -> None:
        """Insert a new row without conflict handling."""
        ...

    def update_event(self, event_id: int, event: UsageEvent) -> None:
        """Overwrite every non-key column of row `event_id`."""
        ...


class DuckDBUsageEventStore:
    """DuckDB-backed usage event store keyed on credential, model and window start."""

    def __init__(self, database_path: Path | str) -> None:
        self._database_path = database_path
        self._connection = duckdb.connect(str(database_path))
        self._lock = threading.RLock()

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        with self._lock:
            self._connection.close()

    def ensure_schema(self, create_unique_index: bool = True) -> None:
        """Create the usage table when missing.

        Args:
            create_unique_index: When False the table is created without the
                unique bucket index, as on a database whose migration has not run.
        """
        subcount_columns = "\n".join(f"    {name} BIGINT," for name in TOKEN_SUBCOUNT_FIELDS)
        with self._lock:
            _ = self._connection.execute("CREATE SEQUENCE IF NOT EXISTS usage_events_id_seq")
            _ = self._connection.execute(
                f"""
CREATE TABLE IF NOT EXISTS usage_events (
    id BIGINT PRIMARY KEY DEFAULT nextval('usage_events_id_seq'),
    credential_ref VARCHAR NOT NULL,
    model VARCHAR NOT NULL,
    tokens_in BIGINT NOT NULL,
    tokens_out BIGINT NOT NULL,
    cost_estimate DOUBLE NOT NULL,
    event_timestamp TIMESTAMPTZ NOT NULL,
    window_start TIMESTAMPTZ NOT NULL,
    window_end TIMESTAMPTZ NOT NULL,
    provider_project_id VARCHAR,
    provider_key_id VARCHAR,
    provider_user_id VARCHAR,
    service_tier VARCHAR,
    is_batch BOOLEAN,
    num_model_requests BIGINT,
{subcount_columns}
    pricing_key VARCHAR,
    pricing_is_fallback BOOLEAN NOT NULL DEFAULT FALSE,
    ingested_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
                """
            )
            if create_unique_index:
                _ = self._connection.execute(
                    f"""
CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_INDEX_NAME}
ON usage_events (credential_ref, model, window_start)
                    """
                )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Open a DB transaction scope."""
        with self._lock:
            _ = self._connection.execute("BEGIN TRANSACTION")
            try:
                yield
            except Exception:
                _ = self._connection.execute("ROLLBACK")
                raise
            else:
                _ = self._connection.execute("COMMIT")

    def upsert_on_conflict(self, event: UsageEvent) -> UpsertOutcome:
        """Upsert through `ON CONFLICT` on the bucket index.

        Raises:
            StorageConstraintMissing: When the unique bucket index does not exist.
            UnexpectedStorageError: For every other database failure.
        """
        try:
            with self.transaction():
                existing_id = self._select_event_id(event.storage_key)
                _ = self._connection.execute(
                    f"""
INSERT INTO usage_events ({", ".join(_EVENT_COLUMNS)})
VALUES ({_PLACEHOLDERS})
ON CONFLICT (credential_ref, model, window_start)
DO UPDATE SET
    {_UPDATE_ASSIGNMENTS},
    updated_at = NOW()
                    """,
                    _event_values(event),
                )
        except duckdb.Error as exc:
            raise _translate_error(exc, "upsert usage event") from exc
        return UpsertOutcome.INSERTED if existing_id is None else UpsertOutcome.UPDATED

    def find_event_id(self, key: StorageKey) -> int | None:
        """Return the row id stored under `key`, if any."""
        try:
            with self._lock:
                return self._select_event_id(key)
        except duckdb.Error as exc:
            raise _translate_error(exc, "look up usage event") from exc

    def insert_event(self, event: UsageEvent) -> None:
        """Insert one row without conflict handling."""
        try:
            with self._lock:
                _ = self._connection.execute(
                    f"INSERT INTO usage_events ({', '.join(_EVENT_COLUMNS)}) VALUES ({_PLACEHOLDERS})",
                    _event_values(event),
                )
        except duckdb.Error as exc:
            raise _translate_error(exc, "insert usage event") from exc

    def update_event(self, event_id: int, event: UsageEvent) -> None:
        """Overwrite every non-key column of row `event_id`."""
        values = [
            value
            for column, value in zip(_EVENT_COLUMNS, _event_values(event), strict=True)
            if column not in _KEY_COLUMNS
        ]
        try:
            with self._lock:
                _ = self._connection.execute(
                    f"""
UPDATE usage_events
SET
    {_MANUAL_ASSIGNMENTS},
    updated_at = NOW()
WHERE id = ?
                    """,
                    [*values, event_id],
                )
        except duckdb.Error as exc:
            raise _translate_error(exc, "update usage event") from exc

    def fetch_events(self, credential_ref: str | None = None) -> list[UsageEvent]:
        """Return stored events ordered by credential, window and model."""
        where = "WHERE credential_ref = ?" if credential_ref is not None else ""
        params = [credential_ref] if credential_ref is not None else []
        selected = [f"epoch({column})" if column in _TIMESTAMP_COLUMNS else column for column in _EVENT_COLUMNS]
        with self._lock:
            rows = self._connection.execute(
                f"""
SELECT {", ".join(selected)}
FROM usage_events
{where}
ORDER BY credential_ref, window_start, model
                """,
                params,
            ).fetchall()
        return [_row_to_event(dict(zip(_EVENT_COLUMNS, row, strict=True))) for row in rows]

    def count_events(self) -> int:
        """Return the number of stored rows."""
        with self._lock:
            row = self._connection.execute("SELECT COUNT(*) FROM usage_events").fetchone()
        return int(row[0]) if row is not None else 0

    def _select_event_id(self, key: StorageKey) -> int | None:
        row = self._connection.execute(
            """
SELECT id
FROM usage_events
WHERE credential_ref = ? AND model = ? AND window_start = ?
ORDER BY id
LIMIT 1
            """,
            [key.credential_ref, key.model, key.window_start],
        ).fetchone()
        return int(row[0]) if row is not None else None


def _event_values(event: UsageEvent) -> list[Any]:
    subcounts = event.token_subcounts.as_dict()
    return [
        event.credential_ref,
        event.model,
        event.tokens_in,
        event.tokens_out,
        event.cost_estimate,
        event.timestamp,
        event.window_start,
        event.window_end,
        event.provider_project_id,
        event.provider_key_id,
        event.provider_user_id,
        event.service_tier,
        event.is_batch,
        event.num_model_requests,
        *(subcounts[name] for name in TOKEN_SUBCOUNT_FIELDS),
        event.pricing_key,
        event.pricing_is_fallback,
    ]


def _row_to_event(row: dict[str, Any]) -> UsageEvent:
    return UsageEvent(
        model=str(row["model"]),
        tokens_in=int(row["tokens_in"]),
        tokens_out=int(row["tokens_out"]),
        cost_estimate=float(row["cost_estimate"]),
        timestamp=_from_epoch(row["event_timestamp"]),
        window_start=_from_epoch(row["window_start"]),
        window_end=_from_epoch(row["window_end"]),
        credential_ref=str(row["credential_ref"]),
        provider_project_id=row["provider_project_id"],
        provider_key_id=row["provider_key_id"],
        provider_user_id=row["provider_user_id"],
        service_tier=row["service_tier"],
        is_batch=row["is_batch"],
        num_model_requests=row["num_model_requests"],
        token_subcounts=TokenSubcounts(**{name: row[name] for name in TOKEN_SUBCOUNT_FIELDS}),
        pricing_key=row["pricing_key"],
        pricing_is_fallback=bool(row["pricing_is_fallback"]),
    )


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=UTC)


def _translate_error(exc: duckdb.Error, action: str) -> StorageError:
    message = str(exc)
    if isinstance(exc, duckdb.BinderException) and "conflict" in message.lower():
        LOGGER.debug("DuckDB reported a missing conflict target while trying to %s: %s", action, message)
        return StorageConstraintMissing(f"Failed to {action}: {message}", sqlstate="42P10")
    if isinstance(exc, duckdb.ConstraintException):
        return UnexpectedStorageError(f"Failed to {action}: {message}", sqlstate="23505")
    return UnexpectedStorageError(f"Failed to {action}: {message}")
