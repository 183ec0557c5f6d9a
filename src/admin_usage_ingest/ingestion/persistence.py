"""Usage event upserts with a manual dedupe path for databases lacking the bucket index."""

from __future__ import annotations

import logging

from admin_usage_internal.warnings import OnceRegistry

from .errors import StorageConstraintMissing
from .repository import UNIQUE_INDEX_NAME, UsageEventStore
from .schemas import UpsertOutcome, UpsertResult, UsageEvent

LOGGER = logging.getLogger(__name__)

# 42P10: no unique constraint matches the ON CONFLICT target; 42704: undefined object.
CONSTRAINT_MISSING_SQLSTATES = frozenset({"42P10", "42704"})

CONSTRAINT_WARNINGS = OnceRegistry()


def is_constraint_missing_error(error: BaseException) -> bool:
    """Return True when `error` says the upsert conflict target does not exist."""
    if isinstance(error, StorageConstraintMissing):
        return True
    for attribute in ("sqlstate", "pgcode", "code"):
        value = getattr(error, attribute, None)
        if isinstance(value, str) and value.upper() in CONSTRAINT_MISSING_SQLSTATES:
            return True
    return False


class UsagePersistence:
    """Stores usage events idempotently on `(credential_ref, model, window_start)`."""

    def __init__(self, store: UsageEventStore, warning_registry: OnceRegistry | None = None) -> None:
        self._store = store
        self._warnings = warning_registry if warning_registry is not None else CONSTRAINT_WARNINGS

    def upsert(self, event: UsageEvent) -> UpsertResult:
        """Insert or update one event.

        The atomic `ON CONFLICT` path is tried first. When the store reports the
        bucket index is missing, the event is deduplicated by key lookup instead.
        Any other storage failure propagates unchanged.
        """
        try:
            outcome = self._store.upsert_on_conflict(event)
        except Exception as exc:
            if not is_constraint_missing_error(exc):
                raise
            self._warn_constraint_missing(exc)
            return UpsertResult(outcome=self._manual_upsert(event), via_fallback=True)
        return UpsertResult(outcome=outcome)

    def _manual_upsert(self, event: UsageEvent) -> UpsertOutcome:
        event_id = self._store.find_event_id(event.storage_key)
        if event_id is None:
            self._store.insert_event(event)
            return UpsertOutcome.INSERTED
        self._store.update_event(event_id, event)
        return UpsertOutcome.UPDATED

    def _warn_constraint_missing(self, error: BaseException) -> None:
        if not self._warnings.first_time(UNIQUE_INDEX_NAME):
            return
        LOGGER.warning(
            "Unique index %s is missing; falling back to manual usage event dedupe. "
            "Create the index to restore atomic upserts (%s).",
            UNIQUE_INDEX_NAME,
            error,
        )
