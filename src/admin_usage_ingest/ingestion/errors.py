"""Custom exceptions for admin usage ingestion failures."""

from __future__ import annotations


class IngestionError(Exception):
    """Base exception for ingestion errors."""


class ConfigurationError(IngestionError):
    """Raised when a credential or setting is misconfigured; no network call is attempted."""


class ProviderError(IngestionError):
    """Raised when the usage API fails after transport retries or returns an unusable payload."""

    def __init__(self, message: str, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class AuthorizationError(ProviderError):
    """Raised when the usage API rejects the credential (HTTP 401/403 or missing scope)."""


class ThrottleTimeout(IngestionError):
    """Raised when the shared token bucket cannot admit a request before its timeout."""


class DeadlineExceeded(IngestionError):
    """Raised when a credential's pipeline runs past its caller-supplied deadline."""


class StorageError(IngestionError):
    """Raised by a usage event store; carries the SQL state code when one is known."""

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class StorageConstraintMissing(StorageError):
    """Raised when the unique constraint backing atomic upserts does not exist."""


class UnexpectedStorageError(StorageError):
    """Raised for storage failures that must never be swallowed."""
