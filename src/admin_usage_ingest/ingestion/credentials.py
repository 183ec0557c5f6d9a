"""Credential listing and usage-mode resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from typing import Any, Protocol

import orjson

from .errors import ConfigurationError
from .schemas import Credential, UsageMode, UsageModeConfiguration

LOGGER = logging.getLogger(__name__)

VALID_USAGE_MODES: tuple[UsageMode, ...] = ("standard", "admin")


@dataclass(frozen=True)
class CredentialRecord:
    """One stored credential before its usage configuration is validated."""

    credential_ref: str
    secret: str | None = field(default=None, repr=False)
    usage_mode: str | None = None
    organization_id: str | None = None
    project_id: str | None = None


class CredentialSource(Protocol):
    """Supplies decrypted credentials for a subject."""

    def list_credentials(self, subject_id: str) -> list[CredentialRecord]:
        """Return every tracked credential of `subject_id`."""
        ...


def parse_usage_mode(value: Any) -> UsageMode | None:
    """Return the case-insensitive usage mode, or None when it is not one."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    for mode in VALID_USAGE_MODES:
        if normalized == mode:
            return mode
    return None


def resolve_credential(record: CredentialRecord) -> Credential:
    """Validate a stored credential into one the usage client can call with.

    Raises:
        ConfigurationError: When the secret is missing, the mode is unknown, or
            admin mode lacks its organization or project identifier.
    """
    if not record.secret:
        raise ConfigurationError(f"Credential {record.credential_ref} has no secret.")

    if record.usage_mode is None:
        mode: UsageMode = "standard"
    else:
        parsed = parse_usage_mode(record.usage_mode)
        if parsed is None:
            raise ConfigurationError(
                f"Credential {record.credential_ref} has unsupported usage mode {record.usage_mode!r}."
            )
        mode = parsed

    organization_id = _clean(record.organization_id)
    project_id = _clean(record.project_id)
    if mode == "admin":
        missing = [
            name
            for name, value in (("organization_id", organization_id), ("project_id", project_id))
            if value is None
        ]
        if missing:
            raise ConfigurationError(
                f"Credential {record.credential_ref} uses admin mode but is missing {', '.join(missing)}."
            )

    return Credential(
        credential_ref=record.credential_ref,
        secret=record.secret,
        usage=UsageModeConfiguration(mode=mode, organization_id=organization_id, project_id=project_id),
    )


class JsonCredentialSource:
    """Reads subjects and their credentials from a JSON file.

    The file maps subject ids to lists of credential objects, optionally nested
    under a top-level `"subjects"` key. Each credential carries either an inline
    `secret` or a `secret_env` naming the environment variable holding it.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._subjects: dict[str, list[CredentialRecord]] | None = None

    def list_subjects(self) -> list[str]:
        """Return every subject id in file order."""
        return list(self._load())

    def list_credentials(self, subject_id: str) -> list[CredentialRecord]:
        """Return every credential of `subject_id`; unknown subjects have none."""
        return list(self._load().get(subject_id, []))

    def _load(self) -> dict[str, list[CredentialRecord]]:
        if self._subjects is not None:
            return self._subjects
        try:
            payload = orjson.loads(self._path.read_bytes())
        except OSError as exc:
            raise ConfigurationError(f"Cannot read credential file {self._path}: {exc}") from exc
        except orjson.JSONDecodeError as exc:
            raise ConfigurationError(f"Credential file {self._path} is not valid JSON: {exc}") from exc

        if isinstance(payload, dict) and isinstance(payload.get("subjects"), dict):
            payload = payload["subjects"]
        if not isinstance(payload, dict):
            raise ConfigurationError(f"Credential file {self._path} must map subject ids to credential lists.")

        subjects: dict[str, list[CredentialRecord]] = {}
        for subject_id, entries in payload.items():
            if not isinstance(entries, list):
                raise ConfigurationError(f"Credentials for subject {subject_id!r} must be a list.")
            subjects[str(subject_id)] = [
                self._parse_entry(subject_id, index, entry) for index, entry in enumerate(entries)
            ]
        self._subjects = subjects
        LOGGER.debug("Loaded credentials for %d subject(s) from %s.", len(subjects), self._path)
        return subjects

    def _parse_entry(self, subject_id: str, index: int, entry: Any) -> CredentialRecord:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Credential #{index} of subject {subject_id!r} must be an object.")
        credential_ref = _clean(entry.get("credential_ref")) or _clean(entry.get("id"))
        if credential_ref is None:
            credential_ref = f"{subject_id}:{index}"

        secret = _clean(entry.get("secret"))
        secret_env = _clean(entry.get("secret_env"))
        if secret is None and secret_env is not None:
            secret = _clean(os.environ.get(secret_env))
            if secret is None:
                LOGGER.warning(
                    "Environment variable %s for credential %s is not set.",
                    secret_env,
                    credential_ref,
                )

        usage_mode = entry.get("usage_mode")
        return CredentialRecord(
            credential_ref=credential_ref,
            secret=secret,
            usage_mode=None if usage_mode is None else str(usage_mode),
            organization_id=_clean(entry.get("organization_id")),
            project_id=_clean(entry.get("project_id")),
        )


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
