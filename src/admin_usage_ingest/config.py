"""Environment-driven settings for admin usage ingestion."""

from __future__ import annotations

from dataclasses import dataclass
import math
import os
from pathlib import Path
from typing import Mapping

from .ingestion.client import DEFAULT_BASE_URL
from .ingestion.errors import ConfigurationError

ENV_PREFIX = "ADMIN_USAGE_"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class IngestionSettings:
    """Runtime knobs for the transport, rate limiter and orchestrator."""

    base_url: str = DEFAULT_BASE_URL
    rate_per_minute: float = 50.0
    burst: float = 10.0
    acquire_timeout_seconds: float = 60.0
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    http_timeout_seconds: float = 30.0
    simulate_on_permission_failure: bool = False
    pricing_overrides_path: Path | None = None
    credential_deadline_seconds: float | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> IngestionSettings:
        """Build settings from `ADMIN_USAGE_*` variables, falling back to defaults.

        Raises:
            ConfigurationError: If a variable holds an unusable value.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        base_url = env.get(f"{ENV_PREFIX}BASE_URL", "").strip() or defaults.base_url
        if not base_url.startswith("https://"):
            raise ConfigurationError(f"{ENV_PREFIX}BASE_URL must be an https URL, got {base_url!r}.")

        overrides_path = env.get(f"{ENV_PREFIX}PRICING_OVERRIDES", "").strip()
        deadline = _read_float(env, "CREDENTIAL_DEADLINE", None, minimum=0.0, exclusive=True)

        return cls(
            base_url=base_url,
            rate_per_minute=_read_float(env, "RATE_PER_MINUTE", defaults.rate_per_minute, minimum=0.0, exclusive=True),
            burst=_read_float(env, "BURST", defaults.burst, minimum=1.0),
            acquire_timeout_seconds=_read_float(
                env, "ACQUIRE_TIMEOUT", defaults.acquire_timeout_seconds, minimum=0.0
            ),
            max_attempts=_read_int(env, "MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
            base_delay_seconds=_read_float(env, "BASE_DELAY", defaults.base_delay_seconds, minimum=0.0),
            http_timeout_seconds=_read_float(
                env, "HTTP_TIMEOUT", defaults.http_timeout_seconds, minimum=0.0, exclusive=True
            ),
            simulate_on_permission_failure=_read_bool(
                env, "SIMULATE_ON_PERMISSION_FAILURE", defaults.simulate_on_permission_failure
            ),
            pricing_overrides_path=Path(overrides_path).expanduser() if overrides_path else None,
            credential_deadline_seconds=deadline,
        )


def _read_float(
    env: Mapping[str, str],
    name: str,
    default: float | None,
    minimum: float,
    exclusive: bool = False,
) -> float | None:
    raw = env.get(f"{ENV_PREFIX}{name}", "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}.") from exc
    if not math.isfinite(value) or value < minimum or (exclusive and value == minimum):
        bound = "greater than" if exclusive else "at least"
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be {bound} {minimum:g}, got {raw!r}.")
    return value


def _read_int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(f"{ENV_PREFIX}{name}", "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}.") from exc
    if value < minimum:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be at least {minimum}, got {raw!r}.")
    return value


def _read_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}.")
