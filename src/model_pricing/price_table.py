"""Per-1K token price table with prefix and default-tier fallback."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from pathlib import Path
from typing import Any, Mapping

import orjson

from admin_usage_internal.warnings import OnceRegistry

LOGGER = logging.getLogger(__name__)

DEFAULT_OVERRIDE_KEY = "default"
PRICING_FALLBACK_WARNINGS = OnceRegistry()


@dataclass(frozen=True)
class ModelRate:
    """USD price per 1K input and output tokens."""

    input_per_1k: float
    output_per_1k: float


@dataclass(frozen=True)
class PrefixRule:
    """Maps every model name starting with `prefix` to the family price `pricing_key`."""

    prefix: str
    pricing_key: str


@dataclass(frozen=True)
class PriceResolution:
    """Resolved rate for one model name."""

    rate: ModelRate
    pricing_key: str
    is_fallback: bool


DEFAULT_PRICE_TABLE: dict[str, ModelRate] = {
    "gpt-4o": ModelRate(input_per_1k=0.0025, output_per_1k=0.01),
    "gpt-4o-mini": ModelRate(input_per_1k=0.00015, output_per_1k=0.0006),
    "gpt-4-turbo": ModelRate(input_per_1k=0.01, output_per_1k=0.03),
    "gpt-4": ModelRate(input_per_1k=0.03, output_per_1k=0.06),
    "gpt-4.1": ModelRate(input_per_1k=0.002, output_per_1k=0.008),
    "gpt-4.1-mini": ModelRate(input_per_1k=0.0004, output_per_1k=0.0016),
    "gpt-4.1-nano": ModelRate(input_per_1k=0.0001, output_per_1k=0.0004),
    "gpt-3.5-turbo": ModelRate(input_per_1k=0.0005, output_per_1k=0.0015),
    "o1": ModelRate(input_per_1k=0.015, output_per_1k=0.06),
    "o1-mini": ModelRate(input_per_1k=0.0011, output_per_1k=0.0044),
    "o3": ModelRate(input_per_1k=0.002, output_per_1k=0.008),
    "o3-mini": ModelRate(input_per_1k=0.0011, output_per_1k=0.0044),
    "o4-mini": ModelRate(input_per_1k=0.0011, output_per_1k=0.0044),
    "text-embedding-3-small": ModelRate(input_per_1k=0.00002, output_per_1k=0.0),
    "text-embedding-3-large": ModelRate(input_per_1k=0.00013, output_per_1k=0.0),
}

# Evaluated in order; more specific families come first.
DEFAULT_PREFIX_RULES: tuple[PrefixRule, ...] = (
    PrefixRule(prefix="gpt-4o-mini", pricing_key="gpt-4o-mini"),
    PrefixRule(prefix="gpt-4o", pricing_key="gpt-4o"),
    PrefixRule(prefix="gpt-4.1-nano", pricing_key="gpt-4.1-nano"),
    PrefixRule(prefix="gpt-4.1-mini", pricing_key="gpt-4.1-mini"),
    PrefixRule(prefix="gpt-4.1", pricing_key="gpt-4.1"),
    PrefixRule(prefix="gpt-4-turbo", pricing_key="gpt-4-turbo"),
    PrefixRule(prefix="gpt-4", pricing_key="gpt-4"),
    PrefixRule(prefix="gpt-3.5-turbo", pricing_key="gpt-3.5-turbo"),
    PrefixRule(prefix="o1-mini", pricing_key="o1-mini"),
    PrefixRule(prefix="o1", pricing_key="o1"),
    PrefixRule(prefix="o3-mini", pricing_key="o3-mini"),
    PrefixRule(prefix="o3", pricing_key="o3"),
    PrefixRule(prefix="o4-mini", pricing_key="o4-mini"),
    PrefixRule(prefix="text-embedding-3-small", pricing_key="text-embedding-3-small"),
    PrefixRule(prefix="text-embedding-3-large", pricing_key="text-embedding-3-large"),
)

DEFAULT_FALLBACK_RATE = ModelRate(input_per_1k=0.001, output_per_1k=0.002)


class PricingEstimator:
    """Resolve model rates and estimate cost from token counts.

    Operator overrides win over the built-in table at every step:
    exact name, prefix family, and the default tier (override key ``"default"``).
    Override keys ending in ``*`` act as prefix rules.
    """

    def __init__(
        self,
        overrides: Mapping[str, ModelRate] | None = None,
        table: Mapping[str, ModelRate] | None = None,
        prefix_rules: tuple[PrefixRule, ...] = DEFAULT_PREFIX_RULES,
        fallback_rate: ModelRate = DEFAULT_FALLBACK_RATE,
        warning_registry: OnceRegistry | None = None,
    ) -> None:
        overrides = dict(overrides or {})
        self._override_exact = {key.lower(): rate for key, rate in overrides.items() if not key.endswith("*")}
        self._override_prefixes = sorted(
            ((key[:-1].lower(), rate) for key, rate in overrides.items() if key.endswith("*") and len(key) > 1),
            key=lambda item: len(item[0]),
            reverse=True,
        )
        self._table = {key.lower(): rate for key, rate in (table or DEFAULT_PRICE_TABLE).items()}
        self._prefix_rules = prefix_rules
        self._fallback_rate = self._override_exact.get(DEFAULT_OVERRIDE_KEY, fallback_rate)
        self._warnings = warning_registry if warning_registry is not None else PRICING_FALLBACK_WARNINGS

    def resolve(self, model: str) -> PriceResolution:
        """Return the rate for `model`, flagging default-tier fallbacks."""
        name = model.lower()
        if name in self._override_exact and name != DEFAULT_OVERRIDE_KEY:
            return PriceResolution(rate=self._override_exact[name], pricing_key=name, is_fallback=False)
        if name in self._table:
            return PriceResolution(rate=self._table[name], pricing_key=name, is_fallback=False)

        for prefix, rate in self._override_prefixes:
            if name.startswith(prefix):
                return PriceResolution(rate=rate, pricing_key=f"{prefix}*", is_fallback=False)

        for rule in self._prefix_rules:
            if not name.startswith(rule.prefix):
                continue
            rate = self._override_exact.get(rule.pricing_key) or self._table.get(rule.pricing_key)
            if rate is not None:
                return PriceResolution(rate=rate, pricing_key=rule.pricing_key, is_fallback=False)

        if self._warnings.first_time(name):
            LOGGER.warning(
                "No price configured for model %s; estimating with the default tier (%s/%s per 1K tokens).",
                name,
                self._fallback_rate.input_per_1k,
                self._fallback_rate.output_per_1k,
            )
        return PriceResolution(rate=self._fallback_rate, pricing_key=DEFAULT_OVERRIDE_KEY, is_fallback=True)

    def estimate(self, model: str, tokens_in: int, tokens_out: int) -> tuple[float, PriceResolution]:
        """Estimate USD cost and return it with the resolution used."""
        resolution = self.resolve(model)
        cost = calculate_cost(resolution.rate, tokens_in, tokens_out)
        return cost, resolution


def calculate_cost(rate: ModelRate, tokens_in: int, tokens_out: int) -> float:
    """Return `(in/1000)*input + (out/1000)*output` rounded to 6 decimals."""
    cost = (tokens_in / 1000) * rate.input_per_1k + (tokens_out / 1000) * rate.output_per_1k
    return round(cost, 6)


def load_pricing_overrides(path: Path | str) -> dict[str, ModelRate]:
    """Load operator price overrides from a JSON file.

    Accepts per-1K entries (``{"input": 0.01, "output": 0.03}``) and
    per-token entries in the LiteLLM price-spec shape
    (``input_cost_per_token`` / ``output_cost_per_token``).

    Raises:
        ValueError: If the file is missing, not JSON, or an entry is malformed.
    """
    override_path = Path(path).expanduser()
    try:
        payload = orjson.loads(override_path.read_bytes())
    except FileNotFoundError as exc:
        raise ValueError(f"Pricing override file not found: {override_path}") from exc
    except orjson.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in pricing override file {override_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValueError(f"Pricing override file {override_path} must contain a JSON object.")

    overrides: dict[str, ModelRate] = {}
    for model, entry in payload.items():
        overrides[str(model).lower()] = _parse_override_entry(str(model), entry)
    LOGGER.info("Loaded %d pricing overrides from %s.", len(overrides), override_path)
    return overrides


def _parse_override_entry(model: str, entry: Any) -> ModelRate:
    if not isinstance(entry, dict):
        raise ValueError(f"Pricing override for {model} must be an object.")
    if "input" in entry or "output" in entry:
        return ModelRate(
            input_per_1k=_require_rate(model, entry, "input"),
            output_per_1k=_require_rate(model, entry, "output"),
        )
    if "input_cost_per_token" in entry or "output_cost_per_token" in entry:
        return ModelRate(
            input_per_1k=_require_rate(model, entry, "input_cost_per_token") * 1000,
            output_per_1k=_require_rate(model, entry, "output_cost_per_token") * 1000,
        )
    raise ValueError(f"Pricing override for {model} has no input/output rates.")


def _require_rate(model: str, entry: dict[str, Any], field: str) -> float:
    value = entry.get(field, 0)
    if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value) or value < 0:
        raise ValueError(f"Invalid {field} for {model}: expected a non-negative number.")
    return float(value)
