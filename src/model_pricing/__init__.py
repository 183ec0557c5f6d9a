"""Shared model pricing utilities."""

from .price_table import (
    DEFAULT_FALLBACK_RATE,
    DEFAULT_PRICE_TABLE,
    DEFAULT_PREFIX_RULES,
    ModelRate,
    PrefixRule,
    PriceResolution,
    PricingEstimator,
    calculate_cost,
    load_pricing_overrides,
)

__all__ = [
    "DEFAULT_FALLBACK_RATE",
    "DEFAULT_PREFIX_RULES",
    "DEFAULT_PRICE_TABLE",
    "ModelRate",
    "PrefixRule",
    "PriceResolution",
    "PricingEstimator",
    "calculate_cost",
    "load_pricing_overrides",
]
