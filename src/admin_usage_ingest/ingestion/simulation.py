"""Synthetic usage events for credentials the usage API refuses."""

from __future__ import annotations

import logging
import random

from model_pricing import PricingEstimator

from .normalizer import utc_day_start
from .schemas import DAY, IngestionWindow, TokenSubcounts, UsageEvent

LOGGER = logging.getLogger(__name__)

SIMULATED_MODELS: tuple[str, ...] = ("gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo", "o3-mini")


class UsageSimulator:
    """Generates a bounded random volume of plausible events per UTC day."""

    def __init__(
        self,
        rng: random.Random | None = None,
        pricing: PricingEstimator | None = None,
        max_events_per_day: int = 3,
        models: tuple[str, ...] = SIMULATED_MODELS,
    ) -> None:
        if max_events_per_day < 1:
            raise ValueError("max_events_per_day must be at least 1")
        if not models:
            raise ValueError("models must not be empty")
        self._rng = rng or random.Random()
        self._pricing = pricing or PricingEstimator()
        self._max_events_per_day = min(max_events_per_day, len(models))
        self._models = models

    def generate(self, credential_ref: str, window: IngestionWindow) -> list[UsageEvent]:
        """Return between 1 and `max_events_per_day` events for each day of `window`.

        Models are distinct within a day so every event has its own storage key.
        """
        events: list[UsageEvent] = []
        day = utc_day_start(window.start)
        while day < window.end:
            count = self._rng.randint(1, self._max_events_per_day)
            for model in self._rng.sample(self._models, count):
                tokens_in = self._rng.randint(100, 5_000)
                tokens_out = self._rng.randint(50, 2_000)
                cost, resolution = self._pricing.estimate(model, tokens_in, tokens_out)
                events.append(
                    UsageEvent(
                        model=model,
                        tokens_in=tokens_in,
                        tokens_out=tokens_out,
                        cost_estimate=cost,
                        timestamp=day,
                        window_start=day,
                        window_end=day + DAY,
                        credential_ref=credential_ref,
                        num_model_requests=self._rng.randint(1, 50),
                        token_subcounts=TokenSubcounts(input_uncached_tokens=tokens_in),
                        pricing_key=resolution.pricing_key,
                        pricing_is_fallback=resolution.is_fallback,
                    )
                )
            day = day + DAY
        LOGGER.info("Generated %d simulated usage event(s) for %s.", len(events), credential_ref)
        return events
