"""Per-model token pricing for inference steps that report no cost."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from taskweave.engine.models import Usage

WILDCARD = "*"
_TOKENS_PER_UNIT = 1_000_000


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Input/output price in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float

    def cost_of(self, usage: Usage) -> float | None:
        if usage.prompt_tokens is not None and usage.completion_tokens is not None:
            return (
                usage.prompt_tokens * self.input_per_1m
                + usage.completion_tokens * self.output_per_1m
            ) / _TOKENS_PER_UNIT
        if usage.total_tokens is not None:
            # Split unknown; price at the midpoint.
            average = (self.input_per_1m + self.output_per_1m) / 2
            return usage.total_tokens * average / _TOKENS_PER_UNIT
        return None


@dataclass(slots=True)
class PricingTable:
    """Prices keyed by ``(provider, model)``; either part may be ``*``.

    Built once from ``Settings.costs.pricing_raw``. Lookup prefers the exact
    pair, then the provider wildcard, then ``*:*``.
    """

    entries: Mapping[tuple[str, str], ModelPricing] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str | None) -> PricingTable:
        """Parse ``provider:model:input_per_1m:output_per_1m`` entries joined by ``,``.

        Malformed rows and negative prices are skipped.
        """

        entries: dict[tuple[str, str], ModelPricing] = {}
        for chunk in (raw or "").split(","):
            parts = [part.strip() for part in chunk.split(":")]
            if len(parts) != 4:
                continue
            provider, model, input_price, output_price = parts
            try:
                pricing = ModelPricing(float(input_price), float(output_price))
            except ValueError:
                continue
            if pricing.input_per_1m < 0 or pricing.output_per_1m < 0:
                continue
            entries[(provider.lower(), model)] = pricing
        return cls(entries)

    def lookup(self, provider: str, model: str) -> ModelPricing | None:
        provider = provider.strip().lower()
        for key in ((provider, model.strip()), (provider, WILDCARD), (WILDCARD, WILDCARD)):
            pricing = self.entries.get(key)
            if pricing is not None:
                return pricing
        return None

    def estimate(self, provider: str, model: str, usage: Usage) -> float | None:
        """Cost of ``usage`` in USD, or ``None`` when no price or no tokens are known."""

        pricing = self.lookup(provider, model)
        if pricing is None:
            return None
        return pricing.cost_of(usage)
