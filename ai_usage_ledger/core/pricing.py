"""
Pricing calculations and rate management.

Maps free-text model identifiers onto canonical pricing keys and computes
the cost of token usage. The pricing table is immutable and versioned; new
model releases are additive table entries, not logic changes.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from ai_usage_ledger.storage.models import SESSION_ONLY_MODEL, UsageEvent

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = Decimal("1000000")

_SEPARATORS = re.compile(r"[-_. /:@]")
_DATE_TOKEN = re.compile(r"(?<!\d)\d{8}(?!\d)")

# Reverse substring matches (cleaned input inside an alias) below this
# length are too ambiguous to trust.
MIN_REVERSE_MATCH_LENGTH = 6

MODEL_FAMILIES = ("opus", "sonnet", "haiku")


def clean_model_name(name: str) -> str:
    """Lowercase and strip separator characters."""
    return _SEPARATORS.sub("", name.lower())


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model."""
    input_per_million: Decimal
    output_per_million: Decimal
    cache_write_per_million: Decimal
    cache_read_per_million: Decimal
    display_name: str = ""


@dataclass(frozen=True)
class CostBreakdown:
    input_cost: float
    output_cost: float
    cache_write_cost: float
    cache_read_cost: float

    @property
    def total(self) -> float:
        return self.input_cost + self.output_cost + self.cache_write_cost + self.cache_read_cost


@dataclass(frozen=True)
class PricingTable:
    """Versioned pricing table with its alias map.

    Alias keys are stored cleaned (see ``clean_model_name``); every canonical
    key is also reachable through its own cleaned form.
    """
    version: str
    prices: Mapping[str, ModelPricing]
    aliases: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        aliases = {clean_model_name(key): key for key in self.prices}
        for alias, key in self.aliases.items():
            aliases[clean_model_name(alias)] = key
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))
        object.__setattr__(self, "aliases", MappingProxyType(aliases))

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a canonical model key, or None when unpriced."""
        return self.prices.get(model)

    def extend(
        self,
        version: Optional[str] = None,
        prices: Optional[Mapping[str, ModelPricing]] = None,
        aliases: Optional[Mapping[str, str]] = None
    ) -> "PricingTable":
        """Return a new table with entries added or replaced."""
        merged_prices = dict(self.prices)
        merged_prices.update(prices or {})
        merged_aliases = dict(self.aliases)
        merged_aliases.update(aliases or {})
        return PricingTable(version or self.version, merged_prices, merged_aliases)


def _rates(input_rate: str, output_rate: str, write_rate: str, read_rate: str, name: str) -> ModelPricing:
    return ModelPricing(
        input_per_million=Decimal(input_rate),
        output_per_million=Decimal(output_rate),
        cache_write_per_million=Decimal(write_rate),
        cache_read_per_million=Decimal(read_rate),
        display_name=name,
    )


DEFAULT_PRICING_TABLE = PricingTable(
    version="2025-07",
    prices={
        "claude-4-opus": _rates("15.00", "75.00", "18.75", "1.50", "Claude 4 Opus"),
        "claude-4-sonnet": _rates("3.00", "15.00", "3.75", "0.30", "Claude 4 Sonnet"),
        "claude-4-haiku": _rates("1.00", "5.00", "1.25", "0.10", "Claude 4 Haiku"),
        "claude-3-7-sonnet": _rates("3.00", "15.00", "3.75", "0.30", "Claude 3.7 Sonnet"),
        "claude-3-5-sonnet": _rates("3.00", "15.00", "3.75", "0.30", "Claude 3.5 Sonnet"),
        "claude-3-5-haiku": _rates("0.80", "4.00", "1.00", "0.08", "Claude 3.5 Haiku"),
        "claude-3-opus": _rates("15.00", "75.00", "18.75", "1.50", "Claude 3 Opus"),
        "claude-3-sonnet": _rates("3.00", "15.00", "3.75", "0.30", "Claude 3 Sonnet"),
        "claude-3-haiku": _rates("0.25", "1.25", "0.30", "0.03", "Claude 3 Haiku"),
        "gemini-2.5-pro": _rates("1.25", "10.00", "0.31", "0.25", "Gemini 2.5 Pro"),
    },
    aliases={
        "claude-opus-4": "claude-4-opus",
        "claude-opus-4-20250514": "claude-4-opus",
        "claude-opus-4-1": "claude-4-opus",
        "claude-opus-4-1-20250805": "claude-4-opus",
        "opus-4": "claude-4-opus",
        "claude-sonnet-4": "claude-4-sonnet",
        "claude-sonnet-4-20250514": "claude-4-sonnet",
        "claude-sonnet-4-5": "claude-4-sonnet",
        "sonnet-4": "claude-4-sonnet",
        "claude-haiku-4": "claude-4-haiku",
        "claude-haiku-4-5": "claude-4-haiku",
        "haiku-4": "claude-4-haiku",
        "claude-3.7-sonnet": "claude-3-7-sonnet",
        "claude-3-7-sonnet-20250219": "claude-3-7-sonnet",
        "claude-sonnet-3-7": "claude-3-7-sonnet",
        "sonnet-3.7": "claude-3-7-sonnet",
        "claude-3.5-sonnet": "claude-3-5-sonnet",
        "claude-3-5-sonnet-20240620": "claude-3-5-sonnet",
        "claude-3-5-sonnet-20241022": "claude-3-5-sonnet",
        "claude-3-sonnet-3.5": "claude-3-5-sonnet",
        "claude-sonnet-3-5": "claude-3-5-sonnet",
        "sonnet-3.5": "claude-3-5-sonnet",
        "claude-3.5-haiku": "claude-3-5-haiku",
        "claude-3-5-haiku-20241022": "claude-3-5-haiku",
        "claude-haiku-3-5": "claude-3-5-haiku",
        "haiku-3.5": "claude-3-5-haiku",
        "claude-3-opus-20240229": "claude-3-opus",
        "claude-opus-3": "claude-3-opus",
        "opus-3": "claude-3-opus",
        "claude-3-sonnet-20240229": "claude-3-sonnet",
        "sonnet-3": "claude-3-sonnet",
        "claude-3-haiku-20240307": "claude-3-haiku",
        "claude-haiku-3": "claude-3-haiku",
        "haiku-3": "claude-3-haiku",
        "gemini-2-5-pro": "gemini-2.5-pro",
    },
)


class PricingModel:
    """Normalizes model names and prices token usage against a PricingTable.

    The table is injected explicitly; normalization results are memoized per
    instance since log files repeat the same handful of model names.
    """

    def __init__(self, table: PricingTable = DEFAULT_PRICING_TABLE):
        self.table = table
        self.unknown_models: Counter = Counter()
        self._cache: Dict[str, str] = {}
        self._forward_aliases: List[str] = sorted(table.aliases, key=lambda a: (-len(a), a))

    @property
    def version(self) -> str:
        return self.table.version

    def normalize(self, raw_model: str) -> str:
        """Map a raw model identifier to its canonical pricing key.

        Args:
            raw_model: Model name as found in the log line

        Returns:
            Canonical key, or the cleaned name when nothing matches
        """
        cached = self._cache.get(raw_model)
        if cached is None:
            cached = self._normalize(raw_model)
            self._cache[raw_model] = cached
        return cached

    def _normalize(self, raw_model: str) -> str:
        if raw_model in self.table.prices:
            return raw_model

        lowered = raw_model.strip().lower()
        key = self._match_alias(clean_model_name(lowered))
        if key:
            return key

        undated = _DATE_TOKEN.sub("", lowered)
        cleaned = clean_model_name(undated)
        if undated != lowered:
            if undated.strip("-_. ") in self.table.prices:
                return undated.strip("-_. ")
            key = self._match_alias(cleaned)
            if key:
                return key

        key = self._match_family(cleaned)
        if key:
            return key
        return cleaned or lowered

    def _match_alias(self, cleaned: str) -> Optional[str]:
        if not cleaned:
            return None
        key = self.table.aliases.get(cleaned)
        if key:
            return key

        for alias in self._forward_aliases:
            if alias in cleaned:
                return self.table.aliases[alias]

        if len(cleaned) >= MIN_REVERSE_MATCH_LENGTH:
            candidates = {key for alias, key in self.table.aliases.items() if cleaned in alias}
            if len(candidates) == 1:
                return candidates.pop()
        return None

    def _match_family(self, cleaned: str) -> Optional[str]:
        for family in MODEL_FAMILIES:
            if family not in cleaned:
                continue
            if "37" in cleaned:
                key = f"claude-3-7-{family}"
            elif "35" in cleaned:
                key = f"claude-3-5-{family}"
            elif "4" in cleaned:
                key = f"claude-4-{family}"
            elif "3" in cleaned:
                key = f"claude-3-{family}"
            else:
                return None
            return key if key in self.table.prices else None
        return None

    def breakdown(self, model_key: str, usage: TokenUsage) -> CostBreakdown:
        pricing = self.table.get_pricing(model_key)
        if pricing is None:
            return CostBreakdown(0.0, 0.0, 0.0, 0.0)

        def cost(tokens: int, rate: Decimal) -> float:
            return float(Decimal(tokens) / TOKENS_PER_MILLION * rate)

        return CostBreakdown(
            input_cost=cost(usage.input_tokens, pricing.input_per_million),
            output_cost=cost(usage.output_tokens, pricing.output_per_million),
            cache_write_cost=cost(usage.cache_creation_tokens, pricing.cache_write_per_million),
            cache_read_cost=cost(usage.cache_read_tokens, pricing.cache_read_per_million),
        )

    def price(self, model_key: str, usage: TokenUsage) -> float:
        """Cost of token usage for a canonical key; exactly 0.0 when unpriced."""
        pricing = self.table.get_pricing(model_key)
        if pricing is None:
            return 0.0
        total = (
            Decimal(usage.input_tokens) * pricing.input_per_million
            + Decimal(usage.output_tokens) * pricing.output_per_million
            + Decimal(usage.cache_creation_tokens) * pricing.cache_write_per_million
            + Decimal(usage.cache_read_tokens) * pricing.cache_read_per_million
        )
        return float(total / TOKENS_PER_MILLION)

    def cost_for(self, raw_model: str, usage: TokenUsage) -> float:
        return self.price(self.normalize(raw_model), usage)

    def display_name(self, model_key: str) -> str:
        pricing = self.table.get_pricing(model_key)
        if pricing is not None and pricing.display_name:
            return pricing.display_name
        return model_key

    def price_event(self, event: UsageEvent) -> UsageEvent:
        """Return the event with its canonical model key and recomputed cost.

        Unpriced models with token usage are counted in ``unknown_models``
        and reported once per key.
        """
        if event.model == SESSION_ONLY_MODEL:
            return event.with_pricing(SESSION_ONLY_MODEL, 0.0)

        key = self.normalize(event.model)
        usage = TokenUsage.from_event(event)
        if key not in self.table.prices and usage.total_tokens > 0:
            if key not in self.unknown_models:
                logger.warning(
                    "No pricing for model %r (from %r) in pricing table %s; cost recorded as 0",
                    key, event.model, self.table.version
                )
            self.unknown_models[key] += 1
        return event.with_pricing(key, self.price(key, usage))
