"""
Unit tests for pricing calculations.

Tests model-name normalization, cost accuracy and unknown-model handling.
"""

import logging
from dataclasses import FrozenInstanceError
from decimal import Decimal

import pytest

from ai_usage_ledger.core.pricing import (
    DEFAULT_PRICING_TABLE,
    ModelPricing,
    PricingModel,
    clean_model_name,
)
from ai_usage_ledger.core.token_counter import TokenUsage
from ai_usage_ledger.storage.models import SESSION_ONLY_MODEL, UsageEvent


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(input_tokens=100, output_tokens=50,
                           cache_creation_tokens=20, cache_read_tokens=5)
        assert usage.total_tokens == 175

    def test_zero_tokens(self):
        """Verify zero token handling."""
        assert TokenUsage().total_tokens == 0


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        pricing = DEFAULT_PRICING_TABLE.get_pricing("claude-4-sonnet")
        assert pricing.input_per_million == Decimal("3.00")
        assert pricing.output_per_million == Decimal("15.00")
        assert pricing.cache_write_per_million == Decimal("3.75")
        assert pricing.cache_read_per_million == Decimal("0.30")

    def test_unsupported_model_returns_none(self):
        assert DEFAULT_PRICING_TABLE.get_pricing("unknown-model") is None

    def test_table_is_immutable(self):
        with pytest.raises(FrozenInstanceError):
            DEFAULT_PRICING_TABLE.version = "changed"
        with pytest.raises(TypeError):
            DEFAULT_PRICING_TABLE.prices["new"] = None

    def test_extend_leaves_default_table_untouched(self):
        extended = DEFAULT_PRICING_TABLE.extend(
            version="2025-09",
            prices={"claude-5-opus": ModelPricing(
                Decimal("20"), Decimal("100"), Decimal("25"), Decimal("2")
            )},
            aliases={"opus-5": "claude-5-opus"},
        )

        assert extended.version == "2025-09"
        assert "claude-5-opus" in extended.prices
        assert extended.aliases["opus5"] == "claude-5-opus"
        assert "claude-5-opus" not in DEFAULT_PRICING_TABLE.prices

    def test_clean_model_name(self):
        assert clean_model_name("Claude-3.5_Sonnet @latest/x:y") == "claude35sonnetlatestxy"


class TestNormalization:
    """Test mapping of raw model names to canonical keys."""

    def setup_method(self):
        self.pricing = PricingModel()

    def test_exact_key(self):
        assert self.pricing.normalize("claude-4-opus") == "claude-4-opus"

    @pytest.mark.parametrize("raw,expected", [
        ("claude-sonnet-4-20250514", "claude-4-sonnet"),
        ("claude-opus-4-20250514", "claude-4-opus"),
        ("claude-3-5-sonnet-20241022", "claude-3-5-sonnet"),
        ("claude-3-5-haiku-20241022", "claude-3-5-haiku"),
        ("claude-3-7-sonnet-20250219", "claude-3-7-sonnet"),
        ("Claude 3.5 Sonnet", "claude-3-5-sonnet"),
        ("sonnet-4", "claude-4-sonnet"),
        ("claude-3-haiku-20240307", "claude-3-haiku"),
        ("gemini-2.5-pro", "gemini-2.5-pro"),
    ])
    def test_alias_lookup(self, raw, expected):
        assert self.pricing.normalize(raw) == expected

    def test_substring_alias_match(self):
        assert self.pricing.normalize("anthropic/claude-sonnet-4") == "claude-4-sonnet"
        assert self.pricing.normalize("claude-3-7-sonnet-latest") == "claude-3-7-sonnet"

    def test_reverse_substring_requires_unambiguous_match(self):
        assert self.pricing.normalize("gemini-25") == "gemini-2.5-pro"
        assert self.pricing.normalize("sonnet") == "sonnet"

    def test_embedded_date_is_stripped(self):
        """A date token splitting the name only matches once removed."""
        assert self.pricing.normalize("sonnet-20250514-4") == "claude-4-sonnet"

    def test_family_heuristic(self):
        assert self.pricing.normalize("opus-v4") == "claude-4-opus"
        assert self.pricing.normalize("haiku-v35") == "claude-3-5-haiku"

    def test_unmatched_name_returns_cleaned_string(self):
        assert self.pricing.normalize("GPT-4o") == "gpt4o"

    def test_normalization_is_memoized(self):
        first = self.pricing.normalize("claude-sonnet-4-20250514")
        assert self.pricing.normalize("claude-sonnet-4-20250514") is first


class TestCostCalculation:
    """Test cost calculation accuracy."""

    def setup_method(self):
        self.pricing = PricingModel()

    def test_input_and_output_cost(self):
        usage = TokenUsage(input_tokens=100, output_tokens=50)
        cost = self.pricing.price("claude-4-sonnet", usage)
        assert cost == pytest.approx(100 / 1e6 * 3.0 + 50 / 1e6 * 15.0)

    def test_all_four_rates(self):
        usage = TokenUsage(1_000_000, 1_000_000, 1_000_000, 1_000_000)
        cost = self.pricing.price("claude-4-opus", usage)
        assert cost == pytest.approx(15.0 + 75.0 + 18.75 + 1.5)

    def test_unknown_model_costs_exactly_zero(self):
        usage = TokenUsage(input_tokens=1000, output_tokens=1000)
        assert self.pricing.price("gpt4o", usage) == 0.0

    def test_price_is_deterministic(self):
        usage = TokenUsage(123, 456, 78, 9)
        assert self.pricing.price("claude-3-haiku", usage) == self.pricing.price("claude-3-haiku", usage)

    def test_breakdown_sums_to_price(self):
        usage = TokenUsage(1000, 2000, 3000, 4000)
        breakdown = self.pricing.breakdown("claude-3-5-sonnet", usage)
        assert breakdown.input_cost == pytest.approx(0.003)
        assert breakdown.cache_read_cost == pytest.approx(0.0012)
        assert breakdown.total == pytest.approx(self.pricing.price("claude-3-5-sonnet", usage))

    def test_cost_for_raw_name(self):
        usage = TokenUsage(input_tokens=1_000_000)
        assert self.pricing.cost_for("claude-opus-4-20250514", usage) == pytest.approx(15.0)

    def test_display_name(self):
        assert self.pricing.display_name("claude-3-5-sonnet") == "Claude 3.5 Sonnet"
        assert self.pricing.display_name("gpt4o") == "gpt4o"


class TestEventPricing:
    """Test pricing applied to usage events."""

    def _event(self, model: str, input_tokens: int = 100) -> UsageEvent:
        return UsageEvent(
            timestamp="2025-07-01T12:00:00Z",
            date_string="2025-07-01",
            model=model,
            input_tokens=input_tokens,
            session_id="s1",
            source_file="/logs/p/s1.jsonl",
        )

    def test_event_gets_canonical_model_and_cost(self):
        priced = PricingModel().price_event(self._event("claude-sonnet-4-20250514", 1_000_000))
        assert priced.model == "claude-4-sonnet"
        assert priced.cost == pytest.approx(3.0)

    def test_session_only_event_is_untouched(self):
        priced = PricingModel().price_event(self._event(SESSION_ONLY_MODEL, 0))
        assert priced.model == SESSION_ONLY_MODEL
        assert priced.cost == 0.0

    def test_unknown_models_are_counted_and_logged_once(self, caplog):
        pricing = PricingModel()
        with caplog.at_level(logging.WARNING, logger="ai_usage_ledger.core.pricing"):
            pricing.price_event(self._event("mystery-model"))
            pricing.price_event(self._event("mystery-model"))

        assert pricing.unknown_models["mysterymodel"] == 2
        warnings = [r for r in caplog.records if "mysterymodel" in r.getMessage()]
        assert len(warnings) == 1

    def test_unknown_model_without_tokens_is_not_flagged(self):
        pricing = PricingModel()
        pricing.price_event(self._event("mystery-model", 0))
        assert not pricing.unknown_models
