"""
Token counting and usage tracking.

Groups the four token counters that every usage event carries.
"""

from dataclasses import dataclass

from ai_usage_ledger.storage.models import UsageEvent


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the log producer.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @classmethod
    def from_event(cls, event: UsageEvent) -> "TokenUsage":
        return cls(
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens,
            cache_creation_tokens=event.cache_creation_tokens,
            cache_read_tokens=event.cache_read_tokens,
        )

    @property
    def total_tokens(self) -> int:
        """Total tokens used across all four categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )
