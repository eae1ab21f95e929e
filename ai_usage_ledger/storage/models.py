"""
Data models for storage layer.

Defines the persisted usage event and source file bookkeeping.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from ai_usage_ledger.core.errors import DataIntegrityError

UNKNOWN_SESSION = "unknown"
SESSION_ONLY_MODEL = "session-only"


@dataclass(frozen=True)
class UsageEvent:
    """Canonical, priced and deduplicated usage record.

    Token counts and cost are validated on construction; a negative value
    can only come from corrupted data and is never silently accepted.
    """
    timestamp: str
    date_string: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0
    session_id: str = UNKNOWN_SESSION
    project_path: str = ""
    project_name: str = ""
    request_id: Optional[str] = None
    message_id: Optional[str] = None
    message_type: str = ""
    source_file: str = ""
    line_number: int = 0

    def __post_init__(self):
        """Validate token counts and cost are non-negative."""
        if not self.model:
            raise DataIntegrityError("model cannot be empty")
        for name in ("input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise DataIntegrityError(f"{name} cannot be negative")
        if self.cost < 0:
            raise DataIntegrityError("cost cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Sum of all four token counters."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def has_valid_session(self) -> bool:
        return bool(self.session_id) and self.session_id != UNKNOWN_SESSION

    def with_pricing(self, model: str, cost: float) -> "UsageEvent":
        """Return a copy carrying the canonical model key and recomputed cost."""
        return replace(self, model=model, cost=cost)


class ProcessingStatus(Enum):
    """Lifecycle of a source file within the ingestion pipeline."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class FileRecord:
    """Bookkeeping row for one observed source file."""
    file_path: str
    file_name: str
    file_size: int
    last_modified: str
    content_hash: str
    entry_count: int = 0
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    error_message: Optional[str] = None
    last_processed: Optional[str] = None

