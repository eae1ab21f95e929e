"""
Record normalization for JSONL session logs.

Historical log producers used several field-name variants and nested shapes
for the same concept. Each concern is resolved from an explicit, ordered
list of candidate paths; the first present, non-empty value wins.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Sequence, Tuple, Union

from ai_usage_ledger.core.errors import FileAccessError, ParseError
from ai_usage_ledger.storage.models import SESSION_ONLY_MODEL, UNKNOWN_SESSION, UsageEvent

logger = logging.getLogger(__name__)

FieldPath = Tuple[str, ...]

# Model names that mark synthetic or meta lines rather than billable requests
PLACEHOLDER_MODELS = frozenset({"unknown", "<synthetic>"})

USAGE_FIELDS: Sequence[FieldPath] = (("usage",), ("message", "usage"))
MODEL_FIELDS: Sequence[FieldPath] = (("model",), ("message", "model"))
SESSION_ID_FIELDS: Sequence[FieldPath] = (("sessionId",), ("session_id",))
REQUEST_ID_FIELDS: Sequence[FieldPath] = (
    ("requestId",), ("request_id",), ("messageId",), ("message_id",),
)
MESSAGE_ID_FIELDS: Sequence[FieldPath] = (
    ("messageId",), ("message_id",), ("message", "id"),
)
TIMESTAMP_FIELDS: Sequence[FieldPath] = (("timestamp",), ("date",))
COST_FIELDS: Sequence[FieldPath] = (("cost",), ("costUSD",))
MESSAGE_TYPE_FIELDS: Sequence[FieldPath] = (("type",), ("message_type",))

INPUT_TOKEN_KEYS = ("input_tokens",)
OUTPUT_TOKEN_KEYS = ("output_tokens",)
CACHE_CREATION_KEYS = ("cache_creation_input_tokens", "cache_creation_tokens")
CACHE_READ_KEYS = ("cache_read_input_tokens", "cache_read_tokens")

# Per-field ceiling; sums over the store must stay within SQLite's 64-bit INTEGER
MAX_TOKEN_COUNT = 10 ** 12

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def _lookup(data: Mapping[str, Any], path: FieldPath) -> Any:
    current: Any = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def resolve_field(data: Mapping[str, Any], candidates: Sequence[FieldPath]) -> Any:
    """Return the first candidate value that is present and not empty."""
    for path in candidates:
        value = _lookup(data, path)
        if value is not None and value != "":
            return value
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _token_count(usage: Optional[Mapping[str, Any]], keys: Sequence[str]) -> int:
    if not usage:
        return 0
    for key in keys:
        value = usage.get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ParseError(f"{key} must be a number, got {value!r}")
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        elif isinstance(value, str) and value.strip().isdigit():
            value = int(value)
        if not isinstance(value, int):
            raise ParseError(f"{key} must be an integer, got {value!r}")
        if value < 0:
            raise ParseError(f"{key} cannot be negative: {value}")
        if value > MAX_TOKEN_COUNT:
            raise ParseError(f"{key} is out of range: {value}")
        return value
    return 0


def _cost_value(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        cost = float(value)
    except (TypeError, ValueError):
        return 0.0
    return cost if cost > 0 else 0.0


@dataclass(frozen=True)
class RawRecord:
    """Permissively decoded view of one log line.

    Every field is optional; absence is represented as None or zero so the
    validity rules can be applied in one place.
    """
    message_type: Optional[str] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    request_id: Optional[str] = None
    message_id: Optional[str] = None
    timestamp: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    raw_cost: float = 0.0

    @classmethod
    def decode(cls, data: Mapping[str, Any]) -> "RawRecord":
        """Build a RawRecord from a decoded JSON object.

        Raises:
            ParseError: If a token counter holds a non-integer, negative or oversized value
        """
        usage = resolve_field(data, USAGE_FIELDS)
        if usage is not None and not isinstance(usage, Mapping):
            raise ParseError("usage must be an object")
        return cls(
            message_type=_optional_str(resolve_field(data, MESSAGE_TYPE_FIELDS)),
            session_id=_optional_str(resolve_field(data, SESSION_ID_FIELDS)),
            model=_optional_str(resolve_field(data, MODEL_FIELDS)),
            request_id=_optional_str(resolve_field(data, REQUEST_ID_FIELDS)),
            message_id=_optional_str(resolve_field(data, MESSAGE_ID_FIELDS)),
            timestamp=_optional_str(resolve_field(data, TIMESTAMP_FIELDS)),
            input_tokens=_token_count(usage, INPUT_TOKEN_KEYS),
            output_tokens=_token_count(usage, OUTPUT_TOKEN_KEYS),
            cache_creation_tokens=_token_count(usage, CACHE_CREATION_KEYS),
            cache_read_tokens=_token_count(usage, CACHE_READ_KEYS),
            raw_cost=_cost_value(resolve_field(data, COST_FIELDS)),
        )

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens + self.output_tokens
            + self.cache_creation_tokens + self.cache_read_tokens
        )

    @property
    def has_valid_session(self) -> bool:
        return bool(self.session_id) and self.session_id != UNKNOWN_SESSION

    @property
    def has_usage(self) -> bool:
        return self.total_tokens > 0 or self.raw_cost > 0


class NormalizationOutcome(Enum):
    ACCEPTED = "accepted"
    FILTERED = "filtered"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class NormalizationResult:
    outcome: NormalizationOutcome
    event: Optional[UsageEvent] = None
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome is NormalizationOutcome.ACCEPTED


@dataclass(frozen=True)
class RecordContext:
    """Per-file context attached to every event read from that file."""
    project_path: str
    project_name: str
    source_file: str
    line_number: int = 0

    def at_line(self, line_number: int) -> "RecordContext":
        return RecordContext(self.project_path, self.project_name, self.source_file, line_number)


def _filtered(reason: str) -> NormalizationResult:
    return NormalizationResult(NormalizationOutcome.FILTERED, reason=reason)


def _malformed(reason: str) -> NormalizationResult:
    return NormalizationResult(NormalizationOutcome.MALFORMED, reason=reason)


def _utc_now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_record(
    raw: Union[str, bytes, Mapping[str, Any]],
    context: RecordContext
) -> NormalizationResult:
    """Normalize one raw log line into a UsageEvent.

    The returned event carries the raw model name and zero cost; pricing
    fills in the canonical model key and the authoritative cost.

    Args:
        raw: One JSON line, or an already decoded JSON object
        context: Project and source file the line was read from

    Returns:
        NormalizationResult tagged accepted, filtered or malformed
    """
    if isinstance(raw, Mapping):
        data = raw
    else:
        if not raw.strip():
            return _filtered("blank line")
        try:
            data = json.loads(raw)
        except ValueError as e:
            return _malformed(f"invalid JSON: {e}")
    if not isinstance(data, Mapping):
        return _malformed("line is not a JSON object")

    try:
        record = RawRecord.decode(data)
    except ParseError as e:
        return _malformed(str(e))

    # Session-bearing lines are kept even without usage so that session
    # counts reflect every turn, not only billed ones.
    if not record.has_valid_session and not record.has_usage:
        return _filtered("no session, tokens or cost")

    model = record.model
    if model is not None and model.lower() in PLACEHOLDER_MODELS:
        return _filtered(f"placeholder model {model!r}")
    if model is None:
        if record.has_usage:
            return _filtered("usage without a model")
        model = SESSION_ONLY_MODEL

    timestamp = record.timestamp or _utc_now_iso()
    event = UsageEvent(
        timestamp=timestamp,
        date_string=derive_date_string(timestamp),
        model=model,
        input_tokens=record.input_tokens,
        output_tokens=record.output_tokens,
        cache_creation_tokens=record.cache_creation_tokens,
        cache_read_tokens=record.cache_read_tokens,
        cost=0.0,
        session_id=record.session_id or UNKNOWN_SESSION,
        project_path=context.project_path,
        project_name=context.project_name,
        request_id=record.request_id,
        message_id=record.message_id,
        message_type=record.message_type or "",
        source_file=context.source_file,
        line_number=context.line_number,
    )
    return NormalizationResult(NormalizationOutcome.ACCEPTED, event=event)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 style timestamp into an aware datetime.

    Naive timestamps are treated as UTC, matching SQLite's date functions.
    Returns None when the value cannot be parsed.
    """
    if not value:
        return None
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def derive_date_string(timestamp: str) -> str:
    """Local calendar date (YYYY-MM-DD) of a timestamp, used for daily grouping."""
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return timestamp[:10]
    return parsed.astimezone().strftime("%Y-%m-%d")


def extract_project_path(
    file_path: Union[str, Path],
    root: Union[str, Path],
    anchor: str = "projects"
) -> Tuple[str, str]:
    """Derive (project_path, project_name) from a source file location.

    The project identifier is the directory segment right below the root
    (``root/<project>/<session>.jsonl``), or else the segment following the
    last ``anchor`` directory in the path. Identifiers that encode an
    absolute path (``-Users-me-app``) get their last component as name.
    """
    path = Path(file_path)
    identifier: Optional[str] = None
    try:
        relative = path.relative_to(root)
        if len(relative.parts) >= 2:
            identifier = relative.parts[0]
    except ValueError:
        pass

    if identifier is None:
        parts = path.parts
        if anchor in parts[:-1]:
            index = len(parts) - 1 - parts[::-1].index(anchor)
            if index + 1 < len(parts) - 1:
                identifier = parts[index + 1]

    if identifier is None:
        identifier = path.parent.name or UNKNOWN_SESSION

    name = identifier
    if identifier.startswith("-") and identifier.strip("-"):
        name = identifier.strip("-").split("-")[-1]
    return identifier, name


def iter_file_lines(path: Union[str, Path]) -> Iterator[Tuple[int, bytes]]:
    """Stream non-blank lines of a file with 1-based line numbers.

    Lines are yielded as bytes so that an undecodable line fails on its
    own instead of aborting the whole file.

    Raises:
        FileAccessError: If the file cannot be opened or read
    """
    try:
        with open(path, "rb") as f:
            for line_number, line in enumerate(f, 1):
                if line.strip():
                    yield line_number, line
    except OSError as e:
        raise FileAccessError(f"Cannot read {path}: {e}", str(path)) from e
