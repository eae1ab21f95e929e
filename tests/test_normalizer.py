"""
Unit tests for record normalization.

Tests field resolution across log shapes, validity filtering and the
project/timestamp helpers.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from ai_usage_ledger.core.errors import FileAccessError
from ai_usage_ledger.core.normalizer import (
    NormalizationOutcome,
    RecordContext,
    derive_date_string,
    extract_project_path,
    iter_file_lines,
    normalize_record,
    parse_timestamp,
)
from ai_usage_ledger.storage.models import SESSION_ONLY_MODEL, UNKNOWN_SESSION

CONTEXT = RecordContext("my-app", "my-app", "/logs/my-app/s1.jsonl", 3)


def _line(data: dict) -> str:
    return json.dumps(data)


class TestFieldResolution:
    """Test resolution of historical field-name variants."""

    def test_nested_message_shape(self):
        """Usage and model are read from message.* when not top-level."""
        result = normalize_record(_line({
            "type": "assistant",
            "sessionId": "s1",
            "requestId": "req_1",
            "timestamp": "2025-07-01T12:00:00.000Z",
            "message": {
                "id": "msg_1",
                "model": "claude-sonnet-4-20250514",
                "usage": {
                    "input_tokens": 100,
                    "output_tokens": 50,
                    "cache_creation_input_tokens": 10,
                    "cache_read_input_tokens": 5,
                },
            },
        }), CONTEXT)

        assert result.outcome is NormalizationOutcome.ACCEPTED
        event = result.event
        assert event.model == "claude-sonnet-4-20250514"
        assert event.input_tokens == 100
        assert event.output_tokens == 50
        assert event.cache_creation_tokens == 10
        assert event.cache_read_tokens == 5
        assert event.total_tokens == 165
        assert event.request_id == "req_1"
        assert event.message_id == "msg_1"
        assert event.message_type == "assistant"
        assert event.cost == 0.0

    def test_top_level_shape_and_legacy_names(self):
        """Top-level usage, underscore ids and legacy cache field names."""
        result = normalize_record({
            "session_id": "s2",
            "model": "claude-3-opus",
            "request_id": "req_2",
            "message_id": "msg_2",
            "date": "2025-06-30T08:00:00Z",
            "usage": {
                "input_tokens": 1,
                "output_tokens": 2,
                "cache_creation_tokens": 3,
                "cache_read_tokens": 4,
            },
        }, CONTEXT)

        event = result.event
        assert result.accepted
        assert event.session_id == "s2"
        assert event.request_id == "req_2"
        assert event.message_id == "msg_2"
        assert event.timestamp == "2025-06-30T08:00:00Z"
        assert (event.cache_creation_tokens, event.cache_read_tokens) == (3, 4)

    def test_top_level_usage_wins_over_nested(self):
        result = normalize_record({
            "sessionId": "s1",
            "model": "claude-4-opus",
            "usage": {"input_tokens": 7},
            "message": {"usage": {"input_tokens": 99}},
        }, CONTEXT)
        assert result.event.input_tokens == 7

    def test_request_id_falls_back_to_message_id_field(self):
        result = normalize_record({
            "sessionId": "s1",
            "messageId": "msg_9",
            "model": "claude-4-sonnet",
            "usage": {"input_tokens": 1},
        }, CONTEXT)
        assert result.event.request_id == "msg_9"
        assert result.event.message_id == "msg_9"

    def test_missing_timestamp_uses_current_time(self):
        before = datetime.now(timezone.utc) - timedelta(seconds=1)
        result = normalize_record({"sessionId": "s1", "type": "user"}, CONTEXT)
        stamped = parse_timestamp(result.event.timestamp)
        assert stamped is not None
        assert stamped >= before

    def test_raw_cost_is_not_trusted(self):
        """A cost field in the log never becomes the event's cost."""
        result = normalize_record({
            "sessionId": "s1",
            "model": "claude-4-sonnet",
            "costUSD": 12.5,
            "usage": {"input_tokens": 10},
        }, CONTEXT)
        assert result.event.cost == 0.0

    def test_context_is_attached(self):
        result = normalize_record({"sessionId": "s1"}, CONTEXT)
        event = result.event
        assert event.project_path == "my-app"
        assert event.project_name == "my-app"
        assert event.source_file == "/logs/my-app/s1.jsonl"
        assert event.line_number == 3


class TestValidityFilter:
    """Test which records are kept, filtered or malformed."""

    def test_session_bearing_line_without_usage_is_kept(self):
        """A plain user turn is kept so its session is counted."""
        result = normalize_record('{"sessionId":"abc","type":"user"}', CONTEXT)
        assert result.outcome is NormalizationOutcome.ACCEPTED
        assert result.event.model == SESSION_ONLY_MODEL
        assert result.event.total_tokens == 0

    def test_line_without_session_tokens_or_cost_is_dropped(self):
        result = normalize_record('{"type":"summary","summary":"Refactor"}', CONTEXT)
        assert result.outcome is NormalizationOutcome.FILTERED

    def test_unknown_session_does_not_count_as_valid(self):
        result = normalize_record('{"sessionId":"unknown","type":"user"}', CONTEXT)
        assert result.outcome is NormalizationOutcome.FILTERED

    def test_usage_without_session_is_kept(self):
        result = normalize_record({
            "model": "claude-4-haiku",
            "usage": {"output_tokens": 5},
        }, CONTEXT)
        assert result.accepted
        assert result.event.session_id == UNKNOWN_SESSION
        assert not result.event.has_valid_session

    @pytest.mark.parametrize("model", ["<synthetic>", "unknown", "Unknown"])
    def test_placeholder_models_are_rejected(self, model):
        result = normalize_record({
            "sessionId": "s1",
            "message": {"model": model, "usage": {"input_tokens": 10}},
        }, CONTEXT)
        assert result.outcome is NormalizationOutcome.FILTERED

    def test_usage_without_model_is_rejected(self):
        result = normalize_record({
            "sessionId": "s1",
            "usage": {"input_tokens": 10},
        }, CONTEXT)
        assert result.outcome is NormalizationOutcome.FILTERED

    def test_negative_tokens_are_malformed(self):
        result = normalize_record({
            "sessionId": "s1",
            "model": "claude-4-sonnet",
            "usage": {"input_tokens": -5},
        }, CONTEXT)
        assert result.outcome is NormalizationOutcome.MALFORMED
        assert "negative" in result.reason

    @pytest.mark.parametrize("value", [10 ** 20, 1e20, "100000000000000000000"])
    def test_oversized_tokens_are_malformed(self, value):
        result = normalize_record(_line({
            "sessionId": "s1",
            "message": {"model": "claude-4-sonnet", "usage": {"input_tokens": value}},
        }), CONTEXT)
        assert result.outcome is NormalizationOutcome.MALFORMED
        assert "out of range" in result.reason

    def test_non_numeric_tokens_are_malformed(self):
        result = normalize_record({
            "sessionId": "s1",
            "model": "claude-4-sonnet",
            "usage": {"output_tokens": "lots"},
        }, CONTEXT)
        assert result.outcome is NormalizationOutcome.MALFORMED

    def test_invalid_json_is_malformed(self):
        result = normalize_record('{"sessionId": "s1", ', CONTEXT)
        assert result.outcome is NormalizationOutcome.MALFORMED

    def test_non_object_json_is_malformed(self):
        result = normalize_record('[1, 2, 3]', CONTEXT)
        assert result.outcome is NormalizationOutcome.MALFORMED

    def test_undecodable_bytes_are_malformed(self):
        result = normalize_record(b'{"sessionId": "\xff\xfe"}', CONTEXT)
        assert result.outcome is NormalizationOutcome.MALFORMED


class TestTimestamps:
    """Test timestamp parsing and local date derivation."""

    def test_zulu_suffix(self):
        parsed = parse_timestamp("2025-07-01T12:00:00.000Z")
        assert parsed == datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)

    def test_naive_timestamp_is_utc(self):
        parsed = parse_timestamp("2025-07-01T12:00:00")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset() == timedelta(0)

    def test_offset_is_preserved(self):
        parsed = parse_timestamp("2025-07-01T14:00:00+02:00")
        assert parsed == datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)

    def test_short_fraction(self):
        assert parse_timestamp("2025-07-01T12:00:00.5Z") is not None

    def test_garbage_returns_none(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None

    def test_date_string_is_local_date(self):
        stamp = "2025-07-01T12:00:00Z"
        expected = parse_timestamp(stamp).astimezone().strftime("%Y-%m-%d")
        assert derive_date_string(stamp) == expected

    def test_unparseable_date_string_uses_prefix(self):
        assert derive_date_string("2025-07-01 garbage") == "2025-07-01"


class TestProjectPath:
    """Test project identifier extraction from file locations."""

    def test_first_segment_below_root(self):
        path, name = extract_project_path("/data/projects/my-app/s1.jsonl", "/data/projects")
        assert (path, name) == ("my-app", "my-app")

    def test_nested_session_directories(self):
        path, _ = extract_project_path("/data/projects/my-app/sub/s1.jsonl", "/data/projects")
        assert path == "my-app"

    def test_anchor_outside_root(self):
        path, _ = extract_project_path("/home/me/.claude/projects/tool/s1.jsonl", "/elsewhere")
        assert path == "tool"

    def test_encoded_absolute_path_gets_short_name(self):
        path, name = extract_project_path(
            "/data/projects/-Users-me-work-app/s1.jsonl", "/data/projects"
        )
        assert path == "-Users-me-work-app"
        assert name == "app"

    def test_file_directly_in_root_uses_parent_name(self):
        path, _ = extract_project_path("/data/logs/s1.jsonl", "/data/logs")
        assert path == "logs"


class TestLineStreaming:
    """Test the streaming line reader."""

    def test_blank_lines_are_skipped_and_numbers_kept(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, "s1.jsonl")
            with open(path, "w", encoding="utf-8") as f:
                f.write('{"a": 1}\n\n   \n{"b": 2}\n')

            lines = list(iter_file_lines(path))

            assert [number for number, _ in lines] == [1, 4]
            assert json.loads(lines[1][1]) == {"b": 2}

    def test_missing_file_raises_file_access_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            with pytest.raises(FileAccessError):
                list(iter_file_lines(os.path.join(temp_dir, "missing.jsonl")))
