"""
Unit tests for duplicate detection.

Tests identity keys and the first-seen-wins policy.
"""

from typing import Optional

from ai_usage_ledger.core.dedup import Deduplicator, has_identity, identity_key
from ai_usage_ledger.storage.models import UsageEvent


def _event(
    message_id: Optional[str],
    request_id: Optional[str],
    line_number: int = 1,
    input_tokens: int = 10,
    source_file: str = "/logs/p/s1.jsonl"
) -> UsageEvent:
    return UsageEvent(
        timestamp="2025-07-01T12:00:00Z",
        date_string="2025-07-01",
        model="claude-4-sonnet",
        input_tokens=input_tokens,
        session_id="s1",
        message_id=message_id,
        request_id=request_id,
        source_file=source_file,
        line_number=line_number,
    )


class TestIdentityKey:
    """Test identity key construction."""

    def test_both_identifiers(self):
        assert identity_key(_event("msg_1", "req_1")) == "msg_1:req_1"
        assert has_identity(_event("msg_1", "req_1"))

    def test_missing_identifier_uses_source_line(self):
        assert identity_key(_event("msg_1", None, line_number=7)) == "/logs/p/s1.jsonl#7"
        assert identity_key(_event(None, "req_1", line_number=8)) == "/logs/p/s1.jsonl#8"
        assert not has_identity(_event(None, "req_1"))

    def test_empty_identifier_counts_as_missing(self):
        assert identity_key(_event("", "req_1", line_number=2)) == "/logs/p/s1.jsonl#2"

    def test_fallback_key_is_deterministic(self):
        assert identity_key(_event(None, None, 5)) == identity_key(_event(None, None, 5))


class TestDeduplicator:
    """Test first-seen-wins filtering."""

    def test_events_sharing_both_ids_collapse_to_first(self):
        first = _event("msg_1", "req_1", line_number=1, input_tokens=10)
        second = _event("msg_1", "req_1", line_number=2, input_tokens=99)

        kept = list(Deduplicator().deduplicate([first, second]))

        assert kept == [first]

    def test_events_missing_an_id_all_survive(self):
        """Identical attributes alone never merge events."""
        events = [
            _event(None, None, line_number=1),
            _event(None, None, line_number=2),
            _event("msg_1", None, line_number=3),
            _event("msg_1", None, line_number=4),
        ]

        kept = list(Deduplicator().deduplicate(events))

        assert kept == events

    def test_same_message_different_request_both_kept(self):
        events = [_event("msg_1", "req_1"), _event("msg_1", "req_2", line_number=2)]
        assert len(list(Deduplicator().deduplicate(events))) == 2

    def test_counters_and_reset(self):
        dedup = Deduplicator()
        assert dedup.accept(_event("m", "r"))
        assert not dedup.accept(_event("m", "r", line_number=2))
        assert (dedup.kept, dedup.discarded) == (1, 1)

        dedup.reset()

        assert dedup.accept(_event("m", "r"))
        assert (dedup.kept, dedup.discarded) == (1, 0)
