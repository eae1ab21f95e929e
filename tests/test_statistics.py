"""
Unit tests for statistics types and in-memory aggregation.
"""

from datetime import datetime, timezone

import pytest

from ai_usage_ledger.core.statistics import (
    DataSource,
    ProjectUsage,
    SortOrder,
    StatisticsAccumulator,
    TimeRange,
    UsageStatistics,
    event_in_scope,
    sort_projects,
)
from ai_usage_ledger.storage.models import SESSION_ONLY_MODEL, UNKNOWN_SESSION, UsageEvent

NOW = datetime(2025, 7, 10, 12, 0, tzinfo=timezone.utc)


def _event(timestamp="2025-07-09T12:00:00Z", model="claude-4-sonnet", cost=1.0,
           session_id="s1", project="app-a"):
    return UsageEvent(
        timestamp=timestamp,
        date_string=timestamp[:10],
        model=model,
        input_tokens=10,
        output_tokens=5,
        cost=cost,
        session_id=session_id,
        project_path=project,
        project_name=project,
    )


class TestTimeRange:
    def test_all_has_no_cutoff(self):
        assert TimeRange.ALL.cutoff(NOW) is None
        assert TimeRange.ALL.cutoff_iso(NOW) is None

    def test_rolling_cutoffs(self):
        assert TimeRange.LAST_7_DAYS.cutoff(NOW) == datetime(2025, 7, 3, 12, 0, tzinfo=timezone.utc)
        assert TimeRange.LAST_30_DAYS.cutoff_iso(NOW) == "2025-06-10T12:00:00+00:00"

    def test_naive_now_is_treated_as_utc(self):
        naive = datetime(2025, 7, 10, 12, 0)
        assert TimeRange.LAST_7_DAYS.cutoff(naive) == TimeRange.LAST_7_DAYS.cutoff(NOW)


class TestScope:
    def test_project_filter_is_substring(self):
        event = _event(project="-Users-me-work-app")
        assert event_in_scope(event, None, "work")
        assert not event_in_scope(event, None, "home")

    def test_cutoff_compares_instants(self):
        cutoff = TimeRange.LAST_7_DAYS.cutoff(NOW)
        assert event_in_scope(_event("2025-07-03T14:00:00+02:00"), cutoff, None)
        assert not event_in_scope(_event("2025-07-03T13:00:00+02:00"), cutoff, None)

    def test_unparseable_timestamp_only_in_all(self):
        event = _event("not-a-time")
        assert event_in_scope(event, None, None)
        assert not event_in_scope(event, TimeRange.LAST_7_DAYS.cutoff(NOW), None)


class TestAccumulator:
    """Test in-memory grouping used when the store is unavailable."""

    def test_totals_and_sessions(self):
        stats = StatisticsAccumulator().add_all([
            _event(cost=1.0),
            _event(cost=2.0, session_id="s2"),
            _event(cost=0.0, model=SESSION_ONLY_MODEL, session_id=UNKNOWN_SESSION),
        ]).build()

        assert stats.total_requests == 3
        assert stats.total_sessions == 2
        assert stats.total_cost == pytest.approx(3.0)
        assert stats.total_tokens == 45
        assert stats.source is DataSource.FALLBACK
        assert stats.average_cost_per_request == pytest.approx(1.0)

    def test_breakdowns(self):
        stats = StatisticsAccumulator().add_all([
            _event("2025-07-08T12:00:00Z", model="claude-4-opus", cost=5.0, project="app-b"),
            _event("2025-07-09T12:00:00Z", cost=1.0),
            _event("2025-07-09T13:00:00Z", model=SESSION_ONLY_MODEL, cost=0.0),
        ]).build()

        assert [m.model for m in stats.by_model] == ["claude-4-opus", "claude-4-sonnet"]
        assert [d.date for d in stats.by_date] == ["2025-07-08", "2025-07-09"]
        assert stats.by_date[1].models_used == ("claude-4-sonnet",)
        assert stats.by_date[1].request_count == 2
        assert [p.project_path for p in stats.by_project] == ["app-b", "app-a"]
        assert stats.by_project[1].last_used == "2025-07-09T13:00:00Z"

    def test_empty(self):
        stats = UsageStatistics.empty()
        assert stats.total_requests == 0
        assert stats.average_cost_per_request == 0.0


class TestProjectSorting:
    def setup_method(self):
        self.projects = [
            ProjectUsage("b", "beta", 2.0, 10, 1, 1, "2025-07-01T00:00:00Z"),
            ProjectUsage("a", "alpha", 5.0, 10, 1, 1, "2025-06-01T00:00:00Z"),
            ProjectUsage("c", "gamma", 2.0, 10, 1, 1, None),
        ]

    @pytest.mark.parametrize("order,expected", [
        (SortOrder.COST_DESC, ["a", "b", "c"]),
        (SortOrder.COST_ASC, ["b", "c", "a"]),
        (SortOrder.DATE_DESC, ["b", "a", "c"]),
        (SortOrder.DATE_ASC, ["c", "a", "b"]),
        (SortOrder.NAME_ASC, ["a", "b", "c"]),
        (SortOrder.NAME_DESC, ["c", "b", "a"]),
    ])
    def test_orders(self, order, expected):
        assert [p.project_path for p in sort_projects(self.projects, order)] == expected
