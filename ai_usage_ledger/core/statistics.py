"""
Usage statistics result types and in-memory aggregation.

The store path and the raw-file fallback path both produce these types and
apply the same grouping rules:

- session counts ignore the ``unknown`` session sentinel
- per-model breakdowns ignore session-only events (no billable model)
- every stored event counts as one request
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ai_usage_ledger.core.normalizer import parse_timestamp
from ai_usage_ledger.storage.models import SESSION_ONLY_MODEL, UsageEvent


class TimeRange(Enum):
    """Time window along which aggregates are materialized."""
    ALL = "all"
    LAST_7_DAYS = "last-7-days"
    LAST_30_DAYS = "last-30-days"

    @property
    def days(self) -> Optional[int]:
        return _RANGE_DAYS[self]

    def cutoff(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest timestamp included in this range, or None for ALL."""
        if self.days is None:
            return None
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now - timedelta(days=self.days)

    def cutoff_iso(self, now: Optional[datetime] = None) -> Optional[str]:
        """Cutoff rendered for SQLite ``julianday()`` comparisons."""
        cutoff = self.cutoff(now)
        if cutoff is None:
            return None
        return cutoff.astimezone(timezone.utc).isoformat()


_RANGE_DAYS = {
    TimeRange.ALL: None,
    TimeRange.LAST_7_DAYS: 7,
    TimeRange.LAST_30_DAYS: 30,
}


class SortOrder(Enum):
    """Ordering for per-project session statistics."""
    COST_DESC = "cost-desc"
    COST_ASC = "cost-asc"
    DATE_DESC = "date-desc"
    DATE_ASC = "date-asc"
    NAME_ASC = "name-asc"
    NAME_DESC = "name-desc"


class DataSource(Enum):
    """Where a statistics result was computed from."""
    STORE = "store"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ModelUsage:
    model: str
    total_cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    session_count: int
    request_count: int


@dataclass(frozen=True)
class DailyUsage:
    date: str
    total_cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    session_count: int
    request_count: int
    models_used: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProjectUsage:
    project_path: str
    project_name: str
    total_cost: float
    total_tokens: int
    session_count: int
    request_count: int
    last_used: Optional[str] = None


@dataclass(frozen=True)
class UsageStatistics:
    """Complete statistics answer for one time range and project filter."""
    total_cost: float
    total_tokens: int
    total_input_tokens: int
    total_output_tokens: int
    total_cache_creation_tokens: int
    total_cache_read_tokens: int
    total_sessions: int
    total_requests: int
    by_model: List[ModelUsage] = field(default_factory=list)
    by_date: List[DailyUsage] = field(default_factory=list)
    by_project: List[ProjectUsage] = field(default_factory=list)
    source: DataSource = DataSource.STORE

    @classmethod
    def empty(cls, source: DataSource = DataSource.STORE) -> "UsageStatistics":
        return cls(0.0, 0, 0, 0, 0, 0, 0, 0, source=source)

    @property
    def average_cost_per_request(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_cost / self.total_requests


def sort_models(models: Iterable[ModelUsage]) -> List[ModelUsage]:
    return sorted(models, key=lambda m: (-m.total_cost, m.model))


def sort_days(days: Iterable[DailyUsage]) -> List[DailyUsage]:
    return sorted(days, key=lambda d: d.date)


def sort_projects(
    projects: Iterable[ProjectUsage],
    order: SortOrder = SortOrder.COST_DESC
) -> List[ProjectUsage]:
    """Sort project rows; ties always break on project path."""
    projects = sorted(projects, key=lambda p: p.project_path)
    if order is SortOrder.COST_DESC:
        return sorted(projects, key=lambda p: p.total_cost, reverse=True)
    if order is SortOrder.COST_ASC:
        return sorted(projects, key=lambda p: p.total_cost)
    if order is SortOrder.DATE_DESC:
        return sorted(projects, key=lambda p: p.last_used or "", reverse=True)
    if order is SortOrder.DATE_ASC:
        return sorted(projects, key=lambda p: p.last_used or "")
    if order is SortOrder.NAME_ASC:
        return sorted(projects, key=lambda p: p.project_name)
    return sorted(projects, key=lambda p: p.project_name, reverse=True)


def event_in_scope(
    event: UsageEvent,
    cutoff: Optional[datetime],
    project_filter: Optional[str]
) -> bool:
    """Apply the same time and project predicates the SQL queries use.

    An event whose timestamp cannot be parsed is only part of the ALL range,
    mirroring SQLite's ``julianday()`` returning NULL.
    """
    if project_filter and project_filter not in event.project_path:
        return False
    if cutoff is None:
        return True
    parsed = parse_timestamp(event.timestamp)
    return parsed is not None and parsed >= cutoff


class _Bucket:
    __slots__ = (
        "cost", "input_tokens", "output_tokens", "cache_creation_tokens",
        "cache_read_tokens", "sessions", "requests", "models", "last_used",
    )

    def __init__(self):
        self.cost = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0
        self.sessions: Set[str] = set()
        self.requests = 0
        self.models: Set[str] = set()
        self.last_used: Optional[str] = None

    def add(self, event: UsageEvent) -> None:
        self.cost += event.cost
        self.input_tokens += event.input_tokens
        self.output_tokens += event.output_tokens
        self.cache_creation_tokens += event.cache_creation_tokens
        self.cache_read_tokens += event.cache_read_tokens
        self.requests += 1
        if event.has_valid_session:
            self.sessions.add(event.session_id)
        if event.model != SESSION_ONLY_MODEL:
            self.models.add(event.model)
        if self.last_used is None or event.timestamp > self.last_used:
            self.last_used = event.timestamp

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens + self.output_tokens
            + self.cache_creation_tokens + self.cache_read_tokens
        )


class StatisticsAccumulator:
    """Groups priced events in memory for the raw-file fallback path."""

    def __init__(self):
        self._total = _Bucket()
        self._by_model: Dict[str, _Bucket] = {}
        self._by_date: Dict[str, _Bucket] = {}
        self._by_project: Dict[str, _Bucket] = {}
        self._project_names: Dict[str, str] = {}

    def add(self, event: UsageEvent) -> None:
        self._total.add(event)
        if event.model != SESSION_ONLY_MODEL:
            self._by_model.setdefault(event.model, _Bucket()).add(event)
        self._by_date.setdefault(event.date_string, _Bucket()).add(event)
        self._by_project.setdefault(event.project_path, _Bucket()).add(event)
        self._project_names.setdefault(event.project_path, event.project_name)

    def add_all(self, events: Iterable[UsageEvent]) -> "StatisticsAccumulator":
        for event in events:
            self.add(event)
        return self

    def project_usage(self) -> List[ProjectUsage]:
        return [
            ProjectUsage(
                project_path=path,
                project_name=self._project_names[path],
                total_cost=b.cost,
                total_tokens=b.total_tokens,
                session_count=len(b.sessions),
                request_count=b.requests,
                last_used=b.last_used,
            )
            for path, b in self._by_project.items()
        ]

    def build(
        self,
        source: DataSource = DataSource.FALLBACK,
        sort_order: SortOrder = SortOrder.COST_DESC
    ) -> UsageStatistics:
        t = self._total
        by_model = [
            ModelUsage(
                model=model,
                total_cost=b.cost,
                total_tokens=b.total_tokens,
                input_tokens=b.input_tokens,
                output_tokens=b.output_tokens,
                cache_creation_tokens=b.cache_creation_tokens,
                cache_read_tokens=b.cache_read_tokens,
                session_count=len(b.sessions),
                request_count=b.requests,
            )
            for model, b in self._by_model.items()
        ]
        by_date = [
            DailyUsage(
                date=date,
                total_cost=b.cost,
                total_tokens=b.total_tokens,
                input_tokens=b.input_tokens,
                output_tokens=b.output_tokens,
                cache_creation_tokens=b.cache_creation_tokens,
                cache_read_tokens=b.cache_read_tokens,
                session_count=len(b.sessions),
                request_count=b.requests,
                models_used=tuple(sorted(b.models)),
            )
            for date, b in self._by_date.items()
        ]
        return UsageStatistics(
            total_cost=t.cost,
            total_tokens=t.total_tokens,
            total_input_tokens=t.input_tokens,
            total_output_tokens=t.output_tokens,
            total_cache_creation_tokens=t.cache_creation_tokens,
            total_cache_read_tokens=t.cache_read_tokens,
            total_sessions=len(t.sessions),
            total_requests=t.requests,
            by_model=sort_models(by_model),
            by_date=sort_days(by_date),
            by_project=sort_projects(self.project_usage(), sort_order),
            source=source,
        )
