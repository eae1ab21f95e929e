"""
Statistics queries over the store with a raw-file fallback.

The store is a derived cache of the source logs, so it is always safe to
ignore it and recompute from the files. Queries go through two explicit
stages:

1. ``probe()`` returns HAS_DATA, NO_DATA or ERROR.
2. ``decide()`` maps the probe onto a route: read the store, fall back to
   parsing the source files, or propagate the error.

Corruption is never answered with fallback data; only connection-class
failures are.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from ai_usage_ledger.core.dedup import Deduplicator
from ai_usage_ledger.core.errors import DataIntegrityError, FileAccessError, StoreConnectionError
from ai_usage_ledger.core.pipeline import FileParseStats, file_context, parse_events, scan_source_files
from ai_usage_ledger.core.pricing import DEFAULT_PRICING_TABLE, PricingModel, PricingTable
from ai_usage_ledger.core.statistics import (
    DataSource,
    ProjectUsage,
    SortOrder,
    StatisticsAccumulator,
    TimeRange,
    UsageStatistics,
    event_in_scope,
    sort_models,
    sort_projects,
)
from ai_usage_ledger.storage.db import DEFAULT_DB_PATH
from ai_usage_ledger.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

RECOVERABLE_ERRORS = (StoreConnectionError, sqlite3.OperationalError)


class ProbeState(Enum):
    HAS_DATA = "has-data"
    NO_DATA = "no-data"
    ERROR = "error"


class QueryRoute(Enum):
    STORE = "store"
    FALLBACK = "fallback"
    PROPAGATE = "propagate"


@dataclass(frozen=True)
class ProbeResult:
    state: ProbeState
    request_count: int = 0
    session_count: int = 0
    error: Optional[Exception] = None

    @property
    def recoverable(self) -> bool:
        return self.error is not None and isinstance(self.error, RECOVERABLE_ERRORS)


@dataclass(frozen=True)
class DataSourceStatus:
    state: ProbeState
    route: QueryRoute
    request_count: int
    session_count: int
    error: Optional[str] = None


def decide(probe: ProbeResult) -> QueryRoute:
    """Decision table from probe outcome to query route."""
    if probe.state is ProbeState.HAS_DATA:
        return QueryRoute.STORE
    if probe.state is ProbeState.NO_DATA:
        return QueryRoute.FALLBACK
    if probe.recoverable:
        return QueryRoute.FALLBACK
    return QueryRoute.PROPAGATE


class HybridQueryService:
    """Serves UsageStatistics from the store, or from the source files."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        root: Union[str, Path] = ".",
        pricing_table: PricingTable = DEFAULT_PRICING_TABLE,
        anchor: str = "projects"
    ):
        self.repository = UsageRepository(db_path)
        self.root = Path(root)
        self.pricing_table = pricing_table
        self.anchor = anchor

    def probe(self) -> ProbeResult:
        try:
            counts = self.repository.probe()
        except (StoreConnectionError, DataIntegrityError, sqlite3.DatabaseError) as e:
            return ProbeResult(ProbeState.ERROR, error=e)
        state = ProbeState.HAS_DATA if counts.request_count > 0 else ProbeState.NO_DATA
        return ProbeResult(state, counts.request_count, counts.session_count)

    def _route(self) -> QueryRoute:
        probe = self.probe()
        route = decide(probe)
        if route is QueryRoute.PROPAGATE:
            raise probe.error
        if probe.state is ProbeState.ERROR:
            logger.warning("Usage store unavailable (%s); parsing source files", probe.error)
        return route

    def get_statistics(
        self,
        time_range: TimeRange = TimeRange.ALL,
        project_filter: Optional[str] = None,
        now: Optional[datetime] = None,
        sort_order: SortOrder = SortOrder.COST_DESC
    ) -> UsageStatistics:
        """Statistics for one time range, optionally limited to matching projects.

        Args:
            time_range: Window to aggregate over
            project_filter: Substring matched against project paths
            now: Reference time for the rolling ranges
            sort_order: Ordering of the per-project breakdown

        Raises:
            DataIntegrityError: If the store holds corrupt data
        """
        if self._route() is QueryRoute.STORE:
            try:
                return self._statistics_from_store(time_range, project_filter, now, sort_order)
            except RECOVERABLE_ERRORS as e:
                logger.warning("Store query failed (%s); parsing source files", e)
        return self._statistics_from_files(time_range, project_filter, now, sort_order)

    def get_project_usage(
        self,
        time_range: TimeRange = TimeRange.ALL,
        sort_order: SortOrder = SortOrder.COST_DESC,
        now: Optional[datetime] = None
    ) -> List[ProjectUsage]:
        """Per-project session statistics in the requested order."""
        if self._route() is QueryRoute.STORE:
            try:
                if self._use_precomputed(time_range, None):
                    rows = self.repository.get_project_statistics(time_range)
                else:
                    rows = self.repository.get_project_usage(time_range.cutoff_iso(now))
                return sort_projects(rows, sort_order)
            except RECOVERABLE_ERRORS as e:
                logger.warning("Store query failed (%s); parsing source files", e)
        return self._statistics_from_files(time_range, None, now, sort_order).by_project

    def data_source_status(self) -> DataSourceStatus:
        probe = self.probe()
        return DataSourceStatus(
            state=probe.state,
            route=decide(probe),
            request_count=probe.request_count,
            session_count=probe.session_count,
            error=str(probe.error) if probe.error else None,
        )

    def _use_precomputed(self, time_range: TimeRange, project_filter: Optional[str]) -> bool:
        # Rolling-range rows were cut at regeneration time; only the ALL range
        # stays exact between syncs.
        if project_filter or time_range is not TimeRange.ALL:
            return False
        return self.repository.derived_statistics_consistent()

    def _statistics_from_store(
        self,
        time_range: TimeRange,
        project_filter: Optional[str],
        now: Optional[datetime],
        sort_order: SortOrder
    ) -> UsageStatistics:
        cutoff = time_range.cutoff_iso(now)
        totals = self.repository.get_totals(cutoff, project_filter)
        if self._use_precomputed(time_range, project_filter):
            by_model = self.repository.get_model_statistics(time_range)
            by_date = self.repository.get_daily_statistics()
            by_project = self.repository.get_project_statistics(time_range)
        else:
            by_model = self.repository.get_model_usage(cutoff, project_filter)
            by_date = self.repository.get_daily_usage(cutoff, project_filter)
            by_project = self.repository.get_project_usage(cutoff, project_filter)

        return UsageStatistics(
            total_cost=totals["total_cost"],
            total_tokens=totals["total_tokens"],
            total_input_tokens=totals["input_tokens"],
            total_output_tokens=totals["output_tokens"],
            total_cache_creation_tokens=totals["cache_creation_tokens"],
            total_cache_read_tokens=totals["cache_read_tokens"],
            total_sessions=totals["total_sessions"],
            total_requests=totals["total_requests"],
            by_model=sort_models(by_model),
            by_date=by_date,
            by_project=sort_projects(by_project, sort_order),
            source=DataSource.STORE,
        )

    def _statistics_from_files(
        self,
        time_range: TimeRange,
        project_filter: Optional[str],
        now: Optional[datetime],
        sort_order: SortOrder
    ) -> UsageStatistics:
        cutoff = time_range.cutoff(now)
        pricing = PricingModel(self.pricing_table)
        deduplicator = Deduplicator()
        accumulator = StatisticsAccumulator()
        stats = FileParseStats()

        for path in scan_source_files(self.root):
            context = file_context(path, self.root, self.anchor)
            try:
                for event in parse_events(path, context, pricing, deduplicator, stats):
                    if event_in_scope(event, cutoff, project_filter):
                        accumulator.add(event)
            except FileAccessError as e:
                logger.warning("Skipping unreadable source file: %s", e)

        logger.debug(
            "Parsed source files directly: %d events, %d malformed lines, %d duplicates",
            stats.accepted, stats.skipped, stats.duplicates
        )
        return accumulator.build(DataSource.FALLBACK, sort_order)
