"""
Regeneration of the derived statistics tables.

Daily, per-model and per-project statistics are disposable caches. They are
never patched; every regeneration deletes all three tables and rebuilds
them from usage_entries inside a single transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from ai_usage_ledger.core.statistics import TimeRange
from ai_usage_ledger.storage.db import DEFAULT_DB_PATH, get_connection, transaction
from ai_usage_ledger.storage.repository import (
    clear_statistics,
    rebuild_daily_statistics,
    rebuild_model_statistics,
    rebuild_project_statistics,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationResult:
    daily_rows: int
    model_rows: Dict[TimeRange, int] = field(default_factory=dict)
    project_rows: Dict[TimeRange, int] = field(default_factory=dict)


class AggregationEngine:
    """Owns all writes to daily_statistics, model_statistics and project_statistics."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def regenerate(self, now: Optional[datetime] = None) -> AggregationResult:
        """Recompute every derived table from the current usage_entries.

        Args:
            now: Reference time for the rolling ranges (defaults to current UTC time)

        Returns:
            Row counts written per table and time range
        """
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                clear_statistics(conn)
                daily_rows = rebuild_daily_statistics(conn)
                model_rows = {}
                project_rows = {}
                for time_range in TimeRange:
                    cutoff = time_range.cutoff_iso(now)
                    model_rows[time_range] = rebuild_model_statistics(conn, time_range, cutoff)
                    project_rows[time_range] = rebuild_project_statistics(conn, time_range, cutoff)
        finally:
            conn.close()

        logger.info(
            "Regenerated statistics: %d days, %d models, %d projects (all time)",
            daily_rows, model_rows[TimeRange.ALL], project_rows[TimeRange.ALL]
        )
        return AggregationResult(daily_rows, model_rows, project_rows)
