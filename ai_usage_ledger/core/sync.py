"""
Sync service: the entry point exposed to interactive callers.

Wraps the ingestion pipeline and the hybrid query service behind a small
API. Only one sync runs at a time per service; a second request fails fast
with SyncInProgressError instead of interleaving writes.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from ai_usage_ledger.core.errors import SyncInProgressError
from ai_usage_ledger.core.hybrid import DataSourceStatus, HybridQueryService
from ai_usage_ledger.core.pipeline import (
    DEFAULT_BATCH_SIZE, IngestionPipeline, ProgressCallback, SyncSummary
)
from ai_usage_ledger.core.pricing import DEFAULT_PRICING_TABLE, PricingModel, PricingTable
from ai_usage_ledger.core.statistics import ProjectUsage, SortOrder, TimeRange, UsageStatistics
from ai_usage_ledger.storage.db import (
    DEFAULT_DB_PATH, get_connection, transaction, translate_store_errors
)
from ai_usage_ledger.storage.repository import (
    IntegrityReport, UsageRepository, clear_all_data, create_schema
)

logger = logging.getLogger(__name__)


class SyncService:
    """Runs full and incremental syncs and answers statistics queries."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        root: Union[str, Path] = ".",
        pricing_table: PricingTable = DEFAULT_PRICING_TABLE,
        anchor: str = "projects",
        batch_size: int = DEFAULT_BATCH_SIZE
    ):
        self.db_path = db_path
        self.pricing = PricingModel(pricing_table)
        self.pipeline = IngestionPipeline(
            db_path=db_path,
            root=root,
            pricing=self.pricing,
            anchor=anchor,
            batch_size=batch_size,
        )
        self.queries = HybridQueryService(db_path, root, pricing_table, anchor)
        self.repository = UsageRepository(db_path)
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def _acquire(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A sync is already in progress")

    def run_full_sync(
        self,
        now: Optional[datetime] = None,
        progress: Optional[ProgressCallback] = None
    ) -> SyncSummary:
        """Reprocess every source file."""
        self._acquire()
        self._cancel.clear()
        return self._run_locked(False, now, progress)

    def run_incremental_sync(
        self,
        now: Optional[datetime] = None,
        progress: Optional[ProgressCallback] = None
    ) -> SyncSummary:
        """Process only new and changed source files."""
        self._acquire()
        self._cancel.clear()
        return self._run_locked(True, now, progress)

    def _run_locked(
        self,
        incremental: bool,
        now: Optional[datetime],
        progress: Optional[ProgressCallback]
    ) -> SyncSummary:
        # The caller acquired the lock, possibly on another thread
        try:
            logger.info("Starting %s sync", "incremental" if incremental else "full")
            return self.pipeline.run(
                incremental=incremental, cancel_event=self._cancel, now=now, progress=progress
            )
        finally:
            self._lock.release()

    def cancel_sync(self) -> None:
        """Ask a running or queued sync to stop before its next file."""
        self._cancel.set()

    def submit_sync(
        self,
        incremental: bool = True,
        progress: Optional[ProgressCallback] = None
    ) -> "Future[SyncSummary]":
        """Run a sync on a background worker thread.

        The lock is taken before the work is queued, so a second request
        fails here and a cancel issued right after this call is kept.

        Returns:
            Future resolving to the SyncSummary, or to the raised error

        Raises:
            SyncInProgressError: If another sync holds the lock
        """
        self._acquire()
        self._cancel.clear()
        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="usage-sync")
            return self._executor.submit(self._run_locked, incremental, None, progress)
        except Exception:
            self._lock.release()
            raise

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def get_statistics(
        self,
        time_range: TimeRange = TimeRange.ALL,
        project_filter: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> UsageStatistics:
        return self.queries.get_statistics(time_range, project_filter, now)

    def get_project_usage(
        self,
        time_range: TimeRange = TimeRange.ALL,
        sort_order: SortOrder = SortOrder.COST_DESC,
        now: Optional[datetime] = None
    ) -> List[ProjectUsage]:
        return self.queries.get_project_usage(time_range, sort_order, now)

    def data_source_status(self) -> DataSourceStatus:
        return self.queries.data_source_status()

    def get_database_stats(self) -> Dict[str, object]:
        with translate_store_errors():
            return self.repository.get_database_stats()

    def validate_data_integrity(self) -> IntegrityReport:
        """Check the store for leftovers of failed or interrupted syncs."""
        self._acquire()
        try:
            with translate_store_errors():
                report = self.repository.check_integrity()
        finally:
            self._lock.release()
        for issue in report.issues:
            logger.warning("Integrity issue: %s", issue)
        return report

    def reset(self) -> int:
        """Delete all stored data so the next sync rebuilds from scratch.

        Returns:
            Number of usage entries deleted
        """
        self._acquire()
        try:
            with translate_store_errors():
                conn = get_connection(self.db_path)
                try:
                    create_schema(conn)
                    with transaction(conn):
                        removed = clear_all_data(conn)
                finally:
                    conn.close()
        finally:
            self._lock.release()
        logger.info("Cleared %d usage entries from %s", removed, self.db_path)
        return removed

    def deduplicate(self, now: Optional[datetime] = None) -> int:
        """Remove stored duplicates and refresh aggregates if any were found."""
        self._acquire()
        try:
            with translate_store_errors():
                removed = self.repository.deduplicate_stored_events()
                if removed:
                    self.pipeline.aggregation.regenerate(now)
            return removed
        finally:
            self._lock.release()
