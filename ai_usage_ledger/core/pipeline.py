"""
Ingestion pipeline: source files to priced, deduplicated usage events.

A run scans the source tree, decides which files to process, and for each
one replaces its stored events inside a single transaction:

    delete prior rows -> stream lines -> normalize -> dedupe -> price -> insert

The FileRecord for a file is marked ``processing`` before the transaction
starts and ``completed`` as its last statement, so a crash mid-file leaves a
record the next run will retry.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union

from ai_usage_ledger.core.aggregation import AggregationEngine
from ai_usage_ledger.core.dedup import Deduplicator
from ai_usage_ledger.core.errors import FileAccessError
from ai_usage_ledger.core.file_tracker import (
    FileChange, FileFingerprint, classify, compute_fingerprint, find_removed
)
from ai_usage_ledger.core.normalizer import (
    NormalizationOutcome, RecordContext, extract_project_path, iter_file_lines, normalize_record
)
from ai_usage_ledger.core.pricing import PricingModel
from ai_usage_ledger.storage.db import (
    DEFAULT_DB_PATH, get_connection, transaction, translate_store_errors
)
from ai_usage_ledger.storage.models import FileRecord, ProcessingStatus, UsageEvent
from ai_usage_ledger.storage.repository import (
    UsageRepository,
    create_schema,
    delete_events_for_file,
    delete_file_record,
    get_file_records,
    insert_usage_events,
    upsert_file_record,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
SOURCE_PATTERN = "*.jsonl"


@dataclass
class FileParseStats:
    """Line-level counters for one pass over a file."""
    accepted: int = 0
    skipped: int = 0
    filtered: int = 0
    duplicates: int = 0


@dataclass(frozen=True)
class SyncProgress:
    """Reported after each file of a run."""
    files_done: int
    files_total: int
    current_file: str

    @property
    def fraction(self) -> float:
        return self.files_done / self.files_total if self.files_total else 1.0


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class SyncSummary:
    """Outcome of one ingestion run.

    ``new_entries`` counts rows inserted for files that had no stored rows;
    ``updated_entries`` counts rows inserted for files whose prior rows were
    replaced; ``removed_entries`` counts prior rows deleted.
    """
    incremental: bool = False
    files_scanned: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    files_removed: int = 0
    new_entries: int = 0
    updated_entries: int = 0
    removed_entries: int = 0
    skipped_entries: int = 0
    filtered_entries: int = 0
    duplicate_entries: int = 0
    errors: List[str] = field(default_factory=list)
    unpriced_models: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    aggregated: bool = False
    duration: float = 0.0

    @property
    def events_touched(self) -> bool:
        return bool(self.new_entries or self.updated_entries or self.removed_entries)


def scan_source_files(root: Union[str, Path]) -> List[Path]:
    """All JSONL files below root, sorted by path string."""
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted((p for p in root.rglob(SOURCE_PATTERN) if p.is_file()), key=str)


def file_context(path: Path, root: Union[str, Path], anchor: str) -> RecordContext:
    project_path, project_name = extract_project_path(path, root, anchor)
    return RecordContext(project_path, project_name, str(path))


def parse_events(
    path: Path,
    context: RecordContext,
    pricing: PricingModel,
    deduplicator: Deduplicator,
    stats: FileParseStats
) -> Iterator[UsageEvent]:
    """Stream priced, deduplicated events from one file in line order.

    Raises:
        FileAccessError: If the file cannot be read
    """
    for line_number, line in iter_file_lines(path):
        result = normalize_record(line, context.at_line(line_number))
        if result.outcome is NormalizationOutcome.MALFORMED:
            stats.skipped += 1
            logger.debug("Skipping %s:%d: %s", path, line_number, result.reason)
            continue
        if result.outcome is NormalizationOutcome.FILTERED:
            stats.filtered += 1
            continue
        if not deduplicator.accept(result.event):
            stats.duplicates += 1
            continue
        stats.accepted += 1
        yield pricing.price_event(result.event)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class IngestionPipeline:
    """Sequential, single-writer ingestion of a source tree into the store."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        root: Union[str, Path] = ".",
        pricing: Optional[PricingModel] = None,
        anchor: str = "projects",
        batch_size: int = DEFAULT_BATCH_SIZE
    ):
        self.db_path = db_path
        self.root = Path(root)
        self.pricing = pricing or PricingModel()
        self.anchor = anchor
        self.batch_size = batch_size
        self.aggregation = AggregationEngine(db_path)

    def run(
        self,
        incremental: bool = True,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
        progress: Optional[ProgressCallback] = None
    ) -> SyncSummary:
        """Run one full or incremental ingestion pass.

        Args:
            incremental: Only process new and changed files when True
            cancel_event: Checked between files; a set event stops the run
            now: Reference time for aggregate regeneration
            progress: Called with a SyncProgress after each file

        Returns:
            SyncSummary with per-file and per-line counters

        Raises:
            StoreConnectionError: If the store cannot be opened or written
            DataIntegrityError: If the store rejects data as corrupt
        """
        started = time.monotonic()
        summary = SyncSummary(incremental=incremental)
        unknown_before = self.pricing.unknown_models.copy()

        conn = get_connection(self.db_path)
        try:
            with translate_store_errors():
                create_schema(conn)
                records = get_file_records(conn)

            if not self.root.is_dir():
                message = f"Source root {self.root} does not exist"
                logger.warning(message)
                summary.errors.append(message)
                files: List[Path] = []
            else:
                files = scan_source_files(self.root)
                self._remove_missing(conn, records, files, summary)
            summary.files_scanned = len(files)

            for done, path in enumerate(files, start=1):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Sync cancelled before %s", path)
                    summary.cancelled = True
                    break
                self._sync_file(conn, path, records.get(str(path)), incremental, summary)
                if progress is not None:
                    progress(SyncProgress(done, len(files), str(path)))
        finally:
            conn.close()

        summary.unpriced_models = dict(self.pricing.unknown_models - unknown_before)
        with translate_store_errors():
            stale = not UsageRepository(self.db_path).derived_statistics_consistent()
            if summary.events_touched or stale:
                self.aggregation.regenerate(now)
                summary.aggregated = True

        summary.duration = time.monotonic() - started
        logger.info(
            "%s sync finished: %d processed, %d skipped, %d failed, %d new, %d updated in %.2fs",
            "Incremental" if incremental else "Full",
            summary.files_processed, summary.files_skipped, summary.files_failed,
            summary.new_entries, summary.updated_entries, summary.duration
        )
        return summary

    def _remove_missing(
        self,
        conn: sqlite3.Connection,
        records: Dict[str, FileRecord],
        files: List[Path],
        summary: SyncSummary
    ) -> None:
        for file_path in find_removed(records, (str(p) for p in files)):
            with translate_store_errors():
                with transaction(conn):
                    removed = delete_events_for_file(conn, file_path)
                    delete_file_record(conn, file_path)
            logger.info("Source file %s disappeared; removed %d entries", file_path, removed)
            summary.files_removed += 1
            summary.removed_entries += removed

    def _sync_file(
        self,
        conn: sqlite3.Connection,
        path: Path,
        record: Optional[FileRecord],
        incremental: bool,
        summary: SyncSummary
    ) -> None:
        try:
            fingerprint = compute_fingerprint(path)
        except FileAccessError as e:
            self._fail(conn, path, None, str(e), summary)
            return

        if incremental and classify(fingerprint, record) is FileChange.UNCHANGED:
            summary.files_skipped += 1
            return

        processing = FileRecord(
            file_path=str(path),
            file_name=path.name,
            file_size=fingerprint.size,
            last_modified=fingerprint.last_modified,
            content_hash=fingerprint.content_hash,
            entry_count=record.entry_count if record else 0,
            processing_status=ProcessingStatus.PROCESSING,
            last_processed=record.last_processed if record else None,
        )
        with translate_store_errors():
            upsert_file_record(conn, processing)

        stats = FileParseStats()
        try:
            with translate_store_errors():
                with transaction(conn):
                    removed = delete_events_for_file(conn, str(path))
                    inserted = self._load_file(conn, path, stats)
                    upsert_file_record(conn, replace(
                        processing,
                        entry_count=stats.accepted,
                        processing_status=ProcessingStatus.COMPLETED,
                        last_processed=_utc_now(),
                    ))
        except FileAccessError as e:
            self._fail(conn, path, fingerprint, str(e), summary)
            return

        summary.files_processed += 1
        summary.skipped_entries += stats.skipped
        summary.filtered_entries += stats.filtered
        summary.duplicate_entries += stats.duplicates + (stats.accepted - inserted)
        summary.removed_entries += removed
        if removed:
            summary.updated_entries += inserted
        else:
            summary.new_entries += inserted
        logger.info(
            "Processed %s: %d entries (%d malformed lines, %d replaced)",
            path, inserted, stats.skipped, removed
        )

    def _load_file(self, conn: sqlite3.Connection, path: Path, stats: FileParseStats) -> int:
        context = file_context(path, self.root, self.anchor)
        inserted = 0
        batch: List[UsageEvent] = []
        for event in parse_events(path, context, self.pricing, Deduplicator(), stats):
            batch.append(event)
            if len(batch) >= self.batch_size:
                inserted += insert_usage_events(conn, batch)
                batch = []
        inserted += insert_usage_events(conn, batch)
        return inserted

    def _fail(
        self,
        conn: sqlite3.Connection,
        path: Path,
        fingerprint: Optional[FileFingerprint],
        message: str,
        summary: SyncSummary
    ) -> None:
        logger.warning("Failed to process %s: %s", path, message)
        summary.files_failed += 1
        summary.errors.append(message)
        with translate_store_errors():
            upsert_file_record(conn, FileRecord(
                file_path=str(path),
                file_name=path.name,
                file_size=fingerprint.size if fingerprint else 0,
                last_modified=fingerprint.last_modified if fingerprint else "",
                content_hash=fingerprint.content_hash if fingerprint else "",
                processing_status=ProcessingStatus.FAILED,
                error_message=message,
                last_processed=_utc_now(),
            ))
