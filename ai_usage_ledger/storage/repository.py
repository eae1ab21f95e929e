"""
Repository pattern for data access.

Holds the schema and every SQL statement run against the usage store.
Write helpers take an open connection so that callers control transaction
boundaries; ``UsageRepository`` read methods open and close their own
connection.
"""

import os
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ai_usage_ledger.core.errors import DataIntegrityError
from ai_usage_ledger.core.dedup import identity_key
from ai_usage_ledger.core.statistics import DailyUsage, ModelUsage, ProjectUsage, TimeRange

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import (
    SESSION_ONLY_MODEL, UNKNOWN_SESSION, FileRecord, ProcessingStatus, UsageEvent
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    date_string TEXT NOT NULL,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER GENERATED ALWAYS AS (
        input_tokens + output_tokens + cache_creation_tokens + cache_read_tokens
    ) VIRTUAL,
    cost REAL NOT NULL DEFAULT 0,
    session_id TEXT NOT NULL,
    project_path TEXT NOT NULL,
    project_name TEXT NOT NULL,
    request_id TEXT,
    message_id TEXT,
    message_type TEXT NOT NULL DEFAULT '',
    source_file TEXT NOT NULL,
    line_number INTEGER NOT NULL DEFAULT 0,
    dedup_key TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage_entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_date ON usage_entries(date_string);
CREATE INDEX IF NOT EXISTS idx_usage_model ON usage_entries(model);
CREATE INDEX IF NOT EXISTS idx_usage_session ON usage_entries(session_id);
CREATE INDEX IF NOT EXISTS idx_usage_project ON usage_entries(project_path);
CREATE INDEX IF NOT EXISTS idx_usage_source ON usage_entries(source_file);

CREATE TABLE IF NOT EXISTS suppressed_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    date_string TEXT NOT NULL,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0,
    session_id TEXT NOT NULL,
    project_path TEXT NOT NULL,
    project_name TEXT NOT NULL,
    request_id TEXT,
    message_id TEXT,
    message_type TEXT NOT NULL DEFAULT '',
    source_file TEXT NOT NULL,
    line_number INTEGER NOT NULL DEFAULT 0,
    dedup_key TEXT NOT NULL,
    UNIQUE (dedup_key, source_file)
);
CREATE INDEX IF NOT EXISTS idx_suppressed_source ON suppressed_entries(source_file);

CREATE TABLE IF NOT EXISTS jsonl_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_path TEXT NOT NULL UNIQUE,
    file_name TEXT NOT NULL,
    file_size INTEGER NOT NULL DEFAULT 0,
    last_modified TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    entry_count INTEGER NOT NULL DEFAULT 0,
    processing_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (processing_status IN ('pending', 'processing', 'completed', 'failed')),
    error_message TEXT,
    last_processed TEXT
);

CREATE TABLE IF NOT EXISTS daily_statistics (
    date TEXT PRIMARY KEY,
    total_cost REAL NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    session_count INTEGER NOT NULL DEFAULT 0,
    request_count INTEGER NOT NULL DEFAULT 0,
    models_used TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS model_statistics (
    model TEXT NOT NULL,
    time_range TEXT NOT NULL,
    total_cost REAL NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    session_count INTEGER NOT NULL DEFAULT 0,
    request_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (model, time_range)
);

CREATE TABLE IF NOT EXISTS project_statistics (
    project_path TEXT NOT NULL,
    time_range TEXT NOT NULL,
    project_name TEXT NOT NULL,
    total_cost REAL NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    session_count INTEGER NOT NULL DEFAULT 0,
    request_count INTEGER NOT NULL DEFAULT 0,
    last_used TEXT,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (project_path, time_range)
);
"""

SESSION_COUNT_SQL = (
    f"COUNT(DISTINCT CASE WHEN session_id != '{UNKNOWN_SESSION}' AND session_id != '' "
    f"THEN session_id END)"
)
TOKEN_SUMS_SQL = """
    COALESCE(SUM(cost), 0),
    COALESCE(SUM(total_tokens), 0),
    COALESCE(SUM(input_tokens), 0),
    COALESCE(SUM(output_tokens), 0),
    COALESCE(SUM(cache_creation_tokens), 0),
    COALESCE(SUM(cache_read_tokens), 0)
"""
MODELS_USED_SQL = (
    f"COALESCE(GROUP_CONCAT(DISTINCT CASE WHEN model != '{SESSION_ONLY_MODEL}' "
    f"THEN model END), '')"
)

INSERT_EVENT_SQL = """
    INSERT INTO usage_entries
    (timestamp, date_string, model, input_tokens, output_tokens,
     cache_creation_tokens, cache_read_tokens, cost, session_id,
     project_path, project_name, request_id, message_id, message_type,
     source_file, line_number, dedup_key)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(dedup_key) DO NOTHING
"""

EVENT_COLUMNS = """
    timestamp, date_string, model, input_tokens, output_tokens,
    cache_creation_tokens, cache_read_tokens, cost, session_id,
    project_path, project_name, request_id, message_id, message_type,
    source_file, line_number
"""
STORED_COLUMNS = EVENT_COLUMNS.rstrip() + ", dedup_key"

SUPPRESS_EVENT_SQL = f"""
    INSERT INTO suppressed_entries ({STORED_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(dedup_key, source_file) DO NOTHING
"""


def scope_clause(
    cutoff_iso: Optional[str] = None,
    project_filter: Optional[str] = None,
    extra: Iterable[str] = ()
) -> Tuple[str, List[str]]:
    """Build the WHERE clause shared by every usage_entries query.

    The time predicate goes through ``julianday()`` so that timestamps with
    different offsets or precision compare by instant, not by text.
    """
    conditions = list(extra)
    params: List[str] = []
    if cutoff_iso:
        conditions.append("julianday(timestamp) >= julianday(?)")
        params.append(cutoff_iso)
    if project_filter:
        conditions.append("instr(project_path, ?) > 0")
        params.append(project_filter)
    if not conditions:
        return "", params
    return " WHERE " + " AND ".join(conditions), params


def create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables and indexes if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        create_schema(conn)
    finally:
        conn.close()


# --- usage_entries writes (pipeline only) ---

def _event_params(event: UsageEvent) -> tuple:
    return (
        event.timestamp,
        event.date_string,
        event.model,
        event.input_tokens,
        event.output_tokens,
        event.cache_creation_tokens,
        event.cache_read_tokens,
        event.cost,
        event.session_id,
        event.project_path,
        event.project_name,
        event.request_id,
        event.message_id,
        event.message_type,
        event.source_file,
        event.line_number,
        identity_key(event),
    )


def _insert_event(conn: sqlite3.Connection, params: tuple) -> bool:
    before = conn.total_changes
    conn.execute(INSERT_EVENT_SQL, params)
    return conn.total_changes > before


def _suppress_stored(conn: sqlite3.Connection, row_id: int) -> None:
    conn.execute(f"""
        INSERT INTO suppressed_entries ({STORED_COLUMNS})
        SELECT {STORED_COLUMNS} FROM usage_entries WHERE id = ?
        ON CONFLICT(dedup_key, source_file) DO NOTHING
    """, (row_id,))
    conn.execute("DELETE FROM usage_entries WHERE id = ?", (row_id,))


def insert_usage_events(conn: sqlite3.Connection, events: List[UsageEvent]) -> int:
    """Insert events, keeping one stored row per identity key.

    Of all copies sharing an identity key, the one with the lowest
    (source_file, line_number) owns the usage_entries row. The other copies
    are kept in suppressed_entries so that one of them can take over when
    the owning file is reprocessed or removed.

    Returns:
        Number of rows inserted into usage_entries
    """
    inserted = 0
    for event in events:
        params = _event_params(event)
        if _insert_event(conn, params):
            inserted += 1
            continue
        owner = conn.execute(
            "SELECT id, source_file, line_number FROM usage_entries WHERE dedup_key = ?",
            (params[-1],)
        ).fetchone()
        if owner is not None and (event.source_file, event.line_number) < (owner[1], owner[2]):
            _suppress_stored(conn, owner[0])
            _insert_event(conn, params)
            inserted += 1
        elif owner is not None and owner[1] != event.source_file:
            conn.execute(SUPPRESS_EVENT_SQL, params)
    return inserted


def _promote_suppressed(conn: sqlite3.Connection, dedup_key: str) -> bool:
    row = conn.execute("""
        SELECT id FROM suppressed_entries
        WHERE dedup_key = ?
        ORDER BY source_file, line_number
        LIMIT 1
    """, (dedup_key,)).fetchone()
    if row is None:
        return False
    conn.execute(f"""
        INSERT INTO usage_entries ({STORED_COLUMNS})
        SELECT {STORED_COLUMNS} FROM suppressed_entries WHERE id = ?
    """, (row[0],))
    conn.execute("DELETE FROM suppressed_entries WHERE id = ?", (row[0],))
    return True


def delete_events_for_file(conn: sqlite3.Connection, source_file: str) -> int:
    """Delete a file's events, promoting the next copy of each identity it owned.

    Returns:
        Number of the file's own rows deleted from usage_entries
    """
    conn.execute("DELETE FROM suppressed_entries WHERE source_file = ?", (source_file,))
    owned_keys = [row[0] for row in conn.execute(
        "SELECT dedup_key FROM usage_entries WHERE source_file = ?", (source_file,)
    ).fetchall()]
    cursor = conn.execute("DELETE FROM usage_entries WHERE source_file = ?", (source_file,))
    removed = cursor.rowcount
    for dedup_key in owned_keys:
        _promote_suppressed(conn, dedup_key)
    return removed


def count_suppressed_events(conn: sqlite3.Connection, source_file: Optional[str] = None) -> int:
    query = "SELECT COUNT(*) FROM suppressed_entries"
    params: list = []
    if source_file is not None:
        query += " WHERE source_file = ?"
        params.append(source_file)
    return conn.execute(query, params).fetchone()[0]


def count_events_for_file(conn: sqlite3.Connection, source_file: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM usage_entries WHERE source_file = ?", (source_file,)
    ).fetchone()
    return row[0]


# --- jsonl_files bookkeeping ---

def _row_to_file_record(row: tuple) -> FileRecord:
    return FileRecord(
        file_path=row[0],
        file_name=row[1],
        file_size=row[2],
        last_modified=row[3],
        content_hash=row[4],
        entry_count=row[5],
        processing_status=ProcessingStatus(row[6]),
        error_message=row[7],
        last_processed=row[8],
    )


FILE_COLUMNS = """
    file_path, file_name, file_size, last_modified, content_hash,
    entry_count, processing_status, error_message, last_processed
"""


def upsert_file_record(conn: sqlite3.Connection, record: FileRecord) -> None:
    conn.execute(f"""
        INSERT INTO jsonl_files ({FILE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(file_path) DO UPDATE SET
            file_name = excluded.file_name,
            file_size = excluded.file_size,
            last_modified = excluded.last_modified,
            content_hash = excluded.content_hash,
            entry_count = excluded.entry_count,
            processing_status = excluded.processing_status,
            error_message = excluded.error_message,
            last_processed = excluded.last_processed
    """, (
        record.file_path,
        record.file_name,
        record.file_size,
        record.last_modified,
        record.content_hash,
        record.entry_count,
        record.processing_status.value,
        record.error_message,
        record.last_processed,
    ))


def get_file_record(conn: sqlite3.Connection, file_path: str) -> Optional[FileRecord]:
    row = conn.execute(
        f"SELECT {FILE_COLUMNS} FROM jsonl_files WHERE file_path = ?", (file_path,)
    ).fetchone()
    return _row_to_file_record(row) if row else None


def get_file_records(conn: sqlite3.Connection) -> Dict[str, FileRecord]:
    cursor = conn.execute(f"SELECT {FILE_COLUMNS} FROM jsonl_files ORDER BY file_path")
    return {row[0]: _row_to_file_record(row) for row in cursor.fetchall()}


def delete_file_record(conn: sqlite3.Connection, file_path: str) -> None:
    conn.execute("DELETE FROM jsonl_files WHERE file_path = ?", (file_path,))


# --- derived statistics writes (aggregation engine only) ---

def clear_statistics(conn: sqlite3.Connection) -> None:
    conn.execute("DELETE FROM daily_statistics")
    conn.execute("DELETE FROM model_statistics")
    conn.execute("DELETE FROM project_statistics")


def clear_all_data(conn: sqlite3.Connection) -> int:
    """Empty every table and restart the id sequences.

    Returns:
        Number of usage_entries rows deleted
    """
    removed = conn.execute("DELETE FROM usage_entries").rowcount
    conn.execute("DELETE FROM suppressed_entries")
    conn.execute("DELETE FROM jsonl_files")
    clear_statistics(conn)
    conn.execute("DELETE FROM sqlite_sequence")
    return removed


def rebuild_daily_statistics(conn: sqlite3.Connection) -> int:
    cursor = conn.execute(f"""
        INSERT INTO daily_statistics
        (date, total_cost, total_tokens, input_tokens, output_tokens,
         cache_creation_tokens, cache_read_tokens, session_count,
         request_count, models_used)
        SELECT date_string, {TOKEN_SUMS_SQL}, {SESSION_COUNT_SQL}, COUNT(*), {MODELS_USED_SQL}
        FROM usage_entries
        GROUP BY date_string
    """)
    return cursor.rowcount


def rebuild_model_statistics(
    conn: sqlite3.Connection,
    time_range: TimeRange,
    cutoff_iso: Optional[str]
) -> int:
    where, params = scope_clause(cutoff_iso, extra=[f"model != '{SESSION_ONLY_MODEL}'"])
    cursor = conn.execute(f"""
        INSERT INTO model_statistics
        (model, time_range, total_cost, total_tokens, input_tokens,
         output_tokens, cache_creation_tokens, cache_read_tokens,
         session_count, request_count)
        SELECT model, ?, {TOKEN_SUMS_SQL}, {SESSION_COUNT_SQL}, COUNT(*)
        FROM usage_entries{where}
        GROUP BY model
    """, [time_range.value] + params)
    return cursor.rowcount


def rebuild_project_statistics(
    conn: sqlite3.Connection,
    time_range: TimeRange,
    cutoff_iso: Optional[str]
) -> int:
    where, params = scope_clause(cutoff_iso)
    cursor = conn.execute(f"""
        INSERT INTO project_statistics
        (project_path, time_range, project_name, total_cost, total_tokens,
         session_count, request_count, last_used)
        SELECT project_path, ?, MIN(project_name), COALESCE(SUM(cost), 0),
               COALESCE(SUM(total_tokens), 0), {SESSION_COUNT_SQL}, COUNT(*),
               MAX(timestamp)
        FROM usage_entries{where}
        GROUP BY project_path
    """, [time_range.value] + params)
    return cursor.rowcount


def _split_models(models_used: str) -> Tuple[str, ...]:
    return tuple(sorted(m for m in models_used.split(",") if m))


def _row_to_event(row: tuple) -> UsageEvent:
    return UsageEvent(
        timestamp=row[0],
        date_string=row[1],
        model=row[2],
        input_tokens=row[3],
        output_tokens=row[4],
        cache_creation_tokens=row[5],
        cache_read_tokens=row[6],
        cost=row[7],
        session_id=row[8],
        project_path=row[9],
        project_name=row[10],
        request_id=row[11],
        message_id=row[12],
        message_type=row[13],
        source_file=row[14],
        line_number=row[15],
    )


@dataclass(frozen=True)
class ProbeCounts:
    request_count: int
    session_count: int


@dataclass(frozen=True)
class IntegrityReport:
    """Result of a consistency check over the store."""
    checked_entries: int
    checked_files: int
    issues: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.issues


class UsageRepository:
    """Read access to the usage store.

    Each method opens its own connection, so a repository can be shared
    between threads while a single sync writes.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def probe(self) -> ProbeCounts:
        """Cheap existence probe over the canonical event table.

        Raises:
            StoreConnectionError: If the store cannot be opened
            sqlite3.OperationalError: If the schema is missing
            DataIntegrityError: If stored rows carry negative counts or cost
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT COUNT(*), {SESSION_COUNT_SQL} FROM usage_entries"
            ).fetchone()
            corrupt = conn.execute("""
                SELECT COUNT(*) FROM usage_entries
                WHERE input_tokens < 0 OR output_tokens < 0
                   OR cache_creation_tokens < 0 OR cache_read_tokens < 0
                   OR cost < 0
            """).fetchone()[0]
            if corrupt:
                raise DataIntegrityError(
                    f"{corrupt} stored usage entries have negative token counts or cost"
                )
            return ProbeCounts(request_count=row[0], session_count=row[1])
        finally:
            conn.close()

    def get_totals(
        self,
        cutoff_iso: Optional[str] = None,
        project_filter: Optional[str] = None
    ) -> Dict[str, float]:
        """Get overall totals for a time window and project filter.

        Returns:
            Dictionary with cost, token, session and request totals
        """
        conn = get_connection(self.db_path)
        try:
            where, params = scope_clause(cutoff_iso, project_filter)
            row = conn.execute(f"""
                SELECT {TOKEN_SUMS_SQL}, {SESSION_COUNT_SQL}, COUNT(*)
                FROM usage_entries{where}
            """, params).fetchone()
            return {
                "total_cost": float(row[0]),
                "total_tokens": row[1],
                "input_tokens": row[2],
                "output_tokens": row[3],
                "cache_creation_tokens": row[4],
                "cache_read_tokens": row[5],
                "total_sessions": row[6],
                "total_requests": row[7],
            }
        finally:
            conn.close()

    def get_model_usage(
        self,
        cutoff_iso: Optional[str] = None,
        project_filter: Optional[str] = None
    ) -> List[ModelUsage]:
        """Group events by model directly from usage_entries."""
        conn = get_connection(self.db_path)
        try:
            where, params = scope_clause(
                cutoff_iso, project_filter, extra=[f"model != '{SESSION_ONLY_MODEL}'"]
            )
            cursor = conn.execute(f"""
                SELECT model, {TOKEN_SUMS_SQL}, {SESSION_COUNT_SQL}, COUNT(*)
                FROM usage_entries{where}
                GROUP BY model
                ORDER BY 2 DESC, model
            """, params)
            return [ModelUsage(*row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_daily_usage(
        self,
        cutoff_iso: Optional[str] = None,
        project_filter: Optional[str] = None
    ) -> List[DailyUsage]:
        """Group events by local calendar date directly from usage_entries."""
        conn = get_connection(self.db_path)
        try:
            where, params = scope_clause(cutoff_iso, project_filter)
            cursor = conn.execute(f"""
                SELECT date_string, {TOKEN_SUMS_SQL}, {SESSION_COUNT_SQL}, COUNT(*),
                       {MODELS_USED_SQL}
                FROM usage_entries{where}
                GROUP BY date_string
                ORDER BY date_string
            """, params)
            return [
                DailyUsage(*row[:9], models_used=_split_models(row[9]))
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_project_usage(
        self,
        cutoff_iso: Optional[str] = None,
        project_filter: Optional[str] = None
    ) -> List[ProjectUsage]:
        """Group events by project directly from usage_entries."""
        conn = get_connection(self.db_path)
        try:
            where, params = scope_clause(cutoff_iso, project_filter)
            cursor = conn.execute(f"""
                SELECT project_path, MIN(project_name), COALESCE(SUM(cost), 0),
                       COALESCE(SUM(total_tokens), 0), {SESSION_COUNT_SQL}, COUNT(*),
                       MAX(timestamp)
                FROM usage_entries{where}
                GROUP BY project_path
                ORDER BY 3 DESC, project_path
            """, params)
            return [ProjectUsage(*row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_model_statistics(self, time_range: TimeRange) -> List[ModelUsage]:
        """Read precomputed per-model rows for one time range."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT model, total_cost, total_tokens, input_tokens, output_tokens,
                       cache_creation_tokens, cache_read_tokens, session_count,
                       request_count
                FROM model_statistics
                WHERE time_range = ?
                ORDER BY total_cost DESC, model
            """, (time_range.value,))
            return [ModelUsage(*row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_daily_statistics(self) -> List[DailyUsage]:
        """Read precomputed per-day rows."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT date, total_cost, total_tokens, input_tokens, output_tokens,
                       cache_creation_tokens, cache_read_tokens, session_count,
                       request_count, models_used
                FROM daily_statistics
                ORDER BY date
            """)
            return [
                DailyUsage(*row[:9], models_used=_split_models(row[9]))
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_project_statistics(self, time_range: TimeRange) -> List[ProjectUsage]:
        """Read precomputed per-project rows for one time range."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT project_path, project_name, total_cost, total_tokens,
                       session_count, request_count, last_used
                FROM project_statistics
                WHERE time_range = ?
                ORDER BY total_cost DESC, project_path
            """, (time_range.value,))
            return [ProjectUsage(*row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def derived_statistics_consistent(self) -> bool:
        """True when the daily table accounts for every stored event."""
        conn = get_connection(self.db_path)
        try:
            derived = conn.execute(
                "SELECT COALESCE(SUM(request_count), 0) FROM daily_statistics"
            ).fetchone()[0]
            actual = conn.execute("SELECT COUNT(*) FROM usage_entries").fetchone()[0]
            return derived == actual
        finally:
            conn.close()

    def get_events(
        self,
        source_file: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[UsageEvent]:
        """Fetch stored events in insertion order, optionally for one file."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {EVENT_COLUMNS} FROM usage_entries"
            params: list = []
            if source_file is not None:
                query += " WHERE source_file = ?"
                params.append(source_file)
            query += " ORDER BY id"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def get_file_records(self) -> Dict[str, FileRecord]:
        conn = get_connection(self.db_path)
        try:
            return get_file_records(conn)
        finally:
            conn.close()

    def get_database_stats(self) -> Dict[str, object]:
        """Summarize store contents for status reporting."""
        conn = get_connection(self.db_path)
        try:
            entries, sessions = conn.execute(
                f"SELECT COUNT(*), {SESSION_COUNT_SQL} FROM usage_entries"
            ).fetchone()
            statuses = dict(conn.execute(
                "SELECT processing_status, COUNT(*) FROM jsonl_files GROUP BY processing_status"
            ).fetchall())
            last_processed = conn.execute(
                "SELECT MAX(last_processed) FROM jsonl_files"
            ).fetchone()[0]
            first_ts, last_ts = conn.execute(
                "SELECT MIN(timestamp), MAX(timestamp) FROM usage_entries"
            ).fetchone()
            daily_rows = conn.execute("SELECT COUNT(*) FROM daily_statistics").fetchone()[0]
        finally:
            conn.close()

        size = 0
        if self.db_path != ":memory:" and os.path.exists(self.db_path):
            size = os.path.getsize(self.db_path)
        return {
            "total_entries": entries,
            "total_sessions": sessions,
            "total_files": sum(statuses.values()),
            "files_by_status": statuses,
            "last_processed": last_processed,
            "first_timestamp": first_ts,
            "last_timestamp": last_ts,
            "daily_statistics_rows": daily_rows,
            "database_size_bytes": size,
        }

    def deduplicate_stored_events(self) -> int:
        """Remove rows sharing (message_id, request_id), keeping the oldest.

        Rows written by the pipeline are already unique on their identity
        key; this repairs stores populated before that constraint existed.

        Returns:
            Number of rows removed
        """
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                cursor = conn.execute("""
                    DELETE FROM usage_entries
                    WHERE message_id IS NOT NULL AND message_id != ''
                      AND request_id IS NOT NULL AND request_id != ''
                      AND id NOT IN (
                          SELECT MIN(id) FROM usage_entries
                          WHERE message_id IS NOT NULL AND message_id != ''
                            AND request_id IS NOT NULL AND request_id != ''
                          GROUP BY message_id, request_id
                      )
                """)
            return cursor.rowcount
        finally:
            conn.close()

    def check_integrity(self) -> IntegrityReport:
        """Look for rows and file records that a clean sync would not leave behind.

        Reports negative counts or cost, events whose source file has no
        record, file records not in the completed state, and derived
        statistics that no longer account for every stored event.
        """
        conn = get_connection(self.db_path)
        try:
            entries = conn.execute("SELECT COUNT(*) FROM usage_entries").fetchone()[0]
            files = conn.execute("SELECT COUNT(*) FROM jsonl_files").fetchone()[0]
            issues = []

            negative = conn.execute("""
                SELECT COUNT(*) FROM usage_entries
                WHERE input_tokens < 0 OR output_tokens < 0
                   OR cache_creation_tokens < 0 OR cache_read_tokens < 0
                   OR cost < 0
            """).fetchone()[0]
            if negative:
                issues.append(f"{negative} entries have negative token counts or cost")

            orphaned = conn.execute("""
                SELECT COUNT(*) FROM usage_entries
                WHERE source_file NOT IN (SELECT file_path FROM jsonl_files)
            """).fetchone()[0]
            if orphaned:
                issues.append(f"{orphaned} entries belong to files with no file record")

            for file_path, state, error in conn.execute("""
                SELECT file_path, processing_status, error_message FROM jsonl_files
                WHERE processing_status != ?
                ORDER BY file_path
            """, (ProcessingStatus.COMPLETED.value,)).fetchall():
                detail = f": {error}" if error else ""
                issues.append(f"{file_path} is {state}{detail}")

            derived = conn.execute(
                "SELECT COALESCE(SUM(request_count), 0) FROM daily_statistics"
            ).fetchone()[0]
            if derived != entries:
                issues.append(
                    f"daily statistics cover {derived} entries but {entries} are stored"
                )
        finally:
            conn.close()
        return IntegrityReport(entries, files, tuple(issues))
