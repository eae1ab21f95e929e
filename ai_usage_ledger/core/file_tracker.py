"""
Content-hash based change detection for source files.

The stored FileRecord table is the single source of truth for which files
have been seen. Size and modification time are recorded for reporting only;
the MD5 content hash alone decides whether a file changed.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ai_usage_ledger.core.errors import FileAccessError
from ai_usage_ledger.storage.models import FileRecord, ProcessingStatus

HASH_CHUNK_SIZE = 64 * 1024


class FileChange(Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class FileFingerprint:
    path: str
    size: int
    last_modified: str
    content_hash: str


def compute_fingerprint(path: Union[str, Path]) -> FileFingerprint:
    """Hash a file in fixed-size chunks and collect its metadata.

    Raises:
        FileAccessError: If the file cannot be stat'ed or read
    """
    digest = hashlib.md5()
    try:
        stat = Path(path).stat()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                digest.update(chunk)
    except OSError as e:
        raise FileAccessError(f"Cannot fingerprint {path}: {e}", str(path)) from e

    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    return FileFingerprint(
        path=str(path),
        size=stat.st_size,
        last_modified=modified.isoformat(),
        content_hash=digest.hexdigest(),
    )


def classify(fingerprint: FileFingerprint, record: Optional[FileRecord]) -> FileChange:
    """Compare a fresh fingerprint against the stored record.

    A record that never reached ``completed`` (crashed or failed run) is
    treated as changed so the file gets retried.
    """
    if record is None:
        return FileChange.NEW
    if record.content_hash != fingerprint.content_hash:
        return FileChange.CHANGED
    if record.processing_status is not ProcessingStatus.COMPLETED:
        return FileChange.CHANGED
    return FileChange.UNCHANGED


def find_removed(known_paths: Iterable[str], seen_paths: Iterable[str]) -> List[str]:
    """Recorded paths that were not seen in the latest scan."""
    seen = set(seen_paths)
    return sorted(path for path in known_paths if path not in seen)
