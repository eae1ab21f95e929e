"""
Error taxonomy for ingestion, storage and statistics.

Line-level and file-level problems are recovered and counted; connection
and integrity problems abort the current operation.
"""


class UsageLedgerError(Exception):
    """Base class for all errors raised by the usage ledger."""


class ParseError(UsageLedgerError):
    """A single log line could not be decoded or is structurally invalid."""

    def __init__(self, message: str, line_number: int = 0):
        super().__init__(message)
        self.line_number = line_number


class FileAccessError(UsageLedgerError):
    """A source file could not be opened or read."""

    def __init__(self, message: str, file_path: str):
        super().__init__(message)
        self.file_path = file_path


class StoreConnectionError(UsageLedgerError):
    """The SQLite store could not be opened or transacted against."""


class DataIntegrityError(UsageLedgerError, ValueError):
    """Stored or computed data violates an invariant (negative counts, corruption)."""


class SyncInProgressError(UsageLedgerError):
    """Raised when a sync is requested while another one is running."""


class ConfigError(UsageLedgerError, ValueError):
    """Configuration file is missing required values or contains unknown keys."""
