"""Exception hierarchy for ingestion, storage and query evaluation."""
from typing import Optional


class PerftestError(Exception):
    """Base class for all harness errors."""


class FetchError(PerftestError):
    """Scrape payload could not be retrieved."""


class ParseError(PerftestError):
    """Malformed exposition payload."""

    def __init__(self, message: str, line_no: Optional[int] = None, line: Optional[str] = None):
        self.line_no = line_no
        self.line = line
        if line_no is not None:
            message = f"line {line_no}: {message}"
            if line is not None:
                message = f"{message}: {line!r}"
        super().__init__(message)


class StorageError(PerftestError):
    """Base class for time-series store errors."""


class MissingNameLabel(StorageError):
    """Label set has no metric name label."""


class Conflict(StorageError):
    """A different value already exists for the series at this timestamp."""


class OutOfOrderSample(Conflict):
    """Sample is older than the newest committed sample of its series."""


class WriterBusy(StorageError):
    """The store's writer slot is held by an open appender."""


class StorageClosed(StorageError):
    """The store has been closed."""


class QueryError(PerftestError):
    """Base class for query evaluation errors."""


class EvaluationError(QueryError):
    """Expression is malformed or uses an unsupported construct."""


class ResourceExceeded(QueryError):
    """Query touched more samples than the configured budget."""


class QueryTimeout(QueryError):
    """Query evaluation ran past its deadline."""
