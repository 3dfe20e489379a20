"""In-memory, append-only time-series store with transactional appends."""
from bisect import bisect_left
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math
import threading

from perftest.errors import (
    Conflict,
    MissingNameLabel,
    OutOfOrderSample,
    StorageClosed,
    StorageError,
    WriterBusy,
)
from perftest.series import METRIC_NAME, Labels, Matcher, Point, Series

logger = logging.getLogger(__name__)

# Series are addressed by their label set
SeriesRef = Labels


def _same_value(a: float, b: float) -> bool:
    return a == b or (math.isnan(a) and math.isnan(b))


class _ReadWriteLock:
    """Single-writer / multi-reader lock with bounded waits.

    Waiting writers block new readers so a writer is not starved by a
    stream of queries. Timeouts raise ``WriterBusy``.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self, timeout: Optional[float]):
        with self._cond:
            ready = self._cond.wait_for(
                lambda: not self._writer and not self._writers_waiting, timeout
            )
            if not ready:
                raise WriterBusy("Store is locked by an open appender")
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: Optional[float]):
        with self._cond:
            self._writers_waiting += 1
            try:
                ready = self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0, timeout
                )
            finally:
                self._writers_waiting -= 1
            if not ready:
                self._cond.notify_all()
                if self._writer:
                    raise WriterBusy("Another appender is already open")
                raise WriterBusy("Timed out waiting for readers to finish")
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class _MemSeries:
    """Committed samples of one series, kept in timestamp order."""

    __slots__ = ("labels", "timestamps", "values")

    def __init__(self, labels: Labels):
        self.labels = labels
        self.timestamps: List[int] = []
        self.values: List[float] = []

    @property
    def max_time(self) -> Optional[int]:
        return self.timestamps[-1] if self.timestamps else None

    def value_at(self, timestamp_ms: int) -> Optional[float]:
        idx = bisect_left(self.timestamps, timestamp_ms)
        if idx < len(self.timestamps) and self.timestamps[idx] == timestamp_ms:
            return self.values[idx]
        return None

    def points(self, mint_ms: int, maxt_ms: int) -> List[Point]:
        lo = bisect_left(self.timestamps, mint_ms)
        hi = bisect_left(self.timestamps, maxt_ms)
        return [Point(t, v) for t, v in zip(self.timestamps[lo:hi], self.values[lo:hi])]


class Appender:
    """Write transaction: stage samples with ``add``, publish with ``commit``.

    The first validation error poisons the batch; ``commit`` then publishes
    nothing and raises that error. Used as a context manager the appender
    commits on a clean exit and rolls back when the block raises.
    """

    def __init__(self, storage: "MemoryStorage"):
        self._storage = storage
        self._staged: Dict[Labels, List[Tuple[int, float]]] = {}
        self._error: Optional[StorageError] = None
        self._closed = False

    def add(self, labels: Labels, timestamp_ms: int, value: float) -> SeriesRef:
        """Stage one sample and return the reference of its series."""
        if self._closed:
            raise StorageError("Appender is already committed or rolled back")

        try:
            stage = self._validate(labels, timestamp_ms, value)
        except StorageError as e:
            if self._error is None:
                self._error = e
            raise

        if stage:
            self._staged.setdefault(labels, []).append((timestamp_ms, value))
        return labels

    def _validate(self, labels: Labels, timestamp_ms: int, value: float) -> bool:
        """Raise on invalid samples; False means an exact duplicate to skip."""
        if not labels.has(METRIC_NAME):
            raise MissingNameLabel(f"Missing metric name ({METRIC_NAME} label) in {labels}")

        staged = self._staged.get(labels)
        if staged:
            last_t, last_v = staged[-1]
            if timestamp_ms == last_t:
                if _same_value(value, last_v):
                    return False
                raise Conflict(
                    f"Duplicate sample for {labels} at {timestamp_ms} with different value"
                )
            if timestamp_ms < last_t:
                raise OutOfOrderSample(f"Out of order sample for {labels} at {timestamp_ms}")

        series = self._storage._series.get(labels)
        if series is not None and series.max_time is not None and timestamp_ms <= series.max_time:
            existing = series.value_at(timestamp_ms)
            if existing is None:
                raise OutOfOrderSample(f"Out of order sample for {labels} at {timestamp_ms}")
            if not _same_value(existing, value):
                raise Conflict(
                    f"Sample for {labels} at {timestamp_ms} conflicts with stored value {existing}"
                )
            return False
        return True

    def commit(self) -> int:
        """Publish all staged samples atomically; returns the number published."""
        if self._closed:
            raise StorageError("Appender is already committed or rolled back")
        self._closed = True
        try:
            if self._error is not None:
                logger.warning(f"Discarding batch of {self.staged_count} samples: {self._error}")
                raise self._error
            return self._storage._apply(self._staged)
        finally:
            self._staged = {}
            self._storage._lock.release_write()

    def rollback(self):
        """Discard all staged samples."""
        if self._closed:
            return
        self._closed = True
        self._staged = {}
        self._storage._lock.release_write()

    @property
    def staged_count(self) -> int:
        return sum(len(points) for points in self._staged.values())

    def __enter__(self) -> "Appender":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False


class MemoryStorage:
    """Series keyed by label set, shared between one writer and many readers."""

    def __init__(self, read_timeout_s: Optional[float] = 10.0):
        self.read_timeout_s = read_timeout_s
        self._series: Dict[Labels, _MemSeries] = {}
        self._lock = _ReadWriteLock()
        self._closed = False

    def appender(self, timeout_s: Optional[float] = 0.0) -> Appender:
        """Open the write transaction, waiting up to ``timeout_s`` for the writer slot."""
        self._check_open()
        self._lock.acquire_write(timeout_s)
        return Appender(self)

    def query(self, matchers: Sequence[Matcher], mint_ms: int, maxt_ms: int) -> List[Series]:
        """Return series matching all ``matchers`` with samples in ``[mint_ms, maxt_ms)``."""
        self._check_open()
        self._lock.acquire_read(self.read_timeout_s)
        try:
            result = []
            for labels, series in self._series.items():
                if not all(m.matches_labels(labels) for m in matchers):
                    continue
                points = series.points(mint_ms, maxt_ms)
                if points:
                    result.append(Series(labels, points))
        finally:
            self._lock.release_read()

        result.sort(key=lambda s: s.labels)
        return result

    def series_count(self) -> int:
        return len(self._series)

    def sample_count(self) -> int:
        return sum(len(s.timestamps) for s in list(self._series.values()))

    def close(self):
        """Drop all series; the store cannot be used afterwards."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"Closing storage with {len(self._series)} series")
        self._series = {}

    def _check_open(self):
        if self._closed:
            raise StorageClosed("Storage is closed")

    def _apply(self, staged: Dict[Labels, List[Tuple[int, float]]]) -> int:
        count = 0
        for labels, points in staged.items():
            series = self._series.get(labels)
            if series is None:
                series = _MemSeries(labels)
                self._series[labels] = series
            for timestamp_ms, value in points:
                series.timestamps.append(timestamp_ms)
                series.values.append(value)
            count += len(points)
        logger.debug(f"Committed {count} samples across {len(staged)} series")
        return count
