"""Instant and range query evaluation against the in-memory store."""
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, List, Optional, Tuple, Union
import logging
import math
import operator
import time

from perftest.errors import EvaluationError, QueryTimeout, ResourceExceeded
from perftest.promql import (
    Aggregate,
    BinaryExpr,
    Call,
    Expr,
    MatrixSelector,
    NumberLiteral,
    VectorSelector,
    parse_expr,
)
from perftest.series import METRIC_NAME, Labels, Point, Series
from perftest.storage import MemoryStorage

logger = logging.getLogger(__name__)

MAX_POINTS_PER_SERIES = 11000

_COMPARISONS: Dict[str, Callable[[float, float], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


def now_ms() -> int:
    return int(time.time() * 1000)


def check_unique_labels(vector: List["VectorElement"]):
    """Dropping ``__name__`` can collapse distinct series onto one label set."""
    seen = set()
    for element in vector:
        if element.labels in seen:
            raise EvaluationError("vector cannot contain metrics with the same labelset")
        seen.add(element.labels)


@dataclass(frozen=True)
class VectorElement:
    """One series' value at the evaluation timestamp."""
    labels: Labels
    point: Point


@dataclass
class InstantResult:
    """Result of an instant query: one element per series."""
    result_type: ClassVar[str] = "vector"
    timestamp_ms: int
    vector: List[VectorElement] = field(default_factory=list)


@dataclass
class RangeResult:
    """Result of a range query: one time-ordered series per label set."""
    result_type: ClassVar[str] = "matrix"
    start_ms: int
    end_ms: int
    step_ms: int
    matrix: List[Series] = field(default_factory=list)


QueryResult = Union[InstantResult, RangeResult]

Vector = List[VectorElement]


def arithmetic(op: str, a: float, b: float) -> float:
    """Apply an arithmetic operator with IEEE-754 semantics for x/0 and x%0."""
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            if a == 0 or math.isnan(a):
                return math.nan
            return math.copysign(math.inf, a) * math.copysign(1.0, b)
        return a / b
    if op == "%":
        if b == 0 or math.isinf(a) or math.isnan(b):
            return math.nan
        return math.fmod(a, b)
    raise EvaluationError(f"Unsupported operator: {op!r}")


def extrapolated_rate(points: List[Point], range_start_ms: int, range_end_ms: int) -> Optional[float]:
    """Per-second increase of a counter over a window, compensating for resets.

    Each reset (a value lower than its predecessor) adds the pre-reset value
    back into the total. The increase is extrapolated towards the window
    boundaries when the first/last samples are close enough to them, and
    never extrapolated below zero.
    """
    if len(points) < 2:
        return None

    first, last = points[0], points[-1]
    result = last.v - first.v
    previous = first.v
    for p in points[1:]:
        if p.v < previous:
            result += previous
        previous = p.v

    duration_to_start = (first.t - range_start_ms) / 1000.0
    duration_to_end = (range_end_ms - last.t) / 1000.0
    sampled_interval = (last.t - first.t) / 1000.0
    average_between_samples = sampled_interval / (len(points) - 1)

    if result > 0 and first.v >= 0:
        duration_to_zero = sampled_interval * (first.v / result)
        if duration_to_zero < duration_to_start:
            duration_to_start = duration_to_zero

    threshold = average_between_samples * 1.1
    extrapolate_to = sampled_interval
    extrapolate_to += duration_to_start if duration_to_start < threshold else average_between_samples / 2
    extrapolate_to += duration_to_end if duration_to_end < threshold else average_between_samples / 2

    result *= extrapolate_to / sampled_interval
    return result / ((range_end_ms - range_start_ms) / 1000.0)


class _CachedSeries:
    __slots__ = ("labels", "timestamps", "values")

    def __init__(self, series: Series):
        self.labels = series.labels
        self.timestamps = [p.t for p in series.points]
        self.values = [p.v for p in series.points]


class _Evaluation:
    """State of a single query: selector cache, sample budget and deadline."""

    def __init__(self, engine: "QueryEngine", start_ms: int, end_ms: int):
        self.engine = engine
        self.start_ms = start_ms
        self.end_ms = end_ms
        self.deadline = time.monotonic() + engine.timeout_s if engine.timeout_s else None
        self.samples_loaded = 0
        self._cache: Dict[int, List[_CachedSeries]] = {}

    def check_deadline(self):
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise QueryTimeout(f"Query timed out after {self.engine.timeout_s}s")

    def _select(self, selector: VectorSelector, window_ms: int) -> List[_CachedSeries]:
        key = id(selector)
        if key not in self._cache:
            series = self.engine.storage.query(
                selector.matchers, self.start_ms - window_ms, self.end_ms + 1
            )
            self.samples_loaded += sum(len(s.points) for s in series)
            if self.samples_loaded > self.engine.max_samples:
                raise ResourceExceeded(
                    f"Query loaded {self.samples_loaded} samples, "
                    f"exceeding the limit of {self.engine.max_samples}"
                )
            self._cache[key] = [_CachedSeries(s) for s in series]
        return self._cache[key]

    def eval(self, node: Expr, t: int) -> Union[float, Vector]:
        if isinstance(node, NumberLiteral):
            return node.value
        if isinstance(node, VectorSelector):
            return self._eval_selector(node, t)
        if isinstance(node, Call):
            return self._eval_rate(node, t)
        if isinstance(node, Aggregate):
            return self._eval_aggregate(node, t)
        if isinstance(node, BinaryExpr):
            return self._eval_binary(node, t)
        if isinstance(node, MatrixSelector):
            raise EvaluationError(f"Range vector {node} must be wrapped in a function")
        raise EvaluationError(f"Unsupported expression: {node}")

    def _eval_selector(self, node: VectorSelector, t: int) -> Vector:
        lookback = self.engine.lookback_delta_ms
        out: Vector = []
        for s in self._select(node, lookback):
            idx = bisect_right(s.timestamps, t) - 1
            if idx < 0 or s.timestamps[idx] <= t - lookback:
                continue
            out.append(VectorElement(s.labels, Point(t, s.values[idx])))
        return out

    def _eval_rate(self, node: Call, t: int) -> Vector:
        if node.func != "rate":
            raise EvaluationError(f"Unknown function: {node.func!r}")
        matrix = node.args[0]
        window_start = t - matrix.range_ms
        out: Vector = []
        for s in self._select(matrix.vector, matrix.range_ms):
            lo = bisect_left(s.timestamps, window_start)
            hi = bisect_right(s.timestamps, t)
            points = [Point(ts, v) for ts, v in zip(s.timestamps[lo:hi], s.values[lo:hi])]
            value = extrapolated_rate(points, window_start, t)
            if value is not None:
                out.append(VectorElement(s.labels.without(METRIC_NAME), Point(t, value)))
        return out

    def _eval_aggregate(self, node: Aggregate, t: int) -> Vector:
        groups: Dict[Tuple[str, ...], List[float]] = {}
        for element in self.eval(node.expr, t):
            key = tuple(element.labels.get(name) for name in node.grouping)
            groups.setdefault(key, []).append(element.point.v)

        out: Vector = []
        for key, values in groups.items():
            labels = Labels.from_pairs(zip(node.grouping, key))
            value = float(len(values)) if node.op == "count" else sum(values)
            out.append(VectorElement(labels, Point(t, value)))
        out.sort(key=lambda e: e.labels)
        return out

    def _eval_binary(self, node: BinaryExpr, t: int) -> Union[float, Vector]:
        lhs = self.eval(node.lhs, t)
        rhs = self.eval(node.rhs, t)
        compare = _COMPARISONS.get(node.op)

        if isinstance(lhs, float) and isinstance(rhs, float):
            return arithmetic(node.op, lhs, rhs)

        if isinstance(lhs, float) or isinstance(rhs, float):
            out: Vector = []
            vector = rhs if isinstance(lhs, float) else lhs
            for element in vector:
                a = lhs if isinstance(lhs, float) else element.point.v
                b = rhs if isinstance(rhs, float) else element.point.v
                if compare is not None:
                    if compare(a, b):
                        out.append(element)
                else:
                    out.append(VectorElement(
                        element.labels.without(METRIC_NAME), Point(t, arithmetic(node.op, a, b))
                    ))
            return out

        right: Dict[Labels, VectorElement] = {}
        for element in rhs:
            signature = element.labels.without(METRIC_NAME)
            if signature in right:
                raise EvaluationError(
                    f"Found duplicate series for the match group {signature} on the right hand-side "
                    f"of {node.op!r}; many-to-many matching not allowed"
                )
            right[signature] = element

        out = []
        seen = set()
        for element in lhs:
            signature = element.labels.without(METRIC_NAME)
            match = right.get(signature)
            if match is None:
                continue
            if signature in seen:
                raise EvaluationError(
                    f"Multiple matches for labels {signature} on the left hand-side of {node.op!r}"
                )
            seen.add(signature)
            if compare is not None:
                if compare(element.point.v, match.point.v):
                    out.append(element)
            else:
                value = arithmetic(node.op, element.point.v, match.point.v)
                out.append(VectorElement(signature, Point(t, value)))
        return out


class QueryEngine:
    """Evaluates query expressions against a ``MemoryStorage``."""

    def __init__(
        self,
        storage: MemoryStorage,
        max_samples: int = 50_000_000,
        lookback_delta_s: float = 300.0,
        timeout_s: Optional[float] = 10.0,
        default_step_s: float = 15.0,
    ):
        self.storage = storage
        self.max_samples = max_samples
        self.lookback_delta_ms = int(lookback_delta_s * 1000)
        self.timeout_s = timeout_s
        self.default_step_s = default_step_s

    @staticmethod
    def _parse_vector_expr(expr: str) -> Expr:
        node = parse_expr(expr)
        if node.value_type != "vector":
            raise EvaluationError(
                f"Expression must evaluate to an instant vector, got {node.value_type}: {expr}"
            )
        return node

    def instant_query(self, expr: str, at_ms: Optional[int] = None) -> InstantResult:
        """Evaluate ``expr`` at a single timestamp (default: now)."""
        node = self._parse_vector_expr(expr)
        t = now_ms() if at_ms is None else at_ms
        started = time.monotonic()

        evaluation = _Evaluation(self, t, t)
        vector = evaluation.eval(node, t)
        evaluation.check_deadline()
        check_unique_labels(vector)
        if len(vector) > self.max_samples:
            raise ResourceExceeded(f"Query result has {len(vector)} samples, limit is {self.max_samples}")

        logger.debug(
            f"Instant query {expr!r} at {t}: {len(vector)} series "
            f"in {time.monotonic() - started:.3f}s"
        )
        return InstantResult(t, vector)

    def range_query(self, expr: str, start_ms: int, end_ms: int, step_ms: int) -> RangeResult:
        """Evaluate ``expr`` at every step from ``start_ms`` to ``end_ms`` inclusive."""
        if step_ms <= 0:
            raise EvaluationError("Zero or negative query resolution step widths are not accepted")
        if end_ms < start_ms:
            raise EvaluationError("End timestamp must not be before start time")
        if (end_ms - start_ms) // step_ms + 1 > MAX_POINTS_PER_SERIES:
            raise EvaluationError(
                f"Exceeded maximum resolution of {MAX_POINTS_PER_SERIES} points per timeseries"
            )

        node = self._parse_vector_expr(expr)
        started = time.monotonic()
        evaluation = _Evaluation(self, start_ms, end_ms)

        by_labels: Dict[Labels, Series] = {}
        total_points = 0
        for t in range(start_ms, end_ms + 1, step_ms):
            evaluation.check_deadline()
            vector = evaluation.eval(node, t)
            check_unique_labels(vector)
            total_points += len(vector)
            if total_points > self.max_samples:
                raise ResourceExceeded(
                    f"Query result has more than {self.max_samples} samples"
                )
            for element in vector:
                series = by_labels.get(element.labels)
                if series is None:
                    series = by_labels[element.labels] = Series(element.labels)
                series.points.append(element.point)

        matrix = sorted(by_labels.values(), key=lambda s: s.labels)
        logger.debug(
            f"Range query {expr!r} [{start_ms}, {end_ms}] step {step_ms}ms: "
            f"{len(matrix)} series, {total_points} points in {time.monotonic() - started:.3f}s"
        )
        return RangeResult(start_ms, end_ms, step_ms, matrix)

    def range_query_window(self, expr: str, window_s: float, step_s: Optional[float] = None) -> RangeResult:
        """Range query over the trailing ``window_s`` seconds ending now."""
        end = now_ms()
        start = end - int(window_s * 1000)
        step = int((step_s or self.default_step_s) * 1000)
        return self.range_query(expr, start, end, step)
