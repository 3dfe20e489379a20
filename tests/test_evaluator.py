"""Tests for instant and range query evaluation."""
import math

import pytest

import perftest.evaluator as evaluator
from perftest.errors import EvaluationError, QueryTimeout, ResourceExceeded
from perftest.evaluator import (
    InstantResult,
    QueryEngine,
    RangeResult,
    arithmetic,
    extrapolated_rate,
)
from perftest.series import Labels, Point
from perftest.storage import MemoryStorage
from perftest.textparse import TEXT_CONTENT_TYPE, parse


def labels(name, **kwargs):
    return Labels.from_dict({"__name__": name, **kwargs})


def make_engine(samples, **kwargs):
    """Store ``(labels, t, v)`` tuples and return a query engine over them."""
    storage = MemoryStorage()
    with storage.appender() as app:
        for lbls, t, v in sorted(samples, key=lambda s: s[1]):
            app.add(lbls, t, v)
    return QueryEngine(storage, **kwargs)


def values_by(result, label):
    return {e.labels.get(label): e.point.v for e in result.vector}


def test_rate_monotonic_counter():
    """[10@t0, 25@t1, 40@t2] over [t0, t2] is (40 - 10) / (t2 - t0)."""
    points = [Point(0, 10), Point(10_000, 25), Point(20_000, 40)]

    assert extrapolated_rate(points, 0, 20_000) == pytest.approx(30 / 20)


def test_rate_counter_reset():
    """A drop from 10 to 3 counts as a reset: corrected 13 minus the first 10."""
    points = [Point(0, 10), Point(10_000, 3)]

    value = extrapolated_rate(points, 0, 10_000)
    assert value >= 0
    assert value == pytest.approx(3 / 10)


def test_rate_needs_two_points():
    assert extrapolated_rate([Point(0, 10)], 0, 10_000) is None


def test_rate_extrapolates_to_window_edges():
    # Samples every 10s well inside a 60s window: extrapolate half an interval each side
    points = [Point(t, t / 1000) for t in range(20_000, 50_000, 10_000)]

    value = extrapolated_rate(points, 0, 60_000)
    assert value == pytest.approx(20 * (30 / 20) / 60)


def test_rate_query():
    c = labels("requests_total", vhost="a")
    engine = make_engine([(c, 0, 10), (c, 10_000, 25), (c, 20_000, 40)])

    result = engine.instant_query("rate(requests_total[20s])", at_ms=20_000)

    assert isinstance(result, InstantResult)
    assert result.result_type == "vector"
    assert len(result.vector) == 1
    element = result.vector[0]
    assert element.labels == Labels.from_dict({"vhost": "a"})
    assert element.point == Point(20_000, pytest.approx(1.5))


def test_sum_by():
    """Two series share label=x and one has label=y: exactly two sums."""
    engine = make_engine([
        (labels("m", label="x", instance="1"), 1000, 1),
        (labels("m", label="x", instance="2"), 1000, 2),
        (labels("m", label="y", instance="1"), 1000, 4),
    ])

    result = engine.instant_query("sum(m) by (label)", at_ms=1000)

    assert [e.labels for e in result.vector] == [
        Labels.from_dict({"label": "x"}),
        Labels.from_dict({"label": "y"}),
    ]
    assert values_by(result, "label") == {"x": 3, "y": 4}


def test_sum_and_count_without_grouping():
    engine = make_engine([
        (labels("m", instance="1"), 1000, 1),
        (labels("m", instance="2"), 1000, 2),
    ])

    total = engine.instant_query("sum(m)", at_ms=1000).vector
    assert len(total) == 1
    assert total[0].labels == Labels()
    assert total[0].point.v == 3

    count = engine.instant_query("count(m)", at_ms=1000).vector
    assert count[0].point.v == 2


def test_end_to_end_payload():
    """Ingest an exposition payload and aggregate it by label."""
    payload = b'requests_total{vhost="a"} 5\nrequests_total{vhost="b"} 7\n'
    storage = MemoryStorage()
    with storage.appender() as app:
        for sample in parse(payload, TEXT_CONTENT_TYPE, 60_000):
            app.add(sample.labels, sample.timestamp_ms, sample.value)

    result = QueryEngine(storage).instant_query("sum(requests_total) by (vhost)", at_ms=60_000)

    assert len(result.vector) == 2
    assert values_by(result, "vhost") == {"a": 5, "b": 7}


def test_range_query_constant_value():
    """Three ticks with a constant value give three equal points per series."""
    g = labels("jvm_memory_bytes_used", area="heap")
    engine = make_engine([(g, t, 42.0) for t in (0, 10_000, 20_000)])

    result = engine.range_query("jvm_memory_bytes_used", 0, 20_000, 10_000)

    assert isinstance(result, RangeResult)
    assert result.result_type == "matrix"
    assert len(result.matrix) == 1
    series = result.matrix[0]
    assert series.labels == g
    assert [p.t for p in series.points] == [0, 10_000, 20_000]
    assert [p.v for p in series.points] == [42.0, 42.0, 42.0]


def test_lookback_window():
    engine = make_engine([(labels("up"), 0, 1)])

    assert len(engine.instant_query("up", at_ms=299_999).vector) == 1
    assert engine.instant_query("up", at_ms=300_000).vector == []
    # Samples after the evaluation time are not visible
    assert engine.instant_query("up", at_ms=-1).vector == []


def test_instant_query_uses_latest_sample():
    engine = make_engine([(labels("up"), 0, 1), (labels("up"), 10_000, 2)])

    result = engine.instant_query("up", at_ms=15_000)
    assert result.vector[0].point == Point(15_000, 2)


def test_comparison_filters_nan():
    """used / max >= 0 keeps real ratios and drops NaN ones."""
    engine = make_engine([
        (labels("jvm_memory_bytes_used", area="heap"), 1000, 50),
        (labels("jvm_memory_bytes_max", area="heap"), 1000, 200),
        (labels("jvm_memory_bytes_used", area="nonheap"), 1000, 0),
        (labels("jvm_memory_bytes_max", area="nonheap"), 1000, 0),
    ])

    result = engine.instant_query("jvm_memory_bytes_used / jvm_memory_bytes_max >= 0", at_ms=1000)

    assert len(result.vector) == 1
    assert result.vector[0].labels == Labels.from_dict({"area": "heap"})
    assert result.vector[0].point.v == 0.25


def test_comparison_keeps_metric_name():
    engine = make_engine([
        (labels("up", job="a"), 1000, 0),
        (labels("up", job="b"), 1000, 1),
    ])

    result = engine.instant_query("up > 0", at_ms=1000)
    assert [e.labels for e in result.vector] == [labels("up", job="b")]

    result = engine.instant_query("1 > up", at_ms=1000)
    assert [e.labels for e in result.vector] == [labels("up", job="a")]


def test_scalar_arithmetic_drops_metric_name():
    engine = make_engine([(labels("up", job="a"), 1000, 3)])

    result = engine.instant_query("up * 2 + 1", at_ms=1000)

    assert result.vector[0].labels == Labels.from_dict({"job": "a"})
    assert result.vector[0].point.v == 7


def test_vector_matching_on_labels():
    engine = make_engine([
        (labels("a", job="x"), 1000, 6),
        (labels("a", job="y"), 1000, 8),
        (labels("b", job="x"), 1000, 2),
    ])

    result = engine.instant_query("a / b", at_ms=1000)

    assert len(result.vector) == 1
    assert result.vector[0].labels == Labels.from_dict({"job": "x"})
    assert result.vector[0].point.v == 3


def test_vector_matching_duplicates_rejected():
    engine = make_engine([
        (labels("a", job="x"), 1000, 1),
        (labels("b", job="x"), 1000, 1),
        (labels("c", job="x"), 1000, 1),
    ])

    with pytest.raises(EvaluationError):
        engine.instant_query('{__name__=~"a|b"} + c', at_ms=1000)
    with pytest.raises(EvaluationError):
        engine.instant_query('c + {__name__=~"a|b"}', at_ms=1000)


@pytest.mark.parametrize("op,a,b,expected", [
    ("+", 1, 2, 3),
    ("-", 1, 2, -1),
    ("*", 3, 2, 6),
    ("/", 1, 0, math.inf),
    ("/", -1, 0, -math.inf),
    ("%", -5, 3, -2),
])
def test_arithmetic(op, a, b, expected):
    assert arithmetic(op, a, b) == expected


@pytest.mark.parametrize("op,a,b", [("/", 0, 0), ("%", 5, 0), ("%", math.inf, 2)])
def test_arithmetic_nan(op, a, b):
    assert math.isnan(arithmetic(op, a, b))


@pytest.mark.parametrize("expr", ["1 + 1", "up[5m]", "foo(up)"])
def test_non_vector_or_invalid_expressions_rejected(expr):
    engine = make_engine([(labels("up"), 1000, 1)])

    with pytest.raises(EvaluationError):
        engine.instant_query(expr, at_ms=1000)


def test_sample_budget():
    up = labels("up")
    engine = make_engine([(up, t, 1) for t in (1000, 2000, 3000)], max_samples=2)

    with pytest.raises(ResourceExceeded):
        engine.instant_query("rate(up[10s])", at_ms=3000)


def test_range_query_validation():
    engine = make_engine([(labels("up"), 1000, 1)])

    with pytest.raises(EvaluationError):
        engine.range_query("up", 0, 1000, 0)
    with pytest.raises(EvaluationError):
        engine.range_query("up", 1000, 0, 100)
    with pytest.raises(EvaluationError):
        engine.range_query("up", 0, 11_000_000, 1)


class SteppingClock:
    """Each monotonic reading advances one second."""

    def __init__(self):
        self.now = 0.0

    def monotonic(self):
        self.now += 1.0
        return self.now

    def time(self):
        return 100.0


def test_range_query_timeout(monkeypatch):
    monkeypatch.setattr(evaluator, "time", SteppingClock())
    engine = make_engine([(labels("up"), 1000, 1)], timeout_s=3.0)

    with pytest.raises(QueryTimeout):
        engine.range_query("up", 0, 100_000, 1000)


def test_instant_query_timeout(monkeypatch):
    monkeypatch.setattr(evaluator, "time", SteppingClock())
    engine = make_engine([(labels("up"), 1000, 1)], timeout_s=0.5)

    with pytest.raises(QueryTimeout):
        engine.instant_query("up", at_ms=1000)


def test_range_query_rate_over_counter():
    c = labels("galeb_http_requests_total", virtualhost="galeb-test-0")
    engine = make_engine([(c, t, t / 1000) for t in range(0, 130_000, 10_000)])

    result = engine.range_query(
        "sum(rate(galeb_http_requests_total[1m])) by (virtualhost)", 60_000, 120_000, 30_000
    )

    assert len(result.matrix) == 1
    series = result.matrix[0]
    assert series.labels == Labels.from_dict({"virtualhost": "galeb-test-0"})
    assert [p.v for p in series.points] == pytest.approx([1.0, 1.0, 1.0])


def test_dropping_metric_name_must_not_merge_series():
    engine = make_engine(
        [(labels(name, job="j"), t, t / 1000) for name in ("x_total", "y_total") for t in (0, 30_000, 60_000)]
    )
    expr = 'rate({__name__=~"x_total|y_total"}[1m])'

    with pytest.raises(EvaluationError, match="same labelset"):
        engine.instant_query(expr, at_ms=60_000)
    with pytest.raises(EvaluationError, match="same labelset"):
        engine.range_query(expr, 60_000, 60_000, 1000)
    with pytest.raises(EvaluationError, match="same labelset"):
        engine.range_query('{__name__=~"x_total|y_total"} * 2', 0, 60_000, 30_000)

    # Aggregating over the collapsed label set is fine
    result = engine.instant_query('sum(rate({__name__=~"x_total|y_total"}[1m])) by (job)', at_ms=60_000)
    assert len(result.vector) == 1


def test_repeated_grouping_label():
    engine = make_engine([
        (labels("m", vhost="a"), 1000, 1),
        (labels("m", vhost="a", code="500"), 1000, 2),
        (labels("m", vhost="b"), 1000, 4),
    ])

    result = engine.instant_query("sum(m) by (vhost, vhost)", at_ms=1000)

    assert values_by(result, "vhost") == {"a": 3, "b": 4}
