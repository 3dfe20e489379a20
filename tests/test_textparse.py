"""Tests for the exposition format parser."""
import math

import pytest
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from perftest.errors import ParseError
from perftest.series import Labels
from perftest.textparse import (
    OPENMETRICS_CONTENT_TYPE,
    PROTOBUF_CONTENT_TYPE,
    TEXT_CONTENT_TYPE,
    ExpositionParser,
    parse,
)

NOW_MS = 1_700_000_000_000

PAYLOAD = b"""# HELP http_requests_total The total number of HTTP requests.
# TYPE http_requests_total counter
http_requests_total{method="post",code="200"} 1027 1395066363000
http_requests_total{method="post",code="400"}    3 1395066363000

# A normal comment.
msdos_file_access_time_seconds{path="C:\\\\DIR\\\\FILE.TXT",error="Cannot find file:\\n\\"FILE.TXT\\""} 1.458255915e9
metric_without_timestamp_and_labels 12.47
something_weird{problem="division by zero"} +Inf -3982045
"""


def test_parse_text_format():
    """Names, labels, escapes, values and explicit timestamps are decoded."""
    samples = parse(PAYLOAD, TEXT_CONTENT_TYPE, NOW_MS)

    assert len(samples) == 5

    first = samples[0]
    assert first.labels == Labels.from_dict(
        {"__name__": "http_requests_total", "method": "post", "code": "200"}
    )
    assert first.value == 1027
    assert first.timestamp_ms == 1395066363000

    escaped = samples[2]
    assert escaped.labels.get("path") == "C:\\DIR\\FILE.TXT"
    assert escaped.labels.get("error") == 'Cannot find file:\n"FILE.TXT"'
    assert escaped.value == 1.458255915e9
    assert escaped.timestamp_ms == NOW_MS

    assert samples[3].labels.name == "metric_without_timestamp_and_labels"
    assert samples[3].timestamp_ms == NOW_MS

    assert samples[4].value == math.inf
    assert samples[4].timestamp_ms == -3982045


def test_parse_is_deterministic():
    """Parsing the same payload twice yields identical samples."""
    assert parse(PAYLOAD, TEXT_CONTENT_TYPE, NOW_MS) == parse(PAYLOAD, TEXT_CONTENT_TYPE, NOW_MS)


def test_metadata_recorded():
    parser = ExpositionParser(TEXT_CONTENT_TYPE)
    parser.parse(PAYLOAD, NOW_MS)

    meta = parser.metadata["http_requests_total"]
    assert meta.type == "counter"
    assert meta.help == "The total number of HTTP requests."


def test_special_values():
    payload = b'a{x="1"} +Inf\na{x="2"} -Inf\na{x="3"} NaN\na{x="4"} -0.5e-3\n'
    values = [s.value for s in parse(payload, TEXT_CONTENT_TYPE, NOW_MS)]

    assert values[0] == math.inf
    assert values[1] == -math.inf
    assert math.isnan(values[2])
    assert values[3] == -0.0005


def test_trailing_comma_and_empty_label_value():
    samples = parse(b'up{job="api",instance="",} 1\n', TEXT_CONTENT_TYPE, NOW_MS)

    assert samples[0].labels == Labels.from_dict({"__name__": "up", "job": "api"})


def test_name_inside_braces():
    samples = parse(b'{__name__="up",job="api"} 1\n', TEXT_CONTENT_TYPE, NOW_MS)

    assert samples[0].labels.name == "up"


def test_openmetrics_timestamps_and_eof():
    """OpenMetrics timestamps are seconds; exemplars are ignored."""
    payload = (
        b"# TYPE foo counter\n"
        b"# UNIT foo seconds\n"
        b'foo_total{a="b"} 17.0 1520879607.789 # {trace_id="KOO5S4vxi0o"} 0.67\n'
        b"# EOF\n"
    )
    parser = ExpositionParser(f"{OPENMETRICS_CONTENT_TYPE}; version=1.0.0; charset=utf-8")
    samples = parser.parse(payload, NOW_MS)

    assert len(samples) == 1
    assert samples[0].value == 17.0
    assert samples[0].timestamp_ms == 1520879607789
    assert parser.metadata["foo"].unit == "seconds"


def test_data_after_eof_rejected():
    payload = b"# TYPE foo gauge\nfoo 1\n# EOF\nfoo 2\n"

    with pytest.raises(ParseError) as excinfo:
        parse(payload, OPENMETRICS_CONTENT_TYPE, NOW_MS)
    assert excinfo.value.line_no == 4


@pytest.mark.parametrize("line", [
    b'{job="api"} 1',                 # no metric name
    b'up{job="a",job="b"} 1',          # duplicate label
    b"up one",                         # bad value
    b"up 1 2 3",                       # too many fields
    b"up 1 1.5",                       # fractional ms timestamp
    b'up{job="api} 1',                 # unterminated value
    b"up{job=api} 1",                  # unquoted value
    b"up",                             # no value
    b"# TYPE up sometype",             # unknown type
])
def test_malformed_lines_rejected(line):
    with pytest.raises(ParseError):
        parse(b"ok 1\n" + line + b"\n", TEXT_CONTENT_TYPE, NOW_MS)


def test_error_reports_line_number():
    with pytest.raises(ParseError) as excinfo:
        parse(b"ok 1\nok 2\nbroken{\n", TEXT_CONTENT_TYPE, NOW_MS)

    assert excinfo.value.line_no == 3
    assert "line 3" in str(excinfo.value)


def test_protobuf_rejected():
    with pytest.raises(ParseError):
        ExpositionParser(f"{PROTOBUF_CONTENT_TYPE}; proto=io.prometheus.client.MetricFamily")


def test_invalid_utf8_rejected():
    with pytest.raises(ParseError):
        parse(b'up{job="\xff"} 1\n', TEXT_CONTENT_TYPE, NOW_MS)


def test_prometheus_client_output():
    """Output of the reference client library parses cleanly."""
    registry = CollectorRegistry()
    requests = Counter("requests", "Requests", ["vhost"], registry=registry)
    requests.labels(vhost="a").inc(5)
    requests.labels(vhost="b").inc(7)
    Gauge("open_fds", "Open fds", registry=registry).set(42)

    samples = parse(generate_latest(registry), TEXT_CONTENT_TYPE, NOW_MS)
    by_labels = {str(s.labels): s.value for s in samples}

    assert by_labels['requests_total{vhost="a"}'] == 5
    assert by_labels['requests_total{vhost="b"}'] == 7
    assert by_labels["open_fds"] == 42
    assert all(s.timestamp_ms == NOW_MS for s in samples)
