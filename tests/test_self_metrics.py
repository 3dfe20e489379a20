"""Tests for the harness's own Prometheus metrics."""
from prometheus_client import CollectorRegistry

from perftest.config import SelfMetricsConfig
from perftest.self_metrics import SelfMetrics, start_self_metrics_server
from perftest.textparse import TEXT_CONTENT_TYPE, parse


def test_record_scrape_and_errors():
    metrics = SelfMetrics(prefix="perftest_")
    metrics.record_scrape(0.02, samples=10, series=4)
    metrics.record_scrape(0.03, samples=5, series=6)
    metrics.record_scrape_error("parse")

    registry = metrics.registry
    assert registry.get_sample_value("perftest_scrapes_total") == 2
    assert registry.get_sample_value("perftest_samples_ingested_total") == 15
    assert registry.get_sample_value("perftest_stored_series") == 6
    assert registry.get_sample_value("perftest_scrape_duration_seconds_count") == 2
    assert registry.get_sample_value("perftest_scrape_errors_total", {"stage": "parse"}) == 1


def test_record_request():
    metrics = SelfMetrics()
    metrics.record_request("galeb-test-0")
    metrics.record_request("galeb-test-0", error=True)

    assert metrics.registry.get_sample_value("loadgen_requests_total", {"vhost": "galeb-test-0"}) == 2
    assert metrics.registry.get_sample_value("loadgen_request_errors_total", {"vhost": "galeb-test-0"}) == 1


def test_render_is_parseable():
    """The harness can scrape itself."""
    metrics = SelfMetrics(registry=CollectorRegistry(), prefix="perftest_")
    metrics.record_scrape(0.01, samples=3, series=3)

    samples = parse(metrics.render(), TEXT_CONTENT_TYPE, 0)
    names = {s.labels.name for s in samples}
    assert "perftest_scrapes_total" in names
    assert "perftest_scrape_duration_seconds_bucket" in names


def test_server_disabled():
    assert start_self_metrics_server(SelfMetricsConfig(enabled=False), SelfMetrics()) is None
