"""Self-monitoring metrics for the harness using prometheus_client."""
from typing import Optional
from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, start_http_server, generate_latest
)
import logging

from perftest.config import SelfMetricsConfig

logger = logging.getLogger(__name__)


class SelfMetrics:
    """Counters describing scrape, ingestion and load generation activity."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, prefix: str = ""):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.scrapes_total = Counter(
            f"{prefix}scrapes_total",
            "Total number of completed scrape ticks",
            registry=registry
        )

        self.scrape_errors_total = Counter(
            f"{prefix}scrape_errors_total",
            "Total number of failed scrape ticks by stage",
            ["stage"],
            registry=registry
        )

        self.samples_ingested_total = Counter(
            f"{prefix}samples_ingested_total",
            "Total number of samples committed to the store",
            registry=registry
        )

        self.scrape_duration_seconds = Histogram(
            f"{prefix}scrape_duration_seconds",
            "Duration of each scrape tick in seconds",
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry
        )

        self.stored_series = Gauge(
            f"{prefix}stored_series",
            "Number of series held in the store",
            registry=registry
        )

        self.requests_total = Counter(
            f"{prefix}loadgen_requests_total",
            "Total number of load generator requests sent",
            ["vhost"],
            registry=registry
        )

        self.request_errors_total = Counter(
            f"{prefix}loadgen_request_errors_total",
            "Total number of load generator requests that failed",
            ["vhost"],
            registry=registry
        )

    def record_scrape(self, duration: float, samples: int, series: int):
        """Record a successful scrape tick."""
        self.scrapes_total.inc()
        self.scrape_duration_seconds.observe(duration)
        self.samples_ingested_total.inc(samples)
        self.stored_series.set(series)

    def record_scrape_error(self, stage: str):
        """Record a failed scrape tick."""
        self.scrape_errors_total.labels(stage=stage).inc()

    def record_request(self, vhost: str, error: bool = False):
        """Record a load generator request."""
        self.requests_total.labels(vhost=vhost).inc()
        if error:
            self.request_errors_total.labels(vhost=vhost).inc()

    def render(self) -> bytes:
        """Current metrics in the text exposition format."""
        return generate_latest(self.registry)


def start_self_metrics_server(config: SelfMetricsConfig, metrics: SelfMetrics):
    """Serve ``metrics`` on ``/metrics`` when enabled."""
    if not config.enabled:
        logger.info("Self-metrics endpoint disabled")
        return
    try:
        start_http_server(
            config.port,
            addr=config.bind_address,
            registry=metrics.registry
        )
        logger.info(
            f"Self-metrics listening on "
            f"{config.bind_address}:{config.port}/metrics"
        )
    except Exception as e:
        logger.error(f"Failed to start self-metrics HTTP server: {e}")
        raise
