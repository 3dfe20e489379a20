"""Main entry point for the performance test harness."""
import argparse
import logging
import sys
import threading
import signal
import time

from perftest.config import Config, load_config
from perftest.control_api import ControlAPI
from perftest.engine import ScrapeEngine, ScrapeTarget
from perftest.evaluator import QueryEngine
from perftest.loadgen import LoadGenerator
from perftest.report import Report
from perftest.self_metrics import SelfMetrics, start_self_metrics_server
from perftest.storage import MemoryStorage
from perftest.transport import CachingTransport


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        fmt = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Reduce noise from some libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Performance test harness - generate load and record the target's metrics"
    )
    parser.add_argument("--config", "-c", help="Path to configuration YAML file")
    parser.add_argument("--endpoint", help="Endpoint to send load to")
    parser.add_argument("--metrics", help="Metrics endpoint to scrape")
    parser.add_argument("--duration", type=float, help="Test duration in minutes")
    parser.add_argument("--vhosts", type=int, help="Number of virtual hosts")
    parser.add_argument("--parallel", type=int, help="Number of parallel load workers")
    parser.add_argument("--expression", help="Query expression evaluated after every scrape")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")
    return parser


def build_config(args: argparse.Namespace) -> Config:
    """Load the YAML configuration and apply command line overrides."""
    config = load_config(args.config)

    overrides = {
        ("load", "endpoint"): args.endpoint,
        ("scrape", "url"): args.metrics,
        ("load", "duration_min"): args.duration,
        ("load", "vhosts"): args.vhosts,
        ("load", "parallel"): args.parallel,
        ("scrape", "expression"): args.expression,
        ("global", "log_level"): args.log_level,
    }
    raw = config.model_dump(by_alias=True)
    for (section, key), value in overrides.items():
        if value is not None:
            raw[section][key] = value

    try:
        return Config(**raw)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")


def main(argv=None):
    """Main function."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = build_config(args)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if not config.scrape.url:
        print("Error loading configuration: a metrics URL is required (--metrics)", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config.global_.log_level, config.global_.log_format)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("Performance Test Harness")
    logger.info("=" * 60)
    logger.info(f"Configuration loaded from: {args.config or '<defaults>'}")
    logger.info(f"Metrics: {config.scrape.url} every {config.scrape.interval_s}s")
    logger.info(f"Load endpoint: {config.load.endpoint or '<none>'}")
    logger.info(f"Duration: {config.load.duration_min} minutes")

    storage = MemoryStorage(read_timeout_s=config.query.read_timeout_s)
    query_engine = QueryEngine(
        storage,
        max_samples=config.query.max_samples,
        lookback_delta_s=config.query.lookback_delta_s,
        timeout_s=config.query.timeout_s,
        default_step_s=config.report.step_s,
    )

    self_metrics = SelfMetrics(prefix=config.self_metrics.prefix)
    start_self_metrics_server(config.self_metrics, self_metrics)

    cancel = threading.Event()

    target = ScrapeTarget(config.scrape.url, timeout_s=config.scrape.timeout_s)
    scraper = ScrapeEngine(
        storage,
        query_engine,
        target,
        interval_s=config.scrape.interval_s,
        expression=config.scrape.expression,
        self_metrics=self_metrics,
        write_timeout_s=config.scrape.write_timeout_s,
        cancel=cancel,
    )

    transport = CachingTransport(
        max_idle_conns=config.load.max_idle_conns,
        max_conns_per_host=config.load.max_conns_per_host,
        idle_conn_timeout_s=config.load.idle_conn_timeout_s,
        dns_refresh_s=config.load.dns_refresh_s,
    )
    loadgen = None
    if config.load.endpoint:
        transport.start()
        loadgen = LoadGenerator(config.load, transport, cancel=cancel, self_metrics=self_metrics)
    else:
        logger.warning("No load endpoint configured, only scraping metrics")

    if config.global_.control_api_enabled:
        control_api = ControlAPI(storage, query_engine, scraper=scraper, loadgen=loadgen)
        threading.Thread(
            target=control_api.run,
            kwargs={"port": config.global_.control_api_port},
            name="control-api",
            daemon=True
        ).start()
        logger.info(f"Control API listening on port {config.global_.control_api_port}")

    # Setup signal handlers
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        cancel.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    scraper.start()
    if loadgen is not None:
        loadgen.start()

    deadline = time.time() + config.load.duration_min * 60
    while not cancel.wait(min(1.0, max(0.0, deadline - time.time()))):
        if time.time() >= deadline:
            logger.info("Test duration reached")
            break

    if loadgen is not None:
        loadgen.stop()
    scraper.stop(timeout=config.scrape.timeout_s + config.scrape.write_timeout_s)

    exit_code = 0
    if scraper.last_error is not None:
        logger.error(f"Scraper failed: {scraper.last_error}")
        exit_code = 1
    elif config.report.enabled:
        try:
            Report(
                query_engine,
                base_dir=config.report.base_dir,
                window_s=config.report.window_s,
                step_s=config.report.step_s,
            ).generate()
        except Exception as e:
            logger.error(f"Report generation failed: {e}", exc_info=True)
            exit_code = 1

    transport.close()
    target.close()
    storage.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
