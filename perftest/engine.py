"""Scrape scheduler: fetch, parse, commit and optionally query on a fixed interval."""
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
import logging
import threading
import time

import httpx

from perftest.errors import FetchError, PerftestError
from perftest.evaluator import InstantResult, QueryEngine
from perftest.self_metrics import SelfMetrics
from perftest.storage import MemoryStorage
from perftest.textparse import parse

logger = logging.getLogger(__name__)

ACCEPT_HEADER = (
    "application/openmetrics-text;version=1.0.0;q=0.5,"
    "text/plain;version=0.0.4;q=0.4,*/*;q=0.1"
)


class ScrapeState(str, Enum):
    """Scheduler states; STOPPED is terminal."""
    IDLE = "idle"
    SCRAPING = "scraping"
    INGESTING = "ingesting"
    QUERYING = "querying"
    STOPPED = "stopped"


class ScrapeTarget:
    """Fetches the metrics payload over HTTP(S)."""

    def __init__(self, url: str, timeout_s: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout_s = timeout_s
        self._client = client or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def fetch(self) -> Tuple[bytes, str]:
        """Return the payload and its declared content type."""
        try:
            response = self._client.get(
                self.url,
                headers={"Accept": ACCEPT_HEADER},
                timeout=self.timeout_s
            )
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out fetching {self.url} after {self.timeout_s}s: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Could not get URL: {self.url}, err={e}") from e

        if not response.is_success:
            raise FetchError(f"Could not get URL: {self.url}, statusCode={response.status_code}")

        return response.content, response.headers.get("content-type", "")

    def close(self):
        self._client.close()


def log_result(result: InstantResult):
    """Default result sink: log each element of the vector."""
    for element in result.vector:
        logger.info(f"{element.labels} {element.point.v}")


class ScrapeEngine:
    """Periodic scrape loop owning the store's single writer.

    Every failure (fetch, parse, storage or query) is fatal: the loop stops,
    records ``last_error``, sets the cancellation event and re-raises.
    """

    def __init__(
        self,
        storage: MemoryStorage,
        query_engine: QueryEngine,
        target: ScrapeTarget,
        interval_s: float = 10.0,
        expression: Optional[str] = None,
        on_result: Callable[[InstantResult], None] = log_result,
        self_metrics: Optional[SelfMetrics] = None,
        write_timeout_s: float = 10.0,
        cancel: Optional[threading.Event] = None,
    ):
        self.storage = storage
        self.query_engine = query_engine
        self.target = target
        self.interval_s = interval_s
        self.expression = expression
        self.on_result = on_result
        self.self_metrics = self_metrics
        self.write_timeout_s = write_timeout_s

        self.state = ScrapeState.IDLE
        self.tick_count = 0
        self.samples_ingested = 0
        self.last_scrape_duration: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        self.start_time = time.time()

        self._cancel = cancel or threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def tick(self):
        """Execute one scrape: fetch, parse, commit, then run the expression."""
        tick_start = time.time()
        stage = "fetch"
        try:
            self.state = ScrapeState.SCRAPING
            payload, content_type = self.target.fetch()

            stage = "parse"
            self.state = ScrapeState.INGESTING
            samples = parse(payload, content_type, int(tick_start * 1000))

            stage = "commit"
            with self.storage.appender(self.write_timeout_s) as appender:
                for sample in samples:
                    appender.add(sample.labels, sample.timestamp_ms, sample.value)
            self.samples_ingested += len(samples)

            if self.expression:
                stage = "query"
                self.state = ScrapeState.QUERYING
                self.on_result(self.query_engine.instant_query(self.expression))

        except PerftestError:
            if self.self_metrics:
                self.self_metrics.record_scrape_error(stage)
            raise

        self.state = ScrapeState.IDLE
        self.tick_count += 1
        self.last_scrape_duration = time.time() - tick_start

        if self.self_metrics:
            self.self_metrics.record_scrape(
                self.last_scrape_duration, len(samples), self.storage.series_count()
            )

        logger.debug(
            f"Tick {self.tick_count}: ingested {len(samples)} samples "
            f"in {self.last_scrape_duration:.3f}s"
        )

    def run(self):
        """Run the scrape loop until cancelled or a tick fails."""
        self.start_time = time.time()
        logger.info(f"Starting scrape loop for {self.target.url} every {self.interval_s}s")

        try:
            while not self._cancel.is_set():
                tick_start = time.time()
                self.tick()

                tick_duration = time.time() - tick_start
                sleep_time = max(0, self.interval_s - tick_duration)
                if sleep_time == 0:
                    logger.warning(
                        f"Scrape took {tick_duration:.3f}s, longer than interval {self.interval_s}s"
                    )
                self._cancel.wait(sleep_time)
        except BaseException as e:
            self.last_error = e
            self._cancel.set()
            raise
        finally:
            self.state = ScrapeState.STOPPED
            logger.info(f"Scrape loop stopped after {self.tick_count} ticks")

    def start(self):
        """Run the loop on a daemon thread."""
        self._thread = threading.Thread(
            target=run_scraper_thread,
            args=(self,),
            name="scraper",
            daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Signal the loop to stop between ticks and wait for it."""
        logger.info("Stopping scrape loop")
        self._cancel.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "target": self.target.url,
            "uptime_seconds": time.time() - self.start_time,
            "tick_count": self.tick_count,
            "samples_ingested": self.samples_ingested,
            "last_scrape_duration_s": self.last_scrape_duration,
            "last_error": str(self.last_error) if self.last_error else None,
            "expression": self.expression,
        }


def run_scraper_thread(engine: ScrapeEngine):
    """Run the scrape loop in a separate thread."""
    try:
        engine.run()
    except Exception as e:
        logger.error(f"Scraper thread error: {e}", exc_info=True)
