"""Query and control API using FastAPI."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging
import math
import time

from perftest.errors import (
    EvaluationError,
    PerftestError,
    QueryTimeout,
    ResourceExceeded,
    StorageClosed,
    WriterBusy,
)
from perftest.evaluator import InstantResult, QueryEngine, QueryResult, now_ms
from perftest.promql import parse_duration
from perftest.storage import MemoryStorage

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogLevelRequest(BaseModel):
    """Request to change log level."""
    level: str


def format_value(value: float) -> str:
    """Sample values are strings on the wire, ``+Inf``/``-Inf``/``NaN`` included."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def parse_time(text: str) -> int:
    """Epoch seconds (float) or RFC 3339 to milliseconds."""
    try:
        return int(float(text) * 1000)
    except (ValueError, OverflowError):
        pass
    try:
        return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        raise EvaluationError(f"Cannot parse {text!r} to a valid timestamp")


def parse_step(text: str) -> int:
    """Seconds (float) or a duration like ``15s`` to milliseconds."""
    try:
        return int(float(text) * 1000)
    except (ValueError, OverflowError):
        return parse_duration(text)


def _error_type(exc: PerftestError):
    if isinstance(exc, QueryTimeout):
        return 503, "timeout"
    if isinstance(exc, (WriterBusy, StorageClosed)):
        return 503, "unavailable"
    if isinstance(exc, ResourceExceeded):
        return 422, "execution"
    if isinstance(exc, EvaluationError):
        return 400, "bad_data"
    return 422, "execution"


def render_result(result: QueryResult) -> Dict[str, Any]:
    """Prometheus API ``data`` object for a query result."""
    if isinstance(result, InstantResult):
        items: List[Dict[str, Any]] = [
            {
                "metric": element.labels.to_dict(),
                "value": [element.point.t / 1000, format_value(element.point.v)],
            }
            for element in result.vector
        ]
    else:
        items = [
            {
                "metric": series.labels.to_dict(),
                "values": [[p.t / 1000, format_value(p.v)] for p in series.points],
            }
            for series in result.matrix
        ]
    return {"resultType": result.result_type, "result": items}


class ControlAPI:
    """FastAPI-based query and control API for a running harness."""

    def __init__(
        self,
        storage: MemoryStorage,
        query_engine: QueryEngine,
        scraper=None,
        loadgen=None,
    ):
        """
        Initialize control API.

        Args:
            storage: Store whose counts are reported by ``/status``
            query_engine: Engine serving ``/api/v1/query*``
            scraper: Optional ``ScrapeEngine`` reported by ``/status``
            loadgen: Optional ``LoadGenerator`` reported by ``/status``
        """
        self.storage = storage
        self.query_engine = query_engine
        self.scraper = scraper
        self.loadgen = loadgen
        self.start_time = time.time()
        self.app = FastAPI(title="Performance Test Harness API")

        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.exception_handler(PerftestError)
        async def perftest_error(request: Request, exc: PerftestError):
            status_code, error_type = _error_type(exc)
            logger.warning(f"{request.url.path} failed ({error_type}): {exc}")
            return JSONResponse(
                status_code=status_code,
                content={"status": "error", "errorType": error_type, "error": str(exc)},
            )

        @self.app.get("/healthz")
        async def healthz():
            """Health check endpoint."""
            return {"status": "healthy", "timestamp": time.time()}

        @self.app.get("/status")
        def status():
            """Scraper, load generator and storage status."""
            return {
                "uptime_seconds": time.time() - self.start_time,
                "storage": {
                    "series": self.storage.series_count(),
                    "samples": self.storage.sample_count(),
                },
                "scraper": self.scraper.status() if self.scraper else None,
                "loadgen": self.loadgen.status() if self.loadgen else None,
            }

        @self.app.get("/api/v1/query")
        def query(query: str, at: Optional[str] = Query(None, alias="time")):
            """Instant query; ``time`` defaults to now."""
            t = parse_time(at) if at is not None else now_ms()
            result = self.query_engine.instant_query(query, t)
            return {"status": "success", "data": render_result(result)}

        @self.app.get("/api/v1/query_range")
        def query_range(query: str, start: str, end: str, step: str):
            """Range query over ``[start, end]`` every ``step``."""
            result = self.query_engine.range_query(
                query, parse_time(start), parse_time(end), parse_step(step)
            )
            return {"status": "success", "data": render_result(result)}

        @self.app.post("/control/loglevel")
        async def set_log_level(request: LogLevelRequest):
            """Change log level at runtime."""
            level = request.level.upper()

            if level not in LOG_LEVELS:
                raise HTTPException(
                    status_code=400,
                    detail=f"Invalid log level: {level}"
                )

            logging.getLogger().setLevel(getattr(logging, level))
            logger.info(f"Log level changed to: {level}")

            return {
                "status": "log_level_changed",
                "level": level,
                "timestamp": time.time()
            }

    def run(self, host: str = "0.0.0.0", port: int = 8081):
        """Run the API server."""
        import uvicorn
        uvicorn.run(self.app, host=host, port=port, log_level="info")
