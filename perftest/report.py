"""Report generation: range queries rendered into per-panel chart artifacts.

Panels mirror the dashboards used to watch a load test: request and error
rates per virtual host, open file descriptors, and JVM memory per area and
per pool. Each panel is written as a JSON chart description under
``report_<date>/``.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field
import logging
import math
import os

from perftest.evaluator import QueryEngine, RangeResult

logger = logging.getLogger(__name__)


def byte_count_si(value: float) -> str:
    """Format a byte count with SI units, e.g. ``1.5 MB``."""
    b = int(value)
    unit = 1000
    if b < unit:
        return f"{b} B"
    div, exp = unit, 0
    n = b // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{b / div:.1f} {'kMGTPE'[exp]}B"


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class ChartSeries(BaseModel):
    """One line of a chart."""
    name: str
    timestamps: List[int] = Field(default_factory=list)  # epoch seconds
    values: List[Optional[float]] = Field(default_factory=list)
    secondary_axis: bool = False


class Chart(BaseModel):
    """A rendered chart panel."""
    name: str
    title: str
    y_axis: str
    y_axis_secondary: Optional[str] = None
    value_format: Optional[str] = None
    series: List[ChartSeries] = Field(default_factory=list)


class Report:
    """Issues report queries against a ``QueryEngine`` and writes chart artifacts."""

    def __init__(
        self,
        query_engine: QueryEngine,
        base_dir: str = ".",
        window_s: float = 3600.0,
        step_s: float = 15.0,
        report_date: Optional[datetime] = None,
    ):
        self.query_engine = query_engine
        self.window_s = window_s
        self.step_s = step_s
        self.report_date = report_date or datetime.now()
        self.base_dir = os.path.join(base_dir, f"report_{self.report_date:%Y_%m_%dT%H_%M_%S}")
        os.makedirs(self.base_dir, exist_ok=True)

    def generate(self) -> List[str]:
        """Write every panel; returns the artifact names."""
        images = [
            self.plot_requests(),
            self.plot_requests_errors(),
            self.plot_open_file_descriptors(),
        ]

        memory_areas = self.label_values("jvm_memory_bytes_used", "area")
        logger.info(f"Memory Areas: {memory_areas}")
        for area in memory_areas:
            images.append(self.plot_memory_area(area))

        memory_pools = self.label_values("jvm_memory_pool_bytes_max", "pool")
        logger.info(f"Memory Pools: {memory_pools}")
        for pool in memory_pools:
            images.append(self.plot_memory_pool(pool))

        logger.info(f"Report written to {self.base_dir} ({len(images)} charts)")
        return images

    def _range(self, query: str) -> RangeResult:
        return self.query_engine.range_query_window(query, self.window_s, self.step_s)

    def generate_series(self, name: str, query: str) -> ChartSeries:
        """All points of the query's result flattened into a single line."""
        ts = ChartSeries(name=name)
        for series in self._range(query).matrix:
            for point in series.points:
                ts.timestamps.append(point.t // 1000)
                ts.values.append(point.v)
        return ts

    def generate_multi_series(self, query: str) -> List[ChartSeries]:
        """One line per result series, named by its label values."""
        lines = []
        for series in self._range(query).matrix:
            name = "/".join(value for _, value in series.labels) or str(series.labels)
            lines.append(ChartSeries(
                name=name,
                timestamps=[p.t // 1000 for p in series.points],
                values=[p.v for p in series.points],
            ))
        return lines

    def label_values(self, metric: str, label: str) -> List[str]:
        """Distinct values of ``label`` among the current series of ``metric``."""
        values: List[str] = []
        for element in self.query_engine.instant_query(metric).vector:
            value = element.labels.get(label)
            if value not in values:
                values.append(value)
        return values

    def plot_requests(self) -> str:
        return self._write(Chart(
            name="requests",
            title="Requests",
            y_axis="Requests / minute",
            series=self.generate_multi_series(
                "sum(rate(galeb_http_requests_total[1m])) by (virtualhost)"
            ),
        ))

    def plot_requests_errors(self) -> str:
        return self._write(Chart(
            name="requests_errors",
            title="Request errors",
            y_axis="Requests / minute",
            series=self.generate_multi_series(
                "sum(rate(galeb_errors_total[1m])) by (virtualhost, error)"
            ),
        ))

    def plot_open_file_descriptors(self) -> str:
        return self._write(Chart(
            name="open_fds",
            title="Open File Descriptors",
            y_axis="File Descriptors",
            series=[self.generate_series("Open File Descriptors", "process_open_fds")],
        ))

    def plot_memory_area(self, area: str) -> str:
        used = self.generate_series(f"Used memory [{area}]", f'jvm_memory_bytes_used{{area="{_quote(area)}"}}')
        max_ = self.generate_series(f"Max memory [{area}]", f'jvm_memory_bytes_max{{area="{_quote(area)}"}}')
        usage = self.generate_series(
            f"Usage memory [{area}]",
            f'jvm_memory_bytes_used{{area="{_quote(area)}"}} / jvm_memory_bytes_max >= 0',
        )
        usage.secondary_axis = True
        self._log_peak(f"Memory area {area}", used)

        return self._write(Chart(
            name=f"memory_area_{area}",
            title=f"Memory area {area}",
            y_axis="Memory",
            y_axis_secondary="% usage",
            value_format="bytes_si",
            series=[used, max_, usage],
        ))

    def plot_memory_pool(self, pool: str) -> str:
        used = self.generate_series(f"Used memory [{pool}]", f'jvm_memory_pool_bytes_used{{pool="{_quote(pool)}"}}')
        max_ = self.generate_series(f"Max memory [{pool}]", f'jvm_memory_pool_bytes_max{{pool="{_quote(pool)}"}}')
        committed = self.generate_series(
            f"Committed memory [{pool}]", f'jvm_memory_pool_bytes_committed{{pool="{_quote(pool)}"}}'
        )
        self._log_peak(f"Memory pool {pool}", used)

        return self._write(Chart(
            name=f"memory_pool_{pool}",
            title=f"Memory pool {pool}",
            y_axis="Memory",
            value_format="bytes_si",
            series=[used, max_, committed],
        ))

    def _log_peak(self, title: str, used: ChartSeries):
        values = [v for v in used.values if v is not None and math.isfinite(v)]
        if values:
            logger.info(f"{title}: peak usage {byte_count_si(max(values))}")

    def gen_filename(self, plot: str) -> str:
        return os.path.join(self.base_dir, f"{plot.replace(os.sep, '_')}.json")

    def _write(self, chart: Chart) -> str:
        with open(self.gen_filename(chart.name), "w") as f:
            f.write(chart.model_dump_json(indent=2))
        return chart.name
