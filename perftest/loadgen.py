"""Load generator: fire-and-forget requests against random virtual hosts."""
from typing import Any, Dict, List, Optional
import logging
import threading
import time

import numpy as np

from perftest.config import LoadConfig
from perftest.self_metrics import SelfMetrics
from perftest.transport import CachingTransport

logger = logging.getLogger(__name__)

PING_VHOST = "__ping__"
INFO_VHOST = "__info__"


def gen_virtual_hosts(n: int, fmt: str = "galeb-test-{}") -> List[str]:
    """Virtual host names used as the ``Host`` header of generated requests."""
    return [fmt.format(i) for i in range(n)]


class LoadGenerator:
    """Drives traffic at the target endpoint until cancelled.

    ``parallel`` workers each send one request per ``request_interval_s``
    to a uniformly chosen virtual host; two extra workers send ``__ping__``
    and ``__info__`` requests every ``ping_interval_s``.
    """

    def __init__(
        self,
        config: LoadConfig,
        transport: CachingTransport,
        cancel: Optional[threading.Event] = None,
        self_metrics: Optional[SelfMetrics] = None,
    ):
        if not config.endpoint:
            raise ValueError("Load generator requires an endpoint")

        self.config = config
        self.transport = transport
        self.self_metrics = self_metrics
        self.vhosts = gen_virtual_hosts(config.vhosts, config.vhost_format)

        # numpy Generators are not thread-safe
        self.rng = np.random.default_rng(config.seed)
        self._rng_lock = threading.Lock()

        self.requests_sent = 0
        self.request_errors = 0
        self._stats_lock = threading.Lock()

        self._cancel = cancel or threading.Event()
        self._threads: List[threading.Thread] = []
        self.start_time: Optional[float] = None

    def pick_vhost(self) -> str:
        with self._rng_lock:
            index = int(self.rng.integers(len(self.vhosts)))
        return self.vhosts[index]

    def _send(self, vhost: str):
        self.transport.fire_and_forget(
            self.config.endpoint,
            vhost,
            self.config.request_timeout_s,
            on_done=self._record,
        )

    def _record(self, vhost: str, error: Optional[BaseException]):
        with self._stats_lock:
            self.requests_sent += 1
            if error is not None:
                self.request_errors += 1
        if self.self_metrics:
            self.self_metrics.record_request(vhost, error=error is not None)

    def _worker(self):
        while not self._cancel.wait(self.config.request_interval_s):
            vhost = self.pick_vhost()
            logger.debug(f"picked: [{vhost}]")
            self._send(vhost)

    def _fixed_host_worker(self, vhost: str):
        while not self._cancel.wait(self.config.ping_interval_s):
            self._send(vhost)

    def start(self):
        """Start all workers on daemon threads."""
        self.start_time = time.time()
        for i in range(self.config.parallel):
            self._threads.append(threading.Thread(target=self._worker, name=f"loadgen-{i}", daemon=True))
        for vhost in (PING_VHOST, INFO_VHOST):
            self._threads.append(threading.Thread(
                target=self._fixed_host_worker, args=(vhost,), name=f"loadgen-{vhost}", daemon=True
            ))
        for thread in self._threads:
            thread.start()

        logger.info(
            f"Load generator started: {self.config.parallel} workers against "
            f"{self.config.endpoint} across {len(self.vhosts)} vhosts"
        )

    def stop(self, timeout: Optional[float] = 5.0):
        """Cancel all workers and wait for them to exit."""
        self._cancel.set()
        for thread in self._threads:
            thread.join(timeout)
        logger.info(
            f"Load generator stopped: {self.requests_sent} requests, {self.request_errors} errors"
        )

    def status(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "endpoint": self.config.endpoint,
                "vhosts": len(self.vhosts),
                "parallel": self.config.parallel,
                "requests_sent": self.requests_sent,
                "request_errors": self.request_errors,
                "running": bool(self._threads) and not self._cancel.is_set(),
            }
