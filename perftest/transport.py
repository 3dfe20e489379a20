"""Pooled HTTP transport with an in-process DNS cache for load generation."""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import ipaddress
import logging
import socket
import threading

import httpx

logger = logging.getLogger(__name__)

Resolver = Callable[[str], List[str]]
DoneCallback = Callable[[str, Optional[BaseException]], None]


def system_resolve(host: str) -> List[str]:
    """Resolve ``host`` to its IPv4 addresses, preserving resolver order."""
    try:
        ipaddress.ip_address(host)
        return [host]
    except ValueError:
        pass

    infos = socket.getaddrinfo(host, None, family=socket.AF_INET, proto=socket.IPPROTO_TCP)
    addresses: List[str] = []
    for info in infos:
        address = info[4][0]
        if address not in addresses:
            addresses.append(address)
    return addresses


@dataclass
class _CacheEntry:
    addresses: List[str]
    used: bool = True


class DNSCache:
    """Caches host lookups until the next ``refresh``."""

    def __init__(self, resolver: Resolver = system_resolve):
        self._resolver = resolver
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def lookup(self, host: str) -> List[str]:
        with self._lock:
            entry = self._entries.get(host)
            if entry is not None:
                entry.used = True
                return list(entry.addresses)

        try:
            addresses = self._resolver(host)
        except OSError as e:
            raise httpx.ConnectError(f"Could not resolve host {host}: {e}") from e
        if not addresses:
            raise httpx.ConnectError(f"No addresses found for host {host}")

        with self._lock:
            self._entries[host] = _CacheEntry(addresses)
        return list(addresses)

    def refresh(self, clear_unused: bool = True):
        """Re-resolve cached hosts; entries not looked up since the last refresh are dropped."""
        with self._lock:
            snapshot = list(self._entries.items())

        for host, entry in snapshot:
            if clear_unused and not entry.used:
                with self._lock:
                    self._entries.pop(host, None)
                logger.debug(f"Dropped unused DNS entry for {host}")
                continue
            try:
                addresses = self._resolver(host)
            except OSError as e:
                logger.warning(f"DNS refresh failed for {host}: {e}")
                continue
            with self._lock:
                if addresses:
                    entry.addresses = addresses
                entry.used = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CachingTransport:
    """Process-wide HTTP client: connection pool, DNS cache and background refresh.

    Requests are sent to the resolved address directly with the original
    host (or a virtual host) in the ``Host`` header; for HTTPS the original
    host is kept as the TLS server name.
    """

    def __init__(
        self,
        max_idle_conns: int = 1024,
        max_conns_per_host: int = 100,
        idle_conn_timeout_s: float = 10.0,
        dns_refresh_s: float = 300.0,
        dns_cache: Optional[DNSCache] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.dns_cache = dns_cache or DNSCache()
        self.dns_refresh_s = dns_refresh_s
        self.client = httpx.Client(
            limits=httpx.Limits(
                max_connections=max_conns_per_host,
                max_keepalive_connections=max_idle_conns,
                keepalive_expiry=idle_conn_timeout_s,
            ),
            transport=transport,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_conns_per_host, thread_name_prefix="fire-and-forget"
        )
        self._stop = threading.Event()
        self._refresher: Optional[threading.Thread] = None

    def start(self):
        """Start the periodic DNS refresh."""
        self._refresher = threading.Thread(target=self._refresh_loop, name="dns-refresh", daemon=True)
        self._refresher.start()

    def _refresh_loop(self):
        while not self._stop.wait(self.dns_refresh_s):
            self.dns_cache.refresh(clear_unused=True)

    def request(
        self,
        url: str,
        vhost: str = "",
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        """GET ``url`` (POST when ``content`` is given), trying each resolved address."""
        method = "POST" if content is not None else "GET"
        target = httpx.URL(url)
        host = target.host

        request_headers = httpx.Headers(headers or {})
        if vhost:
            request_headers["Host"] = vhost
        else:
            request_headers["Host"] = f"{host}:{target.port}" if target.port else host

        extensions = {"sni_hostname": host} if target.scheme == "https" else {}

        last_error: Optional[httpx.HTTPError] = None
        for address in self.dns_cache.lookup(host):
            try:
                return self.client.request(
                    method,
                    target.copy_with(host=address),
                    headers=request_headers,
                    content=content,
                    timeout=timeout,
                    extensions=extensions,
                )
            except httpx.ConnectError as e:
                last_error = e
        raise last_error

    def fire_and_forget(
        self,
        url: str,
        vhost: str = "",
        timeout: float = 10.0,
        on_done: Optional[DoneCallback] = None,
    ):
        """Send a request in the background and drop the response."""

        def send():
            error: Optional[BaseException] = None
            try:
                response = self.request(url, vhost, timeout)
                response.close()
            except httpx.HTTPError as e:
                error = e
                logger.debug(f"Request to {url} (host {vhost}) failed: {e}")
            except Exception as e:
                error = e
                logger.error(f"Request to {url} (host {vhost}) failed: {e}", exc_info=True)
            finally:
                if on_done is not None:
                    on_done(vhost, error)

        if self._stop.is_set():
            return
        self._executor.submit(send)

    def close(self):
        """Stop refreshing, drain in-flight requests and close the pool."""
        self._stop.set()
        self._executor.shutdown(wait=True)
        if self._refresher is not None:
            self._refresher.join(timeout=1.0)
        self.client.close()
