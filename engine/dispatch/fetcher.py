# engine/dispatch/fetcher.py

"""
Thread-pool fetch mechanism.

Responsibilities:
- Receive begin_unit() calls from the coordinator
- Retrieve exactly ONE resource per call, off the caller's thread
- Report back exactly once: finished() or failed()
- Never schedule
- Never inspect dependencies
"""

import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, Optional
from urllib.parse import urlencode, urlparse, urlsplit, urlunsplit

import requests

from config.settings import settings
from engine.scheduler.coordinator import LoadCoordinator
from engine.scheduler.dag import Unit
from engine.utils import get_logger

log = get_logger("dispatch.fetcher")

Sink = Callable[[Unit, bytes], None]


class ResourceFetcher:
    """
    Coordinator calls begin_unit().
    Worker threads do the I/O and call back.
    """

    def __init__(
        self,
        *,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
        cache_enabled: Optional[bool] = None,
        headers: Optional[Dict[str, str]] = None,
        base_path: Optional[Path] = None,
        session: Optional[requests.Session] = None,
        sink: Optional[Sink] = None,
    ):
        self.timeout = timeout if timeout is not None else settings.REQUEST_TIMEOUT
        self.cache_enabled = (
            cache_enabled if cache_enabled is not None else settings.CACHE_ENABLED
        )
        self.base_path = base_path
        self.sink = sink

        self._session = session or requests.Session()
        self._session.headers.update(headers or settings.HTTP_HEADERS)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.MAX_WORKERS,
            thread_name_prefix="depload-fetch",
        )
        self._coordinator: Optional[LoadCoordinator] = None

    # -------------------------
    # PUBLIC ENTRYPOINTS
    # -------------------------

    def attach(self, coordinator: LoadCoordinator) -> None:
        self._coordinator = coordinator

    def begin_unit(self, unit: Unit) -> None:
        """
        Start loading a unit. Returns immediately.
        """
        if self._coordinator is None:
            raise RuntimeError("Fetcher is not attached to a coordinator")

        future = self._pool.submit(self._run_unit, unit)
        future.add_done_callback(lambda f: _log_worker_error(unit, f))

    def fetch(self, resource: str, cache: bool = True) -> bytes:
        """
        Retrieve one resource synchronously.

        Raises:
            requests.exceptions.RequestException
            OSError
        """
        if urlparse(resource).scheme in ("http", "https"):
            return self._fetch_http(resource, cache and self.cache_enabled)
        return self._read_file(resource)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self._session.close()

    def __enter__(self) -> "ResourceFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # -------------------------
    # INTERNAL
    # -------------------------

    def _run_unit(self, unit: Unit) -> None:
        coordinator = self._coordinator
        started = time.monotonic()

        try:
            content = self.fetch(unit.resource, cache=unit.cache)
            if self.sink is not None:
                self.sink(unit, content)
        except Exception as exc:
            log.error(f"{unit.resource} could not be loaded: {exc}")
            coordinator.failed(unit.unit_id, str(exc))
            return

        log.debug(
            f"Loaded {unit.unit_id} ({len(content)} bytes) "
            f"in {(time.monotonic() - started) * 1000:.0f}ms"
        )
        coordinator.finished(unit.unit_id)

    def _fetch_http(self, url: str, cache: bool) -> bytes:
        if not cache:
            url = cache_bust(url)

        response = self._session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def _read_file(self, resource: str) -> bytes:
        if resource.startswith("file://"):
            path = Path(urlparse(resource).path)
        else:
            path = Path(resource)
            if not path.is_absolute() and self.base_path is not None:
                path = self.base_path / path

        return path.read_bytes()


def cache_bust(url: str, now: Optional[float] = None) -> str:
    """
    Append a "_=<epoch ms>" parameter so intermediaries cannot serve a stale copy.
    """
    stamp = int((now if now is not None else time.time()) * 1000)
    parts = urlsplit(url)
    extra = urlencode({"_": stamp})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _log_worker_error(unit: Unit, future: Future) -> None:
    """Log an exception a worker left in its future."""
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        log.error(
            f"Worker for {unit.unit_id} crashed while reporting back",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
