# engine/services/load_submitter.py

"""
Load submission service.

This module is the ONLY entry point for running a load session
from the CLI (or any embedding application).

Responsibilities:
- Resolve the manifest (directly or from page markup)
- Load eager resources in order
- Register units and run a fresh coordinator
- Wait for the single terminal event
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from config.settings import Settings, get_settings
from engine.dispatch.fetcher import ResourceFetcher, Sink
from engine.planner.discovery import discover_manifest
from engine.planner.manifest import LoadPlan, load_manifest
from engine.scheduler.coordinator import LoadCoordinator
from engine.scheduler.events import AllDone, CompletionDispatcher, FatalError, SessionEvent
from engine.scheduler.exceptions import LoaderError
from engine.scheduler.metrics import LoadStats
from engine.scheduler.registry import TaskRegistry
from engine.scheduler.types import EventKind
from engine.utils import get_logger

log = get_logger("services.load_submitter")

FetcherFactory = Callable[..., ResourceFetcher]


class LoadSubmissionError(Exception):
    """Raised when a load session does not complete."""


@dataclass(frozen=True)
class LoadResult:
    stats: LoadStats
    eager_loaded: int

    @property
    def files_loaded(self) -> int:
        return self.eager_loaded + self.stats.units_completed


class LoadSubmitter:
    """
    Stateless service object.

    Every run() builds its own registry, coordinator and fetcher,
    so one submitter can serve any number of sessions.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetcher_factory: Optional[FetcherFactory] = None,
    ):
        self._settings = settings or get_settings()
        self._fetcher_factory = fetcher_factory or ResourceFetcher

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    def plan(
        self,
        source: Optional[str] = None,
        *,
        page: Optional[str] = None,
        cache_enabled: Optional[bool] = None,
    ) -> LoadPlan:
        """
        Resolve a LoadPlan.

        Args:
            source: manifest path or URL
            page: HTML file whose loader script tag names the manifest;
                  used when source is not given

        Raises:
            LoadSubmissionError
        """
        cache = self._settings.CACHE_ENABLED if cache_enabled is None else cache_enabled

        try:
            if source is not None and page is not None:
                raise ValueError("give either a manifest or a page, not both")
            if source is None:
                if page is None:
                    raise ValueError("either a manifest or a page is required")
                page_path = Path(page)
                reference = discover_manifest(
                    page_path.read_text(encoding="utf-8"),
                    base=str(page_path.resolve().parent) + "/",
                )
                source = reference.source
                cache = cache and reference.cache_enabled

            return load_manifest(source, cache_enabled=cache)

        except Exception as exc:
            raise LoadSubmissionError(str(exc)) from exc

    def run(
        self,
        plan: LoadPlan,
        *,
        sink: Optional[Sink] = None,
        timeout: Optional[float] = None,
        cache_enabled: Optional[bool] = None,
        max_workers: Optional[int] = None,
    ) -> LoadResult:
        """
        Run one load session to its terminal event.

        Raises:
            LoadSubmissionError
        """
        timeout = timeout if timeout is not None else self._settings.SESSION_TIMEOUT

        fetcher = self._fetcher_factory(
            max_workers=max_workers or self._settings.MAX_WORKERS,
            timeout=self._settings.REQUEST_TIMEOUT,
            cache_enabled=(
                self._settings.CACHE_ENABLED if cache_enabled is None else cache_enabled
            ),
            headers=self._settings.HTTP_HEADERS,
            sink=sink,
        )

        try:
            eager_loaded = self._load_eager(fetcher, plan)

            registry = TaskRegistry()
            registry.register(plan.units)

            dispatcher = CompletionDispatcher()
            done = threading.Event()
            dispatcher.subscribe(
                lambda event: done.set(),
                kinds=(EventKind.ALL_DONE, EventKind.FATAL_ERROR),
            )

            coordinator = LoadCoordinator(registry, fetcher.begin_unit, dispatcher)
            fetcher.attach(coordinator)
            coordinator.start()

            if not done.wait(timeout):
                coordinator.cancel()
                raise LoadSubmissionError(
                    f"Load session did not finish within {timeout}s"
                )

            return LoadResult(
                stats=self._unwrap(dispatcher.terminal_event),
                eager_loaded=eager_loaded,
            )

        except LoadSubmissionError:
            raise
        except Exception as exc:
            raise LoadSubmissionError(str(exc)) from exc
        finally:
            fetcher.shutdown(wait=False)

    # ------------------------------------------------------------------
    # INTERNAL HELPERS
    # ------------------------------------------------------------------

    def _load_eager(self, fetcher: ResourceFetcher, plan: LoadPlan) -> int:
        """
        Stylesheets then head scripts, one at a time, in manifest order.
        """
        for resource in plan.eager:
            log.debug(f"Loading eager resource {resource}")
            fetcher.fetch(resource)
        return len(plan.eager)

    def _unwrap(self, event: Optional[SessionEvent]) -> LoadStats:
        if isinstance(event, AllDone):
            return event.stats
        if isinstance(event, FatalError):
            raise LoadSubmissionError(str(event.error)) from event.error
        raise LoaderError("Session ended without a terminal event")
