"""Bounded fan-out of per-target pipelines onto a thread pool."""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from migrator.migration import PipelineResult
from migrator.steps import Failure, UnexpectedError

logger = logging.getLogger(__name__)

# Concurrent pipelines; keeps clones and GitHub API calls within sane limits
MAX_WORKERS = 3

Job = Callable[[], PipelineResult]


class ResultMap:
    """Target name -> PipelineResult, safe to write from worker threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: dict[str, PipelineResult] = {}
        self._running: set[str] = set()
        self._started: dict[str, float] = {}
        self._durations: dict[str, float] = {}

    def started(self, name: str) -> None:
        with self._lock:
            self._running.add(name)
            self._started[name] = time.monotonic()

    def record(self, name: str, result: PipelineResult) -> None:
        with self._lock:
            self._results[name] = result
            self._running.discard(name)
            if name in self._started:
                self._durations[name] = time.monotonic() - self._started[name]

    def snapshot(self) -> dict[str, PipelineResult]:
        with self._lock:
            return dict(self._results)

    def running(self) -> set[str]:
        with self._lock:
            return set(self._running)

    def elapsed(self, name: str) -> float | None:
        with self._lock:
            if name in self._durations:
                return self._durations[name]
            if name in self._started:
                return time.monotonic() - self._started[name]
            return None


def _run_job(name: str, job: Job, results: ResultMap) -> None:
    results.started(name)
    try:
        result = job()
    except Exception as e:
        logger.exception("%s: pipeline raised", name)
        result = PipelineResult(step="unexpected", outcome=Failure(UnexpectedError(e)))
    results.record(name, result)


async def schedule(
    jobs: dict[str, Job],
    results: ResultMap | None = None,
    max_workers: int = MAX_WORKERS,
) -> ResultMap:
    """Run every job with at most *max_workers* in flight.

    A job that raises is recorded as a Failure; it never stops the others
    and nothing is retried.
    """
    if results is None:
        results = ResultMap()
    loop = asyncio.get_running_loop()
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        await asyncio.gather(*(
            loop.run_in_executor(executor, _run_job, name, job, results)
            for name, job in jobs.items()
        ))
    return results
