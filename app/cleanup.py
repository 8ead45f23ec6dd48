# app/cleanup.py
"""
Deferred deletion of transient artifacts (split pages, image batches, zips).

Entries live only as long as the process. ``run_pending`` does the actual work
and is driven either by ``run_forever`` on the event loop or directly by tests
with a fake clock.
"""
import asyncio
import heapq
import itertools
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Iterable, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    path: Path
    removed: bool
    error: Optional[str] = None


def remove_path(path: Path) -> CleanupResult:
    """Delete a file or a whole directory. Never raises."""
    try:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
        return CleanupResult(path=path, removed=True)
    except FileNotFoundError:
        return CleanupResult(path=path, removed=False)
    except OSError as e:
        return CleanupResult(path=path, removed=False, error=str(e))


class CleanupScheduler:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._queue: List[Tuple[float, int, Tuple[Path, ...]]] = []
        self._seq = itertools.count()
        self._lock = Lock()

    def schedule_delete(self, paths: Iterable[Path], delay: float) -> float:
        """Queue ``paths`` for deletion ``delay`` seconds from now; returns the due time."""
        group = tuple(Path(p) for p in paths)
        due = self._clock() + delay
        with self._lock:
            heapq.heappush(self._queue, (due, next(self._seq), group))
        logger.info("Scheduled deletion of %d path(s) in %.0fs", len(group), delay)
        return due

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def run_pending(self) -> List[CleanupResult]:
        now = self._clock()
        due_groups = []
        with self._lock:
            while self._queue and self._queue[0][0] <= now:
                due_groups.append(heapq.heappop(self._queue)[2])

        results: List[CleanupResult] = []
        for group in due_groups:
            for path in group:
                result = remove_path(path)
                if result.error:
                    logger.error("Scheduled cleanup failed for %s: %s", path, result.error)
                elif result.removed:
                    logger.info("Scheduled cleanup removed %s", path)
                results.append(result)
        return results

    async def run_forever(self, poll_interval: float) -> None:
        while True:
            try:
                await run_in_threadpool(self.run_pending)
            except Exception:
                logger.exception("Cleanup pass failed")
            await asyncio.sleep(poll_interval)
