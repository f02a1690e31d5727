"""
Deferred file cleanup.

Workers schedule a path when its job reaches a terminal state; a periodic
sweep deletes everything pending. The sweep swaps the pending set for an
empty one before deleting, so paths scheduled mid-sweep wait for the next
pass instead of being lost. A path that is already gone counts as cleaned;
any other failure puts it back for the next sweep.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional

from media_pipeline.core.models import CleanupReason, CleanupTask
from media_pipeline.core.stats import WorkerStats

logger = logging.getLogger(__name__)


def _unlink(path: Path) -> None:
    path.unlink()


@dataclass(frozen=True)
class SweepReport:
    deleted: int = 0
    missing: int = 0
    requeued: int = 0

    @property
    def cleaned(self) -> int:
        return self.deleted + self.missing


class CleanupManager:
    """Owns the pending-deletion set for one media kind."""

    def __init__(
        self,
        name: str,
        interval_seconds: float = 30.0,
        stats: Optional[WorkerStats] = None,
        output_dir: Optional[Path] = None,
        retention_seconds: Optional[float] = None,
        deleter: Callable[[Path], None] = _unlink,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self._stats = stats
        self._output_dir = output_dir
        self._retention_seconds = retention_seconds
        self._delete = deleter
        self._pending: Dict[str, CleanupTask] = {}
        self._lock = Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    def schedule(self, path: str, job_id: str, reason: CleanupReason) -> CleanupTask:
        task = CleanupTask(path=str(path), job_id=job_id, reason=reason)
        with self._lock:
            self._pending.setdefault(task.path, task)
        logger.debug("[%s] Scheduled cleanup of %s (%s, job %s)", self.name, path, reason.value, job_id)
        return task

    def pending(self) -> List[CleanupTask]:
        with self._lock:
            return list(self._pending.values())

    def is_pending(self, path: str) -> bool:
        with self._lock:
            return str(path) in self._pending

    def sweep(self) -> SweepReport:
        with self._lock:
            snapshot, self._pending = self._pending, {}

        deleted = missing = 0
        failed: List[CleanupTask] = []
        for path, task in snapshot.items():
            try:
                self._delete(Path(path))
                deleted += 1
            except FileNotFoundError:
                missing += 1
            except OSError as exc:
                logger.warning("[%s] Could not delete %s: %s", self.name, path, exc)
                failed.append(task)

        if failed:
            with self._lock:
                for task in failed:
                    self._pending.setdefault(task.path, task)

        report = SweepReport(deleted=deleted, missing=missing, requeued=len(failed))
        if self._stats is not None and report.cleaned:
            self._stats.files_removed(report.cleaned)
        if snapshot:
            logger.info(
                "[%s] Cleanup sweep: %d deleted, %d already gone, %d requeued",
                self.name, deleted, missing, len(failed),
            )
        return report

    def purge_expired(self, directory: Path, max_age_seconds: float, now: Optional[float] = None) -> int:
        """Delete files in ``directory`` older than ``max_age_seconds``."""
        if not directory.is_dir():
            return 0
        cutoff = (now if now is not None else time.time()) - max_age_seconds
        removed = 0
        for entry in directory.iterdir():
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("[%s] Could not purge %s: %s", self.name, entry, exc)
        if removed:
            logger.info("[%s] Purged %d expired outputs from %s", self.name, removed, directory)
        return removed

    # ------------------------------------------------------------------
    # Periodic loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        assert self._stopping is not None
        while True:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            await asyncio.to_thread(self.sweep)
            if self._output_dir is not None and self._retention_seconds:
                await asyncio.to_thread(self.purge_expired, self._output_dir, self._retention_seconds)
            if self._stopping.is_set():
                return

    def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"cleanup-{self.name}")
        logger.info("[%s] Cleanup sweep every %.0fs", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """Stop the loop after one final sweep."""
        if self._task is None:
            return
        assert self._stopping is not None
        self._stopping.set()
        await self._task
        self._task = None
