"""
Worker statistics and health classification.

``WorkerStats`` is the only mutable piece: an owned counter object with a
lock, updated once per finished attempt. Health is a pure function of a
few numbers so it can be tested without a running worker.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

from media_pipeline.config import (
    BACKLOG_CRITICAL,
    BACKLOG_WARNING,
    FAILURE_RATE_CRITICAL,
    FAILURE_RATE_MIN_SAMPLE,
    FAILURE_RATE_WARNING,
    MEMORY_CRITICAL_RATIO,
    MEMORY_WARNING_RATIO,
)

logger = logging.getLogger(__name__)

PROC_STATM = Path("/proc/self/statm")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


def worst(*statuses: HealthStatus) -> HealthStatus:
    return max(statuses, key=_SEVERITY.__getitem__, default=HealthStatus.HEALTHY)


@dataclass(frozen=True)
class HealthThresholds:
    memory_warning: float = MEMORY_WARNING_RATIO
    memory_critical: float = MEMORY_CRITICAL_RATIO
    backlog_warning: int = BACKLOG_WARNING
    backlog_critical: int = BACKLOG_CRITICAL
    failure_rate_warning: float = FAILURE_RATE_WARNING
    failure_rate_critical: float = FAILURE_RATE_CRITICAL
    min_sample: int = FAILURE_RATE_MIN_SAMPLE


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    reasons: Tuple[str, ...] = ()
    memory_ratio: float = 0.0
    backlog: int = 0
    failure_rate: Optional[float] = None


def _grade(value: float, warning: float, critical: float) -> HealthStatus:
    if value >= critical:
        return HealthStatus.UNHEALTHY
    if value >= warning:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def classify_health(
    memory_ratio: float,
    backlog: int,
    processed: int,
    failed: int,
    thresholds: HealthThresholds = HealthThresholds(),
) -> HealthReport:
    """
    Grade memory pressure, queue backlog and failure rate; the worst wins.

    Failure rate only counts once ``processed + failed`` reaches the
    minimum sample size.
    """
    reasons = []

    memory = _grade(memory_ratio, thresholds.memory_warning, thresholds.memory_critical)
    if memory != HealthStatus.HEALTHY:
        reasons.append(f"memory usage at {memory_ratio:.0%}")

    queue = _grade(backlog, thresholds.backlog_warning, thresholds.backlog_critical)
    if queue != HealthStatus.HEALTHY:
        reasons.append(f"{backlog} jobs waiting")

    failure_rate = None
    failures = HealthStatus.HEALTHY
    finished = processed + failed
    if finished >= thresholds.min_sample and finished > 0:
        failure_rate = failed / finished
        failures = _grade(
            failure_rate, thresholds.failure_rate_warning, thresholds.failure_rate_critical
        )
        if failures != HealthStatus.HEALTHY:
            reasons.append(f"failure rate at {failure_rate:.0%}")

    return HealthReport(
        status=worst(memory, queue, failures),
        reasons=tuple(reasons),
        memory_ratio=memory_ratio,
        backlog=backlog,
        failure_rate=failure_rate,
    )


def process_memory_ratio(statm_path: Path = PROC_STATM) -> float:
    """
    Current resident memory of this process as a share of physical memory.

    Reads the live RSS from ``/proc/self/statm``, so the ratio falls again
    once memory is released. Returns 0.0 where procfs is not available.
    """
    try:
        page_size = os.sysconf("SC_PAGE_SIZE")
        total = page_size * os.sysconf("SC_PHYS_PAGES")
        resident_pages = int(statm_path.read_text().split()[1])
    except (ValueError, OSError, AttributeError, IndexError) as exc:
        logger.debug("Memory usage unavailable: %s", exc)
        return 0.0
    if total <= 0:
        return 0.0
    return min(1.0, resident_pages * page_size / total)


@dataclass(frozen=True)
class StatsSnapshot:
    processed: int
    failed: int
    retried: int
    active_jobs: int
    total_processing_ms: int
    average_processing_ms: float
    files_cleaned: int
    started_at: float
    last_processed_at: Optional[datetime] = None
    total_video_duration: float = 0.0
    average_video_size: float = 0.0

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, time.time() - self.started_at)


@dataclass
class WorkerStats:
    """Rolling counters for one media kind. Safe to share between worker slots."""

    processed: int = 0
    failed: int = 0
    retried: int = 0
    active_jobs: int = 0
    total_processing_ms: int = 0
    files_cleaned: int = 0
    total_video_duration: float = 0.0
    total_video_size: int = 0
    last_processed_at: Optional[datetime] = None
    started_at: float = field(default_factory=time.time)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def job_started(self) -> None:
        with self._lock:
            self.active_jobs += 1

    def job_retrying(self) -> None:
        with self._lock:
            self.active_jobs = max(0, self.active_jobs - 1)
            self.retried += 1

    def job_finished(
        self,
        success: bool,
        duration_ms: int,
        video_duration: Optional[float] = None,
        file_size: Optional[int] = None,
    ) -> None:
        with self._lock:
            self.active_jobs = max(0, self.active_jobs - 1)
            if success:
                self.processed += 1
                if video_duration is not None:
                    self.total_video_duration += video_duration
                if file_size is not None:
                    self.total_video_size += file_size
            else:
                self.failed += 1
            self.total_processing_ms += max(0, int(duration_ms))
            self.last_processed_at = datetime.now(timezone.utc)

    def job_dropped(self) -> None:
        """The attempt's outcome was discarded because the job was reclaimed."""
        with self._lock:
            self.active_jobs = max(0, self.active_jobs - 1)

    def job_reclaimed(self, failed: bool) -> None:
        """A stalled claim was returned to the queue or failed by the reclaimer."""
        with self._lock:
            if failed:
                self.failed += 1
                self.last_processed_at = datetime.now(timezone.utc)
            else:
                self.retried += 1

    def files_removed(self, count: int = 1) -> None:
        with self._lock:
            self.files_cleaned += count

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            finished = self.processed + self.failed
            return StatsSnapshot(
                processed=self.processed,
                failed=self.failed,
                retried=self.retried,
                active_jobs=self.active_jobs,
                total_processing_ms=self.total_processing_ms,
                average_processing_ms=round(self.total_processing_ms / finished, 2) if finished else 0.0,
                files_cleaned=self.files_cleaned,
                started_at=self.started_at,
                last_processed_at=self.last_processed_at,
                total_video_duration=self.total_video_duration,
                average_video_size=round(self.total_video_size / self.processed, 2) if self.processed else 0.0,
            )


def export_stats(snapshot: StatsSnapshot, report: HealthReport, queue_depth: int) -> Dict[str, Any]:
    """Shape polled by external monitoring."""
    return {
        "status": report.status.value,
        "uptime": round(snapshot.uptime_seconds, 1),
        "processed": snapshot.processed,
        "failed": snapshot.failed,
        "avgProcessingTimeMs": snapshot.average_processing_ms,
        "queueDepth": queue_depth,
    }
