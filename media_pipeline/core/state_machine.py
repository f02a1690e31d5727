"""
Job state machine.

Pure transition rules with no logging or I/O, so they can be tested in
isolation. The queue applies them; the worker asks them what to do after
a failed attempt.

    waiting -> active -> completed
                      -> failed
                      -> waiting   (retry with backoff)
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from media_pipeline.core.errors import InvalidTransition
from media_pipeline.core.models import CleanupReason, Job, JobState

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.WAITING: frozenset({JobState.ACTIVE}),
    JobState.ACTIVE: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.WAITING}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}

# Progress checkpoints written by the owning worker
PROGRESS_STARTED = 10
PROGRESS_VALIDATED = 30
PROGRESS_TRANSFORMED = 90
PROGRESS_DONE = 100


def can_transition(current: JobState, target: JobState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(job: Job, target: JobState) -> None:
    """Move ``job`` to ``target`` or raise ``InvalidTransition``."""
    if not can_transition(job.state, target):
        raise InvalidTransition(
            f"Job {job.id} cannot move from {job.state.value} to {target.value}",
            details={"job_id": job.id, "from": job.state.value, "to": target.value},
        )
    job.state = target


def advance_progress(current: int, value: int) -> int:
    """Progress only moves forward and stays within 0-100."""
    return max(current, min(100, max(0, int(value))))


def compute_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff: ``base * 2 ** (attempt - 1)`` capped at ``max_delay``."""
    if attempt < 1:
        attempt = 1
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class FailureDecision:
    """What happens to a job after a failed attempt."""

    retry: bool
    delay: float = 0.0
    cleanup_reason: Optional[CleanupReason] = None

    @property
    def next_state(self) -> JobState:
        return JobState.WAITING if self.retry else JobState.FAILED


def decide_failure(
    retryable: bool,
    attempts_made: int,
    max_attempts: int,
    base_delay: float,
    max_delay: float,
) -> FailureDecision:
    """
    Retry a retryable fault while attempts remain; otherwise fail terminally.

    Terminal failures always carry a cleanup reason so the source file is
    released exactly as on success.
    """
    if not retryable:
        return FailureDecision(retry=False, cleanup_reason=CleanupReason.UNRECOVERABLE_ERROR)
    if attempts_made >= max_attempts:
        return FailureDecision(retry=False, cleanup_reason=CleanupReason.MAX_RETRIES_EXCEEDED)
    return FailureDecision(retry=True, delay=compute_backoff(attempts_made, base_delay, max_delay))
