"""
Tests for the job processor, the worker pool and fault classification.

Run with: pytest tests/test_processor.py -v
"""

import asyncio
import subprocess
import time
from pathlib import Path

import pytest

from conftest import FakeEngine, make_image_job
from media_pipeline.core.cleanup import CleanupManager
from media_pipeline.core.errors import (
    EngineFault,
    ErrorCode,
    FaultKind,
    MissingInputFault,
    TimeoutFault,
    TransientIOFault,
    ValidationFault,
)
from media_pipeline.core.models import CleanupReason, JobState
from media_pipeline.core.queue import InMemoryJobQueue
from media_pipeline.core.stats import WorkerStats
from media_pipeline.core.storage import LocalArtifactStorage
from media_pipeline.core.worker import EventEmitter, JobProcessor, WorkerPool, classify_fault


class Harness:
    """One queue, processor and event log wired like a single-kind runtime."""

    def __init__(self, tmp_path: Path, engine: FakeEngine, job_timeout: float = 5.0, lease_seconds: float = 330.0):
        self.queue = InMemoryJobQueue("image", lease_seconds=lease_seconds)
        self.stats = WorkerStats()
        self.cleanup = CleanupManager("image", stats=self.stats)
        self.output_dir = tmp_path / "processed"
        self.events = []
        emitter = EventEmitter([self._record])
        self.processor = JobProcessor(
            queue=self.queue,
            engine=engine,
            stats=self.stats,
            cleanup=self.cleanup,
            storage=LocalArtifactStorage(),
            output_dir=self.output_dir,
            job_timeout=job_timeout,
            events=emitter,
            base_delay=0.0,
            max_delay=0.0,
        )

    async def _record(self, event):
        self.events.append(event.type)

    async def run_once(self, job):
        await self.queue.enqueue(job)
        claimed = await self.queue.claim(timeout=0.5)
        return await self.processor.process(claimed)

    async def run_until_terminal(self, job, max_rounds: int = 5):
        await self.queue.enqueue(job)
        for _ in range(max_rounds):
            claimed = await self.queue.claim(timeout=0.5)
            result = await self.processor.process(claimed)
            if result.is_terminal:
                return result
        raise AssertionError("job never reached a terminal state")


class TestSuccess:
    def test_completes_and_schedules_source_cleanup(self, tmp_path, png_file):
        harness = Harness(tmp_path, FakeEngine())
        job = asyncio.run(harness.run_once(make_image_job(png_file)))

        assert job.state == JobState.COMPLETED
        assert job.progress == 100
        assert job.result.media.width == 32
        assert job.result.output_size == len(b"transformed")
        assert job.result.operations == ("resize:16xauto", "format:png:c9")
        assert Path(job.result.output_path) == harness.output_dir / f"{job.id}.png"
        assert harness.cleanup.is_pending(str(png_file))
        assert harness.stats.snapshot().processed == 1
        assert harness.stats.snapshot().active_jobs == 0

    def test_event_sequence(self, tmp_path, png_file):
        harness = Harness(tmp_path, FakeEngine())
        asyncio.run(harness.run_once(make_image_job(png_file)))
        assert harness.events[0] == "started"
        assert harness.events[-1] == "completed"
        assert harness.events.count("progress") == 4

    def test_failing_listener_does_not_break_processing(self, tmp_path, png_file):
        harness = Harness(tmp_path, FakeEngine())

        async def broken(event):
            raise RuntimeError("listener down")

        harness.processor.events.subscribe(broken)
        job = asyncio.run(harness.run_once(make_image_job(png_file)))
        assert job.state == JobState.COMPLETED


class TestRetries:
    def test_transient_fault_then_success(self, tmp_path, png_file):
        engine = FakeEngine(outcomes=[TransientIOFault("disk hiccup")])
        harness = Harness(tmp_path, engine)
        job = asyncio.run(harness.run_until_terminal(make_image_job(png_file)))

        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 2
        assert engine.calls == 2
        assert job.failure_code is None
        assert harness.cleanup.is_pending(str(png_file))
        snapshot = harness.stats.snapshot()
        assert snapshot.retried == 1
        assert snapshot.processed == 1
        assert snapshot.failed == 0
        assert "retrying" in harness.events

    def test_source_kept_while_retrying(self, tmp_path, png_file):
        engine = FakeEngine(outcomes=[TransientIOFault("disk hiccup")])
        harness = Harness(tmp_path, engine)
        job = asyncio.run(harness.run_once(make_image_job(png_file)))

        assert job.state == JobState.WAITING
        assert job.failure_code == "TRANSIENT_IO"
        assert not harness.cleanup.is_pending(str(png_file))

    def test_retries_exhausted(self, tmp_path, png_file):
        engine = FakeEngine(outcomes=[TransientIOFault("down")] * 3)
        harness = Harness(tmp_path, engine)
        job = asyncio.run(harness.run_until_terminal(make_image_job(png_file, max_attempts=3)))

        assert job.state == JobState.FAILED
        assert job.attempts_made == 3
        assert job.failure_code == "TRANSIENT_IO"
        (task,) = harness.cleanup.pending()
        assert task.reason == CleanupReason.MAX_RETRIES_EXCEEDED
        assert harness.stats.snapshot().failed == 1
        assert harness.stats.snapshot().retried == 2

    def test_unexpected_exception_is_retried(self, tmp_path, png_file):
        engine = FakeEngine(outcomes=[RuntimeError("segfault-ish")])
        harness = Harness(tmp_path, engine)
        job = asyncio.run(harness.run_until_terminal(make_image_job(png_file)))
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 2

    def test_timeout_is_retryable(self, tmp_path, png_file):
        class SlowEngine(FakeEngine):
            def apply(self, *args, **kwargs):
                if self.calls == 0:
                    self.calls += 1
                    time.sleep(0.3)
                    raise TransientIOFault("too late to matter")
                return super().apply(*args, **kwargs)

        harness = Harness(tmp_path, SlowEngine(), job_timeout=0.05)
        job = asyncio.run(harness.run_once(make_image_job(png_file)))
        assert job.state == JobState.WAITING
        assert job.failure_code == "PROCESSING_TIMEOUT"


class TestTerminalFailures:
    def test_input_fault_fails_immediately(self, tmp_path, png_file):
        engine = FakeEngine(outcomes=[EngineFault("bad pixels", FaultKind.INPUT, ErrorCode.CORRUPTED_INPUT)])
        harness = Harness(tmp_path, engine)
        job = asyncio.run(harness.run_once(make_image_job(png_file)))

        assert job.state == JobState.FAILED
        assert job.attempts_made == 1
        assert job.failure_code == "CORRUPTED_INPUT"
        (task,) = harness.cleanup.pending()
        assert task.path == str(png_file)
        assert task.reason == CleanupReason.UNRECOVERABLE_ERROR
        assert harness.events[-1] == "failed"

    def test_partial_output_scheduled_for_cleanup(self, tmp_path, png_file):
        engine = FakeEngine(outcomes=[EngineFault("bad pixels", FaultKind.INPUT)])
        harness = Harness(tmp_path, engine)
        job = make_image_job(png_file)
        harness.output_dir.mkdir(parents=True)
        leftover = harness.output_dir / f"{job.id}.png"
        leftover.write_bytes(b"half")

        asyncio.run(harness.run_once(job))
        assert harness.cleanup.is_pending(str(leftover))

    @pytest.mark.parametrize("outcome, code", [("empty", "EMPTY_OUTPUT"), ("zero", "ZERO_DIMENSIONS")])
    def test_output_integrity(self, tmp_path, png_file, outcome, code):
        harness = Harness(tmp_path, FakeEngine(outcomes=[outcome]))
        job = asyncio.run(harness.run_once(make_image_job(png_file)))
        assert job.state == JobState.FAILED
        assert job.failure_code == code

    def test_missing_source(self, tmp_path, png_file):
        harness = Harness(tmp_path, FakeEngine())
        job = make_image_job(png_file)
        png_file.unlink()
        job = asyncio.run(harness.run_once(job))
        assert job.state == JobState.FAILED
        assert job.failure_code == "FILE_NOT_FOUND"

    def test_source_revalidated_before_transform(self, tmp_path, png_file):
        engine = FakeEngine()
        harness = Harness(tmp_path, engine)
        job = make_image_job(png_file)
        size = png_file.stat().st_size
        png_file.write_bytes(b"MZ" + b"\x00" * (size - 2))

        job = asyncio.run(harness.run_once(job))
        assert job.state == JobState.FAILED
        assert job.failure_code == "INVALID_FILE_HEADER"
        assert engine.calls == 0


class TestReclaimedJobs:
    def test_result_dropped_after_reclaim(self, tmp_path, png_file):
        harness = Harness(tmp_path, FakeEngine())

        async def scenario():
            await harness.queue.enqueue(make_image_job(png_file))
            claimed = await harness.queue.claim(timeout=0.5)
            # Another worker now owns the job
            await harness.queue.release(claimed.id)
            await harness.processor.process(claimed)
            return await harness.queue.get(claimed.id)

        job = asyncio.run(scenario())
        assert job.state == JobState.WAITING
        assert not harness.cleanup.is_pending(str(png_file))
        snapshot = harness.stats.snapshot()
        assert snapshot.active_jobs == 0
        assert snapshot.processed == 0

    def test_late_worker_cannot_finish_reclaimed_job(self, tmp_path, png_file):
        engine = FakeEngine(delay=0.3)
        harness = Harness(tmp_path, engine, lease_seconds=0.05)

        async def scenario():
            await harness.queue.enqueue(make_image_job(png_file))
            first = await harness.queue.claim(timeout=0.5)
            late = asyncio.create_task(harness.processor.process(first))
            await asyncio.sleep(0.1)
            await harness.queue.reclaim_stalled()
            # A second slot picks the job up while the first is still in the engine
            second = await harness.queue.claim(timeout=0.5)
            token = second.claim_token
            await late
            return await harness.queue.get(first.id), token

        job, token = asyncio.run(scenario())
        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 2
        assert job.claim_token == token
        assert not harness.cleanup.is_pending(str(png_file))
        assert harness.stats.snapshot().processed == 0


class TestWorkerPool:
    @pytest.mark.parametrize("concurrency", [1, 2])
    def test_timed_out_jobs_keep_their_slot(self, tmp_path, png_file, concurrency):
        engine = FakeEngine(delay=0.3)
        harness = Harness(tmp_path, engine, job_timeout=0.05)

        async def scenario():
            pool = WorkerPool(
                "image", harness.queue, harness.processor, concurrency=concurrency, poll_interval=0.05
            )
            await pool.start()
            for n in range(3):
                await harness.queue.enqueue(make_image_job(png_file, job_id=f"img-{n:08x}", max_attempts=1))
            for _ in range(200):
                counts = await harness.queue.counts()
                if counts["failed"] == 3:
                    break
                await asyncio.sleep(0.02)
            await pool.stop(drain_timeout=1.0)
            return counts

        counts = asyncio.run(scenario())
        assert counts["failed"] == 3
        assert engine.calls == 3
        assert engine.max_active == concurrency

    def test_pool_drains_queue(self, tmp_path, png_file):
        harness = Harness(tmp_path, FakeEngine())

        async def scenario():
            pool = WorkerPool("image", harness.queue, harness.processor, concurrency=2, poll_interval=0.05)
            await pool.start()
            for n in range(3):
                await harness.queue.enqueue(make_image_job(png_file, job_id=f"img-{n:08x}"))
            for _ in range(100):
                counts = await harness.queue.counts()
                if counts["completed"] == 3:
                    break
                await asyncio.sleep(0.02)
            await pool.stop(drain_timeout=1.0)
            return counts, pool.running

        counts, running = asyncio.run(scenario())
        assert counts["completed"] == 3
        assert not running


class TestClassifyFault:
    def test_pipeline_faults_pass_through(self):
        fault = ValidationFault("nope")
        assert classify_fault(fault) is fault

    @pytest.mark.parametrize(
        "exc, fault_type, retryable",
        [
            (FileNotFoundError(2, "No such file", "a.png"), MissingInputFault, False),
            (asyncio.TimeoutError(), TimeoutFault, True),
            (subprocess.TimeoutExpired("ffmpeg", 10), TimeoutFault, True),
            (PermissionError("denied"), TransientIOFault, True),
            (ValueError("odd"), EngineFault, True),
        ],
    )
    def test_mapping(self, exc, fault_type, retryable):
        fault = classify_fault(exc)
        assert isinstance(fault, fault_type)
        assert fault.retryable is retryable

    def test_unknown_errors_are_internal(self):
        assert classify_fault(KeyError("x")).code == ErrorCode.INTERNAL_ERROR
