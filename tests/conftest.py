"""
Shared fixtures for the media pipeline tests.

Run with: pytest tests/ -v
"""

import threading
import time
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
import pytest

from media_pipeline.core.engines import EngineResult, TransformEngine
from media_pipeline.core.models import Job, utcnow
from media_pipeline.core.operations import MediaKind, OperationPlan
from media_pipeline.core.plan_builder import FileContext, build_plan


def write_image(path: Path, width: int, height: int, seed: int = 0) -> Path:
    """Random noise compresses badly, so even small images clear the minimum upload size."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    ok, buf = cv2.imencode(path.suffix, pixels)
    assert ok
    buf.tofile(str(path))
    return path


def write_mp4_stub(path: Path, size: int = 4096) -> Path:
    """Bytes that pass the mp4 signature check without being a playable video."""
    header = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isomiso2"
    path.write_bytes(header + b"\x00" * (size - len(header)))
    return path


class FakeEngine(TransformEngine):
    """
    Scriptable engine.

    Each call to ``apply`` consumes the next outcome: an exception is
    raised, ``"empty"`` writes a zero-byte artifact, ``"zero"`` reports
    zero dimensions and ``None`` succeeds. ``delay`` makes every call
    sleep first; ``max_active`` records the most calls seen at once.
    """

    def __init__(
        self,
        kind: MediaKind = MediaKind.IMAGE,
        outcomes: Optional[List] = None,
        width: int = 32,
        height: int = 24,
        delay: float = 0.0,
    ):
        self.kind = kind
        self.outcomes = list(outcomes or [])
        self.width = width
        self.height = height
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def apply(
        self,
        source: Path,
        plan: OperationPlan,
        output_dir: Path,
        output_stem: str,
        deadline: Optional[float] = None,
    ) -> EngineResult:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        try:
            if self.delay:
                time.sleep(self.delay)
            return self._outcome(outcome, plan, output_dir, output_stem)
        finally:
            with self._lock:
                self.active -= 1

    def _outcome(self, outcome, plan: OperationPlan, output_dir: Path, output_stem: str) -> EngineResult:
        if isinstance(outcome, BaseException):
            raise outcome

        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / f"{output_stem}.{plan.output_format}"
        output_path.write_bytes(b"" if outcome == "empty" else b"transformed")
        zero = outcome == "zero"
        return EngineResult(
            output_path=output_path,
            format=plan.output_format,
            applied_operations=tuple(plan.descriptors()),
            width=0 if zero else self.width,
            height=0 if zero else self.height,
            duration=12.5 if self.kind == MediaKind.VIDEO else None,
        )

    def inspect(self, path: Path) -> EngineResult:
        return EngineResult(
            output_path=path,
            format=path.suffix.lstrip("."),
            applied_operations=(),
            width=self.width,
            height=self.height,
        )


def make_image_job(
    source: Path,
    job_id: str = "img-0123456789abcdef",
    operations: Optional[dict] = None,
    max_attempts: int = 3,
    **overrides,
) -> Job:
    size = source.stat().st_size
    plan = build_plan(
        MediaKind.IMAGE,
        operations if operations is not None else {"resize": {"width": 16}},
        FileContext(size=size, media_type="image/png"),
    )
    fields = dict(
        id=job_id,
        kind=MediaKind.IMAGE,
        source_path=str(source),
        original_name=source.name,
        declared_size=size,
        media_type="image/png",
        submitted_at=utcnow(),
        plan=plan,
        max_attempts=max_attempts,
    )
    fields.update(overrides)
    return Job(**fields)


@pytest.fixture
def png_file(tmp_path: Path) -> Path:
    return write_image(tmp_path / "photo.png", 64, 48)


@pytest.fixture
def small_png(tmp_path: Path) -> Path:
    return write_image(tmp_path / "small.png", 40, 40, seed=1)


@pytest.fixture
def mp4_file(tmp_path: Path) -> Path:
    return write_mp4_stub(tmp_path / "clip.mp4")


@pytest.fixture
def watermark_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "watermarks"
    directory.mkdir()
    write_image(directory / "logo.png", 20, 10, seed=2)
    return directory
