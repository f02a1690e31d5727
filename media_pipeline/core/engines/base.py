"""
Transform engine contract.

An engine executes a whole ``OperationPlan`` against one source file and
writes one artifact. It is synchronous and CPU bound; the worker runs it
in a thread. Failures are raised as pipeline faults, with ``EngineFault``
telling the worker whether the input or the environment is to blame.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from media_pipeline.core.operations import MediaKind, OperationPlan


@dataclass(frozen=True)
class EngineResult:
    output_path: Path
    format: str
    applied_operations: Tuple[str, ...]
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    codec: Optional[str] = None
    fps: Optional[float] = None
    channels: Optional[int] = None
    has_alpha: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class TransformEngine(ABC):
    """Executes operation plans for one media kind."""

    kind: MediaKind

    @abstractmethod
    def apply(
        self,
        source: Path,
        plan: OperationPlan,
        output_dir: Path,
        output_stem: str,
        deadline: Optional[float] = None,
    ) -> EngineResult:
        """
        Run ``plan`` against ``source`` and write the artifact into ``output_dir``.

        The artifact is named ``<output_stem>.<ext>`` so a retried job
        overwrites its previous partial output. ``deadline`` is a
        ``time.monotonic()`` value; past it the engine stops at its next
        checkpoint and raises ``TimeoutFault``.
        """
        ...

    @abstractmethod
    def inspect(self, path: Path) -> EngineResult:
        """Read the dimensions or duration of an existing artifact."""
        ...
