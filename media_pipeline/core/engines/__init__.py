"""
Transform engines: one per media kind, sharing the ``TransformEngine`` contract.
"""

from media_pipeline.core.engines.base import EngineResult, TransformEngine
from media_pipeline.core.engines.image import ImageEngine
from media_pipeline.core.engines.video import VideoEngine

__all__ = [
    "EngineResult",
    "TransformEngine",
    "ImageEngine",
    "VideoEngine",
]
