"""Media transformation job pipeline."""

from media_pipeline.version import __version__

__all__ = ["__version__"]
