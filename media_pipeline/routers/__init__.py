"""
API routers.
"""

from media_pipeline.routers import health, jobs, uploads

__all__ = ["health", "jobs", "uploads"]
