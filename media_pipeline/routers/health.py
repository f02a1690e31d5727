"""
Health and statistics endpoints for monitoring.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from media_pipeline.core.pipeline import MediaPipeline
from media_pipeline.core.stats import HealthStatus
from media_pipeline.routers.deps import get_pipeline
from media_pipeline.schemas import HealthResponse
from media_pipeline.version import __version__

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(pipeline: MediaPipeline = Depends(get_pipeline)):
    """Load balancer check; unhealthy answers 503."""
    summary = await pipeline.health()
    body = HealthResponse(
        status=summary["status"],
        version=__version__,
        uptime=summary["uptime"],
        processed=summary["processed"],
        failed=summary["failed"],
        avg_processing_time_ms=summary["avgProcessingTimeMs"],
        queue_depth=summary["queueDepth"],
    )
    if body.status == HealthStatus.UNHEALTHY.value:
        return JSONResponse(status_code=503, content=body.model_dump(mode="json", by_alias=True))
    return body


@router.get("/api/stats")
async def get_stats(pipeline: MediaPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Per-queue counters, health reasons and job counts."""
    return await pipeline.health()
