from fastapi import HTTPException, Request, status

from media_pipeline.core.pipeline import MediaPipeline


def get_pipeline(request: Request) -> MediaPipeline:
    """The pipeline started by the application lifespan."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not ready")
    return pipeline
