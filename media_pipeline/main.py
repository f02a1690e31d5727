"""Media Pipeline - FastAPI Application Entry Point.

Accepts image and video uploads, queues transformation jobs and serves
their status and artifacts.
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from media_pipeline.config import ALLOWED_HOSTS, CORS_ORIGINS, DEBUG, logger
from media_pipeline.core.errors import ErrorCode, MediaPipelineError
from media_pipeline.core.pipeline import MediaPipeline
from media_pipeline.middleware import (
    ErrorSanitizationMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from media_pipeline.routers import health, jobs, uploads
from media_pipeline.version import __version__


def error_body(code: str, message: str, details: Optional[dict] = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


# -----------------------------------------------------------------------------
# Application Factory
# -----------------------------------------------------------------------------

def create_app(pipeline: Optional[MediaPipeline] = None, debug: bool = DEBUG) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Media Pipeline v%s", __version__)
        app.state.pipeline = pipeline or MediaPipeline()
        await app.state.pipeline.start()
        yield
        logger.info("Shutting down Media Pipeline")
        await app.state.pipeline.stop()

    app = FastAPI(
        title="Media Pipeline",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if debug else None,
        redoc_url="/redoc" if debug else None,
        openapi_url="/openapi.json" if debug else None,
    )

    # -------------------------------------------------------------------------
    # Middleware Stack (last added runs first)
    # -------------------------------------------------------------------------

    app.add_middleware(ErrorSanitizationMiddleware, debug=debug)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware, exclude_paths={"/health"})

    if ALLOWED_HOSTS and ALLOWED_HOSTS != ["*"]:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )

    # Outermost so every log line and error body can carry the ID
    app.add_middleware(RequestIDMiddleware)

    # -------------------------------------------------------------------------
    # Exception Handlers
    # -------------------------------------------------------------------------

    @app.exception_handler(MediaPipelineError)
    async def pipeline_exception_handler(request: Request, exc: MediaPipelineError):
        """Faults carry their own status code; only code, message and details are exposed."""
        if exc.status_code >= 500:
            logger.error("Request %s failed: %r", getattr(request.state, "request_id", "unknown"), exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code.value, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors with clean messages."""
        clean_errors = [
            {"field": ".".join(str(loc) for loc in err.get("loc", [])), "message": err.get("msg", "Invalid value")}
            for err in exc.errors()[:5]
        ]
        return JSONResponse(
            status_code=422,
            content=error_body(ErrorCode.INVALID_OPERATIONS.value, "Validation error", {"errors": clean_errors}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions with consistent format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(f"HTTP_{exc.status_code}", str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    # -------------------------------------------------------------------------
    # Routers
    # -------------------------------------------------------------------------

    app.include_router(health.router)
    app.include_router(uploads.router)
    app.include_router(jobs.router)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "media_pipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=DEBUG,
        limit_concurrency=100,
    )
