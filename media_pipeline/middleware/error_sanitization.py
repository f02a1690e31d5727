"""
Error Sanitization Middleware

Turns anything that escaped the exception handlers into the API's error
envelope without leaking internals.
"""

import json
import logging
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from media_pipeline.core.errors import ErrorCode

logger = logging.getLogger(__name__)


def internal_error_body(request_id: str) -> str:
    return json.dumps({
        "error": {
            "code": ErrorCode.INTERNAL_ERROR.value,
            "message": "Internal server error",
            "details": {"request_id": request_id},
        }
    })


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    In production, 500 responses lose their body and unhandled exceptions
    become a generic error. The full error is always logged server-side.
    """

    def __init__(self, app: ASGIApp, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = getattr(request.state, "request_id", "unknown")
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled exception in request %s: %s", request_id, exc)
            if self.debug:
                raise
            return Response(content=internal_error_body(request_id), status_code=500, media_type="application/json")

        if response.status_code == 500 and not self.debug:
            return Response(content=internal_error_body(request_id), status_code=500, media_type="application/json")
        return response
