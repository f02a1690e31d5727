"""
Request ID Middleware

Tags every request with an ID that is echoed back to the client and
attached to upload rejections in the logs.
"""

from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from media_pipeline.core.security import REQUEST_ID_HEADER, get_request_id


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    - Reuses a well-formed incoming X-Request-ID
    - Generates a new one otherwise
    - Returns it in the response headers
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = get_request_id(request)
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
