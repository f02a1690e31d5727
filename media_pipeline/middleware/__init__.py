"""
HTTP middleware for the media pipeline API.

Provides:
- Request ID injection
- Request/response logging
- Error sanitization
- Security headers
"""

from media_pipeline.middleware.request_id import RequestIDMiddleware
from media_pipeline.middleware.logging import RequestLoggingMiddleware
from media_pipeline.middleware.error_sanitization import ErrorSanitizationMiddleware
from media_pipeline.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "RequestIDMiddleware",
    "RequestLoggingMiddleware",
    "ErrorSanitizationMiddleware",
    "SecurityHeadersMiddleware",
]
