"""
Security Utilities

Request ID generation and propagation.
"""

import re
import secrets

from fastapi import Request

from media_pipeline.core.security.constants import REQUEST_ID_HEADER

_REQUEST_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return secrets.token_hex(16)


def get_request_id(request: Request) -> str:
    """Get or generate request ID from request."""
    request_id = request.headers.get(REQUEST_ID_HEADER)
    if request_id and len(request_id) <= 64 and _REQUEST_ID_PATTERN.match(request_id):
        return request_id
    return generate_request_id()
