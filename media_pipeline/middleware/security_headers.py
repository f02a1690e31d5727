"""
Security Headers Middleware

Adds browser hardening headers to every API response.
"""

from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# The interactive docs load scripts and styles from a CDN
DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to all responses.

    Headers:
    - X-Frame-Options / frame-ancestors: Responses are never framed
    - X-Content-Type-Options: Downloads are served with their real type only
    - Referrer-Policy: Presigned artifact URLs do not leak through referrers
    - Strict-Transport-Security: Enforces HTTPS
    - Content-Security-Policy: Nothing is loaded from an API response
    - Cache-Control: Job status and errors are never cached
    """

    def __init__(
        self,
        app: ASGIApp,
        csp_policy: Optional[str] = None,
        hsts_max_age: int = 31536000,
        include_subdomains: bool = True,
        docs_paths: Iterable[str] = DOCS_PATHS,
    ):
        super().__init__(app)

        hsts_parts = [f"max-age={hsts_max_age}"]
        if include_subdomains:
            hsts_parts.append("includeSubDomains")
        self.hsts_header = "; ".join(hsts_parts)

        self.csp_policy = csp_policy or "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"
        self.docs_paths = tuple(docs_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        path = request.url.path

        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Strict-Transport-Security", self.hsts_header)
        response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")

        if not path.startswith(self.docs_paths):
            response.headers.setdefault("Content-Security-Policy", self.csp_policy)

        # Artifacts may be cached by the client; everything else under /api may not
        if path.startswith("/api") and not path.endswith("/download"):
            response.headers.setdefault("Cache-Control", "no-store")
            response.headers.setdefault("Pragma", "no-cache")

        return response
