"""
middleware/security.py
HTTP security middleware

- SecurityHeadersMiddleware: hardening headers on every response
- AttackDetectionMiddleware: rejects URLs and query strings carrying
  SQL injection, XSS or path traversal payloads
"""

import logging
import urllib.parse

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from utils.input_sanitizer import detect_attack_pattern

logger = logging.getLogger(__name__)

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "script-src 'self'; "
    "img-src 'self' data: https:; "
    "object-src 'none'; "
    "frame-ancestors 'none'"
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to every response

    Strict-Transport-Security is only sent in production, where TLS is
    terminated in front of the API.
    """

    def __init__(self, app, production: bool = False):
        super().__init__(app)
        self.production = production

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        response.headers["Cache-Control"] = "no-store"

        if self.production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        if "server" in response.headers:
            del response.headers["server"]

        return response


class AttackDetectionMiddleware(BaseHTTPMiddleware):
    """Reject requests whose path or query string match known attack payloads"""

    async def dispatch(self, request: Request, call_next):
        target = request.url.path
        if request.url.query:
            target += "?" + urllib.parse.unquote_plus(request.url.query)

        is_malicious, attack_type, pattern = detect_attack_pattern(target)
        if is_malicious:
            client = request.client.host if request.client else "unknown"
            logger.warning(
                f"{attack_type} pattern detected from {client} on {request.method} {request.url.path}: {pattern}"
            )
            return JSONResponse(
                status_code=400,
                content={
                    "error": "Request contains potentially malicious content",
                    "code": "MALICIOUS_REQUEST",
                    "status_code": 400,
                },
            )

        return await call_next(request)
