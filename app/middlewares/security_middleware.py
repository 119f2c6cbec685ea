from typing import Callable, Dict, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# The API only ever returns JSON, so production can forbid every resource type.
PROD_SECURITY_HEADERS: Dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
    "Cross-Origin-Resource-Policy": "same-origin",
}

# /docs loads Swagger UI assets from a CDN, so no CSP outside production.
DEV_SECURITY_HEADERS: Dict[str, str] = {
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class _SecurityHeadersMiddleware(BaseHTTPMiddleware):
    default_headers: Dict[str, str] = {}

    def __init__(self, app, custom_headers: Optional[Dict[str, str]] = None):
        super().__init__(app)
        self.headers = {**self.default_headers, **(custom_headers or {})}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        for header_name, header_value in self.headers.items():
            response.headers[header_name] = header_value

        return response


class ProdSecurityMiddleware(_SecurityHeadersMiddleware):
    default_headers = PROD_SECURITY_HEADERS


class DevSecurityMiddleware(_SecurityHeadersMiddleware):
    default_headers = DEV_SECURITY_HEADERS
