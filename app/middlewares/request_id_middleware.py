import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.utils.context import set_request_id
from app.utils.logging import get_logger

REQUEST_ID_HEADER = "X-Request-ID"

logger = get_logger()


def _parse_request_id(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id and writes one access log line for it.

    A well-formed UUID in ``X-Request-ID`` is reused so that the caller's
    traces line up with ours; anything else is replaced with a fresh id.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _parse_request_id(request.headers.get(REQUEST_ID_HEADER)) or str(
            uuid.uuid4()
        )
        request.state.request_id = request_id
        set_request_id(request_id)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.bind(request_id=request_id).info(
            f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)"
        )
        return response
