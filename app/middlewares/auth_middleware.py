from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.utils.errors import AuthenticationError, AuthorizationError
from app.utils.logging import get_logger

logger = get_logger()

USER_ID_HEADER = "X-User-ID"


class AuthState:
    """Authentication state to be stored in request.state"""

    def __init__(self, user_id: str, is_authenticated: bool = True):
        self.user_id = user_id
        self.is_authenticated = is_authenticated


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Resolves the caller from the identity header set by the upstream gateway.

    Requests without the header pass through unauthenticated; routes that need
    a caller enforce it with ``get_current_user``.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.auth = self._authenticate_request(request)
        return await call_next(request)

    def _authenticate_request(self, request: Request) -> Optional[AuthState]:
        user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
        if not user_id:
            return None
        return AuthState(user_id=user_id)


# Dependency for getting current user from request state
def get_current_user(request: Request) -> AuthState:
    """Dependency to get current authenticated user from request state"""
    auth_state = getattr(request.state, "auth", None)

    if not auth_state or not auth_state.is_authenticated:
        raise AuthenticationError("Not authenticated", "NOT_AUTHENTICATED")

    return auth_state


def ensure_same_user(current_user: AuthState, user_id: Optional[str], field: str) -> str:
    """Callers may only act as themselves; an omitted id means the caller."""
    if user_id is None or user_id.strip() == "":
        return current_user.user_id
    if user_id.strip() != current_user.user_id:
        logger.warning(
            f"User {current_user.user_id} attempted to act as {field}={user_id}"
        )
        raise AuthorizationError(
            f"{field} must match the authenticated user", "USER_MISMATCH"
        )
    return current_user.user_id
