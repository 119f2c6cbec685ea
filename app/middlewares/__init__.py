from .auth_middleware import AuthMiddleware, AuthState, get_current_user
from .request_id_middleware import RequestIDMiddleware
from .security_middleware import DevSecurityMiddleware, ProdSecurityMiddleware

__all__ = [
    "AuthMiddleware",
    "AuthState",
    "DevSecurityMiddleware",
    "ProdSecurityMiddleware",
    "RequestIDMiddleware",
    "get_current_user",
]
