from typing import Any, Dict, List, Optional
import uuid
from fastapi import status, Request
from fastapi.responses import JSONResponse
from app.schemas.response_schemas import ApiResponse


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _render(request: Request, status_code: int, **fields: Any) -> JSONResponse:
    response = ApiResponse(
        request_id=_request_id(request),
        path=str(request.url.path),
        **fields,
    )
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(by_alias=True, exclude_none=True),
    )


class ResponseBuilder:
    """Builder class for creating standardized responses"""

    @staticmethod
    def success(
        request: Request,
        data: Any = None,
        message: str = "Request successful",
        meta: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> JSONResponse:
        """Create a success response"""
        return _render(
            request,
            status_code,
            success=True,
            status="success",
            message=message,
            data=data,
            meta=meta,
        )

    @staticmethod
    def error(
        request: Request,
        message: str = "An error occurred",
        errors: Optional[List[Dict[str, Any]]] = None,
        error_code: Optional[str] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        data: Any = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        """Create an error response; ``error_code`` lands in ``meta.error_code``."""
        response_meta = dict(meta or {})
        if error_code:
            response_meta["error_code"] = error_code

        return _render(
            request,
            status_code,
            success=False,
            status="error",
            message=message,
            data=data,
            meta=response_meta or None,
            errors=errors,
        )
