from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
import uuid

from pydantic import Field

from app.schemas.camel_base_model import CamelCaseBaseModel as BaseModel
from app.utils.datetime_utils import utc_now


class ApiResponse(BaseModel):
    """
    Envelope for every JSON body the API returns, success or error.

    Notification payloads go in ``data``; error codes such as
    ``INVALID_TIMEZONE`` or ``USER_MISMATCH`` go in ``meta.error_code``.
    """

    success: bool
    status: Literal["success", "error"]
    message: str = Field(..., description="Human-readable summary of the outcome")
    data: Optional[Any] = None
    meta: Optional[Dict[str, Any]] = Field(
        default=None, description="Error codes and other machine-readable extras"
    )
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Per-field request validation failures"
    )
    timestamp: datetime = Field(default_factory=utc_now)
    request_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Same value as the X-Request-ID response header",
    )
    path: Optional[str] = None
