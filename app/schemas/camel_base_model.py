import uuid
from datetime import datetime, date
from enum import Enum
from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel

from app.utils.datetime_utils import isoformat_utc


class CamelCaseBaseModel(BaseModel):
    """
    Base model with camelCase field aliases and automatic serialization.

    - Input: camelCase keys from clients (or snake_case names) are accepted.
    - Internal: snake_case fields are used throughout the Python codebase.
    - Output: call `model_dump(by_alias=True)` to get camelCase keys back.
    - Auto-serialization: UUIDs and Enums become strings, datetimes become
      UTC ISO strings with millisecond precision (``2024-06-10T13:00:00.000Z``),
      nested models are dumped by alias.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_serializer("*")
    def serialize_any(self, value):
        """Global serializer for all fields with comprehensive type handling"""

        if isinstance(value, BaseModel):
            return value.model_dump(by_alias=True)

        if isinstance(value, uuid.UUID):
            return str(value)

        if isinstance(value, Enum):
            return value.value

        # datetime must come before date
        if isinstance(value, datetime):
            return isoformat_utc(value)

        if isinstance(value, date):
            return value.isoformat()

        if isinstance(value, (list, tuple, set)):
            return [self.serialize_any(item) for item in value]

        if isinstance(value, dict):
            return {key: self.serialize_any(val) for key, val in value.items()}

        if value is None or isinstance(value, (str, int, float, bool)):
            return value

        return str(value)
