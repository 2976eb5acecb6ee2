"""
Shared/common Pydantic schemas used across multiple endpoints
"""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, PlainSerializer

# Naive UTC datetimes from the database, serialized with a Z suffix
# Usage: created_at: UTCDatetime instead of created_at: datetime
UTCDatetime = Annotated[
    datetime,
    PlainSerializer(lambda dt: dt.strftime("%Y-%m-%dT%H:%M:%SZ"), return_type=str),
]

UTCDatetimeOptional = Annotated[
    datetime | None,
    PlainSerializer(
        lambda dt: dt.strftime("%Y-%m-%dT%H:%M:%SZ") if dt else None,
        return_type=str | None,
    ),
]


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class CountResponse(BaseModel):
    """Result of a bulk operation."""

    message: str
    count: int
