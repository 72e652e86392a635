"""
Pydantic schemas for request/response validation.

This module contains:
- The Message and Preference models shared by the gateway, the API and the client
- Request models for incoming data validation
- Response models for API responses

JSON field names are camelCase; Python attributes are snake_case.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coursechat.utils import parse_timestamp

REDACTED_TEXT = "Message deleted"


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting both spellings."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# Domain Models
# =============================================================================

class Message(CamelModel):
    """
    A course chat message as seen by callers.

    Invariant: is_deleted implies text == "Message deleted" and
    original_text holds the text before the first deletion.
    """
    id: str = Field(..., description="Opaque unique message identifier")
    course_id: str = Field(..., description="Course the message belongs to")
    text: str = Field(..., description="Visible message text")
    author_id: str = Field(..., description="Identity of the author (owner)")
    author_display_name: str = Field(..., description="Author name shown in the chat")
    timestamp: datetime = Field(..., description="Creation time (UTC)")
    is_deleted: bool = Field(default=False, description="Soft-delete flag")
    original_text: Optional[str] = Field(None, description="Text before deletion")

    @classmethod
    def from_row(cls, row) -> "Message":
        """Build from a messages table row."""
        return cls(
            id=row.message_id,
            course_id=row.course_id,
            text=row.text,
            author_id=row.author_id,
            author_display_name=row.author_display_name,
            timestamp=parse_timestamp(row.ts),
            is_deleted=bool(row.is_deleted),
            original_text=row.original_text,
        )


class Preference(CamelModel):
    """Last selected course of a user."""
    user_id: Optional[str] = Field(None, description="User the preference belongs to")
    selected_course: str = Field(..., description="Course shown on next visit")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessageCreateRequest(CamelModel):
    """
    Body of POST /api/messages.

    Emptiness of course_id/text is checked by the gateway (400), not here.
    user_id/display_name are only honoured when identities are client-asserted.
    """
    course_id: Optional[str] = None
    text: Optional[str] = Field(None, max_length=4096)
    user_id: Optional[str] = None
    display_name: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"courseId": "mathematik", "text": "Hello"}]
        }
    )


class MessagePatch(CamelModel):
    """
    Body of PUT /api/messages/{id}.

    Only the fields present in the request are applied.
    """
    text: Optional[str] = Field(None, max_length=4096)
    is_deleted: Optional[bool] = None
    original_text: Optional[str] = None

    def changes(self) -> dict:
        """Fields present in the patch, keyed by attribute name."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class PreferenceRequest(CamelModel):
    """Body of POST /api/preferences."""
    selected_course: Optional[str] = None
    user_id: Optional[str] = None


class LoginRequest(BaseModel):
    """Body of POST /api/login."""
    username: Optional[str] = None
    password: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class UserResponse(CamelModel):
    """Logged-in user, without password."""
    username: str
    display_name: str


class SuccessResponse(BaseModel):
    """Acknowledgement for writes without a meaningful body."""
    success: bool = Field(default=True, description="Operation acknowledged")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
