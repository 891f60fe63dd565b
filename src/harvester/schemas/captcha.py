"""Captcha Harvester wire schemas.

Defines the frames exchanged on the harvest channel, the surface channel
and the Redis lifecycle events.

Harvest channel (client <-> broker):
- inbound:  {"type": "CaptchaRequest", "data": {...}}
- outbound: {"type": "CaptchaResponse", "data": {"value", "createdAt"}}
- outbound: {"type": "Error", "data": "<message>"}

Surface channel (captcha page <-> broker):
- inbound:  {"type": "CaptchaSubmit", "data": {"value", "createdAt"}}
- outbound: {"type": "Close"}
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ============================================================================
# Enums
# ============================================================================


class MessageType(str, Enum):
    """Frame types on the harvest and surface channels."""

    CAPTCHA_REQUEST = "CaptchaRequest"
    CAPTCHA_RESPONSE = "CaptchaResponse"
    CAPTCHA_SUBMIT = "CaptchaSubmit"
    ERROR = "Error"
    CLOSE = "Close"


class ErrorMessage(str, Enum):
    """Payloads of outbound Error frames."""

    INVALID_MESSAGE_FORMAT = "Invalid Message Format"
    INVALID_CAPTCHA_REQUEST = "Invalid Captcha Request"
    DUPLICATE_CAPTCHA_ID = "Duplicate Captcha Id"
    WINDOW_CLOSED = "Captcha Window Closed"
    TIMED_OUT = "Captcha Timed Out"


# ============================================================================
# Request Schemas
# ============================================================================


class CaptchaRequestData(BaseModel):
    """A challenge submitted by a harvest client."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    page_url: str = Field(..., alias="pageUrl", min_length=1, description="Page the captcha belongs to")
    sitekey: str = Field(..., min_length=1, description="Captcha site key")
    captcha_id: str = Field(..., alias="captchaId", min_length=1, description="Caller supplied correlation id")
    auto_click: bool = Field(default=False, alias="autoClick", description="Ask the page to click the checkbox")

    @field_validator("page_url")
    @classmethod
    def validate_page_url(cls, v: str) -> str:
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError("pageUrl must be an absolute http(s) URL")
        return v


class CaptchaSubmitData(BaseModel):
    """A token submitted by the captcha page."""

    value: str = Field(..., description="Solved captcha token")
    created_at: Any = Field(default=None, alias="createdAt", description="Solve time as reported by the page")


# ============================================================================
# Response Schemas
# ============================================================================


class CaptchaResponseData(BaseModel):
    """Payload of a CaptchaResponse frame."""

    model_config = ConfigDict(populate_by_name=True)

    value: str
    created_at: Any = Field(default=None, alias="createdAt")


class CaptchaResponseFrame(BaseModel):
    type: MessageType = MessageType.CAPTCHA_RESPONSE
    data: CaptchaResponseData

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ErrorFrame(BaseModel):
    type: MessageType = MessageType.ERROR
    data: ErrorMessage

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ============================================================================
# Pub/Sub Event Schemas
# ============================================================================


class HarvestEventType(str, Enum):
    """Types of session lifecycle events for pub/sub."""

    SESSION_CREATED = "session_created"
    SOLVED = "solved"
    FAILED = "failed"
    REJECTED = "rejected"


class HarvestEvent(BaseModel):
    """Event published to the harvest events channel."""

    type: HarvestEventType
    payload: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
