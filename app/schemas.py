"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the send API and reminder endpoints
- Form models for the Twilio webhooks
- Queue payload model (send task)
- Response models for API responses
"""

from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from app.models import Channel
from app.reminders import ReminderTier


MESSAGE_TYPES = ("immediate", "reminder")


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant; a missing offset is read as UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_instant(value: datetime) -> str:
    """Canonical instant form: UTC, millisecond precision, Z suffix."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def describe_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic error into one line for the API error body."""
    parts = []
    for item in error.errors():
        field = ".".join(str(loc) for loc in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        parts.append(f"{field}: {message}" if field else message)
    return "Invalid request: " + "; ".join(parts)


# =============================================================================
# Send API
# =============================================================================

class SendRequest(BaseModel):
    """
    Body of POST /messages/send.

    Validates:
    - to/message: required, non-blank
    - message_type: 'immediate' or 'reminder', inferred from target_time when absent
    - target_time: ISO-8601 whenever given, normalized to UTC milliseconds;
      required for reminders and strictly in the future there
    - channel: 'sms' (default) or 'whatsapp'
    """
    to: str = Field(..., description="Recipient phone number")
    # Note: 'from' is a reserved word in Python, so we use alias
    from_number: Optional[str] = Field(None, alias="from", description="Optional sender override")
    message: str = Field(..., description="Message text")
    target_time: Optional[str] = Field(None, description="ISO-8601 instant for scheduled reminders")
    message_type: Optional[str] = Field(None, description="immediate or reminder")
    channel: str = Field(default=Channel.SMS, description="sms or whatsapp")
    conversation_id: Optional[str] = Field(None, description="Conversation used for the session-window check")
    content_sid: Optional[str] = Field(None, description="Approved provider template")

    model_config = {"populate_by_name": True}

    @field_validator("to", "message")
    @classmethod
    def required_non_blank(cls, v: str, info) -> str:
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} is required")
        return v.strip()

    @field_validator("message_type")
    @classmethod
    def known_message_type(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in MESSAGE_TYPES:
            raise ValueError("invalid message_type, expected 'immediate' or 'reminder'")
        return v

    @field_validator("channel")
    @classmethod
    def known_channel(cls, v: str) -> str:
        channel = (v or Channel.SMS).lower()
        if channel not in Channel.ALL:
            raise ValueError("invalid channel, expected 'sms' or 'whatsapp'")
        return channel

    @model_validator(mode="after")
    def resolve_type_and_time(self) -> "SendRequest":
        if self.message_type is None:
            self.message_type = "reminder" if self.target_time else "immediate"

        if self.message_type == "reminder" and not self.target_time:
            raise ValueError("target_time required for reminders")

        if self.target_time:
            try:
                instant = parse_instant(self.target_time)
            except ValueError:
                raise ValueError("target_time is invalid, expected an ISO-8601 timestamp")
            if self.message_type == "reminder" and instant <= datetime.now(timezone.utc):
                raise ValueError("target_time is invalid, it must be in the future")
            self.target_time = format_instant(instant)
        return self


class SendTask(BaseModel):
    """Queue payload consumed by the delivery workers."""
    message_id: str
    company_id: str
    to: str
    from_number: Optional[str] = Field(None, serialization_alias="from")
    body: str
    message_type: str
    channel: str
    target_time: Optional[str] = None
    conversation_id: Optional[str] = None
    content_sid: Optional[str] = None
    twilio_subaccount_sid: str
    twilio_auth_token_encrypted: str
    created_at: str


class SendResponse(BaseModel):
    success: bool = True
    messageId: str
    status: str = "queued"
    to: str
    from_number: Optional[str] = Field(None, serialization_alias="from")
    channel: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    type: str = Field(..., description="client_error or server_error")


# =============================================================================
# Twilio Webhook Forms
# =============================================================================

class StatusCallbackForm(BaseModel):
    """
    Delivery status callback. MessageSid and MessageStatus are checked by
    the processor rather than here, so a malformed callback is dropped
    instead of being rejected.
    """
    message_sid: Optional[str] = Field(None, alias="MessageSid")
    message_status: Optional[str] = Field(None, alias="MessageStatus")
    to: str = Field("", alias="To")
    from_number: str = Field("", alias="From")
    error_code: Optional[str] = Field(None, alias="ErrorCode")
    error_message: Optional[str] = Field(None, alias="ErrorMessage")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("error_code", "error_message", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None or str(v).strip() == "":
            return None
        return str(v)


class InboundMessageForm(BaseModel):
    from_number: str = Field("", alias="From")
    to: str = Field("", alias="To")
    body: str = Field("", alias="Body")
    message_sid: Optional[str] = Field(None, alias="MessageSid")

    model_config = {"populate_by_name": True, "extra": "ignore"}


# =============================================================================
# Reminder Endpoints
# =============================================================================

class ReminderTriggerRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    work_date: date
    start_time: str = Field(..., min_length=1)
    reminder_type: ReminderTier

    @field_validator("reminder_type", mode="before")
    @classmethod
    def known_tier(cls, v):
        if isinstance(v, str) and v in ReminderTier.__members__:
            return ReminderTier[v]
        if isinstance(v, ReminderTier):
            return v
        raise ValueError(
            f"invalid reminder_type, expected one of {', '.join(ReminderTier.__members__)}"
        )


class ReminderTestRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    associate_id: str = Field(..., min_length=1)


class ReminderResultResponse(BaseModel):
    success: bool
    job_id: str
    associate_id: str
    phone_number: Optional[str] = None
    reminder_type: str
    message_id: Optional[str] = None
    error: Optional[str] = None


class ProcessRemindersResponse(BaseModel):
    success: bool = True
    results: list[ReminderResultResponse] = Field(default_factory=list)
    processed: int = Field(..., ge=0)
    successful: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
