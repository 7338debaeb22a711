"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from app.storage import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel:
    """Delivery channels. A conversation with channel NULL (UNSET) is a legacy row."""
    SMS = "sms"
    WHATSAPP = "whatsapp"
    UNSET = None

    ALL = (SMS, WHATSAPP)


class ConfirmationStatus:
    UNCONFIRMED = "UNCONFIRMED"
    SOFT_CONFIRMED = "SOFT_CONFIRMED"
    LIKELY_CONFIRMED = "LIKELY_CONFIRMED"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"

    FINAL = (CONFIRMED, DECLINED)


class Associate(Base):
    """
    A contractor who receives shift reminders.

    Table: associates
    company_id is nullable for records imported without a tenant binding.
    """
    __tablename__ = "associates"

    id = Column(String, primary_key=True, default=_uuid)
    company_id = Column(String, nullable=True, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=False, index=True)
    opted_out = Column(Boolean, nullable=False, default=False)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=_uuid)
    company_id = Column(String, nullable=False, index=True)
    job_title = Column(String, nullable=False)
    customer_name = Column(String, nullable=False)


class JobAssignment(Base):
    """
    A (job, associate) pairing with its remaining reminder budget.

    Table: job_assignments
    Primary Key: (job_id, associate_id)
    """
    __tablename__ = "job_assignments"
    __table_args__ = (
        CheckConstraint("num_reminders >= 0", name="ck_job_assignments_budget"),
    )

    job_id = Column(String, ForeignKey("jobs.id"), primary_key=True)
    associate_id = Column(String, ForeignKey("associates.id"), primary_key=True)
    work_date = Column(Date, nullable=False, index=True)
    start_time = Column(String, nullable=False)  # "HH:MM[:SS]" UTC
    num_reminders = Column(Integer, nullable=False, default=0)
    last_reminder_time = Column(DateTime(timezone=True), nullable=True)
    confirmation_status = Column(String, nullable=True)
    last_confirmation_time = Column(DateTime(timezone=True), nullable=True)


class Conversation(Base):
    """
    Conversation thread for one (associate, company, channel) triad.

    Table: conversations
    channel is assigned once; NULL marks a row created before channel tracking.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("associate_id", "company_id", "channel", name="uq_conversation_triad"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    associate_id = Column(String, ForeignKey("associates.id"), nullable=False, index=True)
    company_id = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Message(Base):
    """
    Table: messages
    status is only mutated by the delivery-status processor.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=_uuid)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(String, nullable=False)  # inbound / outbound
    sender_type = Column(String, nullable=False)  # associate / company
    body = Column(Text, nullable=True)
    status = Column(String, nullable=True)
    twilio_sid = Column(String, nullable=True, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)


class MessageEvent(Base):
    """
    Append-only delivery lifecycle record.

    Table: message_events
    Unique (message_sid, message_status) makes duplicate callbacks no-ops.
    """
    __tablename__ = "message_events"
    __table_args__ = (
        UniqueConstraint("message_sid", "message_status", name="uq_message_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_sid = Column(String, nullable=False, index=True)
    message_status = Column(String, nullable=False)
    channel = Column(String, nullable=False)
    to_number = Column(String, nullable=False)
    from_number = Column(String, nullable=False)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    message_id = Column(String, ForeignKey("messages.id"), nullable=True)
    fallback_sms_message_id = Column(String, ForeignKey("messages.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RateLimitWindow(Base):
    """
    Per-company send counter for one UTC minute.

    Table: rate_limit_windows
    Rows are never deleted here; retention is handled outside the service.
    """
    __tablename__ = "rate_limit_windows"

    company_id = Column(String, primary_key=True)
    window = Column(String, primary_key=True)  # YYYY-M-D-H-M
    count = Column(Integer, nullable=False, default=0)


class CredentialBinding(Base):
    """Provider subaccount and sender numbers for a company."""
    __tablename__ = "credential_bindings"

    id = Column(String, primary_key=True, default=_uuid)
    company_id = Column(String, nullable=False, index=True)
    subaccount_sid = Column(String, nullable=False)
    auth_token_encrypted = Column(Text, nullable=False)
    sms_number = Column(String, nullable=False)
    whatsapp_number = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
