"""
Delivery-status processor for provider status callbacks.

Every (MessageSid, MessageStatus) pair is recorded once; repeats are no-ops.
A WhatsApp message rejected with the policy-violation error code is re-sent
once over SMS.
"""

import logging
import re
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.conversations import resolve_conversation
from app.gate import CredentialGate
from app.metrics import record_outcome, sms_fallbacks_total, status_callbacks_total
from app.models import Channel
from app.schemas import StatusCallbackForm
from app.storage import (
    create_message,
    create_message_event,
    first_policy_failure_event_id,
    get_conversation,
    get_message_by_sid,
    has_fallback,
    link_event_fallback,
    link_event_message,
    update_message_status,
)
from app.utils import detect_channel, normalize_phone_for_lookup, strip_channel_prefix, utc_now

logger = logging.getLogger(__name__)

FAILED_STATUSES = ("failed", "undelivered")
DELIVERED_STATUS = "delivered"

TEMPLATE_MARKER_RE = re.compile(r"\[Template:.*?\]\[Variables: .*?\]", re.DOTALL)
FALLBACK_NOTICE = "This message was delivered via SMS because it could not be delivered on WhatsApp."


def strip_template_markers(body: Optional[str]) -> str:
    """Remove provider template markers; an empty result becomes the SMS notice."""
    stripped = TEMPLATE_MARKER_RE.sub("", body or "").strip()
    return stripped or FALLBACK_NOTICE


def run_inline(func: Callable, *args) -> None:
    func(*args)


class DeliveryStatusProcessor:
    def __init__(
        self,
        session_factory: Callable,
        gate: CredentialGate,
        provider,
        policy_error_code: str = "63049",
        spawn: Callable = run_inline,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.gate = gate
        self.provider = provider
        self.policy_error_code = policy_error_code
        self.spawn = spawn
        self.clock = clock

    def needs_fallback(self, channel: str, status: str, error_code: Optional[str]) -> bool:
        return (
            channel == Channel.WHATSAPP
            and status in FAILED_STATUSES
            and error_code == self.policy_error_code
        )

    def on_status_callback(self, callback: StatusCallbackForm) -> str:
        """
        Record one status callback.

        Never raises. Returns the outcome: created, duplicate, dropped or error.
        """
        if not callback.message_sid or not callback.message_status:
            logger.warning("Status callback missing MessageSid or MessageStatus, dropping")
            record_outcome(status_callbacks_total, "dropped")
            return "dropped"

        status = callback.message_status.lower()
        channel = detect_channel(callback.to, callback.from_number)
        to_number = normalize_phone_for_lookup(strip_channel_prefix(callback.to))

        try:
            with self.session_factory() as db:
                event, is_duplicate = create_message_event(
                    db,
                    message_sid=callback.message_sid,
                    message_status=status,
                    channel=channel,
                    to_number=to_number,
                    from_number=normalize_phone_for_lookup(strip_channel_prefix(callback.from_number)),
                    error_code=callback.error_code,
                    error_message=callback.error_message,
                )
                if is_duplicate:
                    record_outcome(status_callbacks_total, "duplicate")
                    return "duplicate"

                event_id = event.id
                message = get_message_by_sid(db, callback.message_sid)
                if message is None:
                    logger.info(f"No message row for {callback.message_sid} yet, event {event_id} stored unlinked")
                else:
                    link_event_message(db, event_id, message.id)
                    delivered_at = self.clock() if status == DELIVERED_STATUS else None
                    update_message_status(db, message.id, status, delivered_at=delivered_at)
        except SQLAlchemyError as e:
            logger.error(f"Failed to process status callback for {callback.message_sid}: {e}")
            record_outcome(status_callbacks_total, "error")
            return "error"

        logger.info(f"Status {status} recorded for {callback.message_sid} ({channel})")
        record_outcome(status_callbacks_total, "created")

        if self.needs_fallback(channel, status, callback.error_code):
            logger.info(f"WhatsApp policy failure for {callback.message_sid}, scheduling SMS fallback")
            self.spawn(self.send_sms_fallback, event_id, callback.message_sid, to_number)
        return "created"

    def send_sms_fallback(self, event_id: int, message_sid: str, to_number: str) -> Optional[str]:
        """
        Re-send a failed WhatsApp message over SMS.

        Only the earliest policy-failure event of a message may send, and only
        while no fallback is recorded for it. Failures are logged and
        swallowed.

        Returns:
            id of the fallback Message, or None when nothing was sent
        """
        try:
            return self._send_sms_fallback(event_id, message_sid, to_number)
        except Exception:
            logger.exception(f"SMS fallback failed for {message_sid}")
            record_outcome(sms_fallbacks_total, "error")
            return None

    def _send_sms_fallback(self, event_id: int, message_sid: str, to_number: str) -> Optional[str]:
        with self.session_factory() as db:
            original = get_message_by_sid(db, message_sid)
            if original is None:
                logger.warning(f"SMS fallback skipped for {message_sid}: original message not found")
                record_outcome(sms_fallbacks_total, "skipped")
                return None

            if has_fallback(db, message_sid):
                logger.info(f"SMS fallback already sent for {message_sid}")
                record_outcome(sms_fallbacks_total, "skipped")
                return None

            first_event_id = first_policy_failure_event_id(
                db, message_sid, FAILED_STATUSES, self.policy_error_code
            )
            if first_event_id != event_id:
                logger.info(f"SMS fallback for {message_sid} belongs to event {first_event_id}, not {event_id}")
                record_outcome(sms_fallbacks_total, "skipped")
                return None

            conversation = get_conversation(db, original.conversation_id)
            credentials = self.gate.resolve_credentials(conversation.company_id)
            if not credentials.ok:
                logger.error(f"SMS fallback for {message_sid}: {credentials.message}")
                record_outcome(sms_fallbacks_total, "failed")
                return None

            body = strip_template_markers(original.body)
            sent = self.provider.send(credentials.value, to_number, body, Channel.SMS)
            if not sent.success:
                logger.error(f"SMS fallback send failed for {message_sid}: {sent.error}")
                record_outcome(sms_fallbacks_total, "failed")
                return None

            sms_conversation = resolve_conversation(
                db, conversation.associate_id, conversation.company_id, Channel.SMS
            )
            fallback = create_message(
                db,
                conversation_id=sms_conversation.id,
                direction="outbound",
                sender_type="company",
                body=body,
                sent_at=self.clock(),
                status=sent.status or "queued",
                twilio_sid=sent.message_sid,
            )
            fallback_id = fallback.id
            link_event_fallback(db, event_id, fallback_id)

        logger.info(f"SMS fallback {fallback_id} sent for WhatsApp message {message_sid}")
        record_outcome(sms_fallbacks_total, "sent")
        return fallback_id
