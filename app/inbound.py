"""
Inbound message ingestion for the provider's incoming-message webhook.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.conversations import resolve_conversation
from app.metrics import inbound_messages_total, record_outcome
from app.models import Associate
from app.schemas import InboundMessageForm
from app.storage import create_message, find_associates_by_phone
from app.utils import detect_channel, normalize_phone_for_lookup, strip_channel_prefix, utc_now

logger = logging.getLogger(__name__)


def resolve_associate(db: Session, phone_number: str) -> Optional[Associate]:
    """
    Find the sender by normalized number, then by the raw number.

    Several matches are tolerated: the first one bound to a company wins.
    """
    normalized = normalize_phone_for_lookup(phone_number)
    matches = find_associates_by_phone(db, normalized)
    if not matches and normalized != phone_number:
        matches = find_associates_by_phone(db, phone_number)
    if not matches:
        return None

    if len(matches) > 1:
        logger.warning(f"{len(matches)} associates share phone number {normalized}")

    with_company = [associate for associate in matches if associate.company_id]
    return with_company[0] if with_company else matches[0]


class InboundIngestor:
    def __init__(self, session_factory: Callable, parser=None, clock: Callable[[], datetime] = utc_now):
        self.session_factory = session_factory
        self.parser = parser
        self.clock = clock

    def on_inbound_message(self, message: InboundMessageForm) -> str:
        """
        Store one inbound message against its conversation.

        Never raises. Returns the outcome: stored, unresolved or error.
        """
        try:
            return self._ingest(message)
        except Exception:
            logger.exception(f"Failed to ingest inbound message from {message.from_number}")
            record_outcome(inbound_messages_total, "error")
            return "error"

    def _ingest(self, message: InboundMessageForm) -> str:
        channel = detect_channel(message.from_number, message.to)
        sender = strip_channel_prefix(message.from_number)
        body = (message.body or "").strip()

        with self.session_factory() as db:
            associate = resolve_associate(db, sender)
            if associate is None:
                logger.error(f"Inbound {channel} message from unknown number {sender}, not stored")
                record_outcome(inbound_messages_total, "unresolved")
                return "unresolved"
            if not associate.company_id:
                logger.error(f"Associate {associate.id} has no company, inbound message not stored")
                record_outcome(inbound_messages_total, "unresolved")
                return "unresolved"

            associate_id, company_id = associate.id, associate.company_id

            # Parsed before the message is stored
            if self.parser is not None:
                try:
                    action = self.parser.handle(
                        associate_id,
                        company_id,
                        body,
                        first_name=associate.first_name or "",
                        reply_to=sender,
                        channel=channel,
                    )
                    logger.info(f"Inbound message from {associate_id} parsed as {action}")
                except Exception:
                    logger.exception(f"Confirmation parser failed for associate {associate_id}")

            conversation = resolve_conversation(db, associate_id, company_id, channel)
            stored = create_message(
                db,
                conversation_id=conversation.id,
                direction="inbound",
                sender_type="associate",
                body=body,
                sent_at=self.clock(),
                status="received",
                twilio_sid=message.message_sid,
            )
            logger.info(f"Stored inbound {channel} message {stored.id} in conversation {conversation.id}")

        record_outcome(inbound_messages_total, "stored")
        return "stored"
