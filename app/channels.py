"""
Channel arbitration: which channel an outgoing message may use.

WhatsApp free-text is only allowed inside the session window that an
inbound WhatsApp message opens. SMS is never restricted.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.errors import Err, ErrorKind, Ok, Result
from app.models import Channel
from app.storage import get_conversation, has_inbound_since
from app.utils import utc_now

logger = logging.getLogger(__name__)


def recent_inbound_channel(
    db: Session,
    conversation_id: Optional[str],
    lookback_hours: int = 24,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    The conversation's stored channel if an inbound message arrived within
    the lookback window, otherwise None.
    """
    if not conversation_id:
        return None

    conversation = get_conversation(db, conversation_id)
    if conversation is None or conversation.channel is None:
        return None

    since = (now or utc_now()) - timedelta(hours=lookback_hours)
    if has_inbound_since(db, conversation_id, since):
        return conversation.channel
    return None


def resolve_send_channel(
    requested: str,
    recent: Optional[str],
    templated: bool = False,
    auto_upgrade: bool = False,
    lookback_hours: int = 24,
) -> Result:
    """
    Decide the outgoing channel.

    Args:
        requested: channel asked for by the caller
        recent: result of recent_inbound_channel()
        templated: provider-approved template content, exempt from the window
        auto_upgrade: move SMS requests to WhatsApp while a WhatsApp session is open

    Returns:
        Ok(channel) or Err(OUTSIDE_SESSION_WINDOW)
    """
    if requested == Channel.SMS:
        if auto_upgrade and recent == Channel.WHATSAPP:
            logger.info("Recent WhatsApp inbound, upgrading SMS send to WhatsApp")
            return Ok(Channel.WHATSAPP)
        return Ok(Channel.SMS)

    if requested != Channel.WHATSAPP:
        return Err(ErrorKind.VALIDATION, f"Invalid channel: {requested}")

    if recent == Channel.WHATSAPP or templated:
        return Ok(Channel.WHATSAPP)

    return Err(
        ErrorKind.OUTSIDE_SESSION_WINDOW,
        f"Cannot send WhatsApp message: no inbound message in the last {lookback_hours} hours. "
        "Use SMS or an approved template.",
    )
