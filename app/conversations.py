"""
Conversation identity: one conversation per (associate, company, channel).

Rows created before channel tracking have channel UNSET. A single such row
is promoted in place; when there are several, none is guessed and a new
conversation is created instead.
"""

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Channel, Conversation
from app.storage import create_conversation, find_conversations, get_conversation, set_conversation_channel

logger = logging.getLogger(__name__)


def promote_if_unambiguous(db: Session, candidates: List[Conversation], channel: str) -> Optional[Conversation]:
    """
    Assign `channel` to the only legacy candidate.

    Returns the promoted conversation, or None when there is not exactly one
    candidate, another writer promoted it first, or another writer already
    created the `channel` conversation.
    """
    if len(candidates) != 1:
        if candidates:
            logger.warning(
                f"{len(candidates)} legacy conversations for associate {candidates[0].associate_id}, "
                "not promoting any"
            )
        return None

    legacy_id = candidates[0].id
    try:
        promoted = set_conversation_channel(db, legacy_id, channel)
    except IntegrityError:
        db.rollback()
        logger.info(f"Legacy conversation {legacy_id} not promoted, a {channel} conversation already exists")
        return None
    if not promoted:
        return None

    logger.info(f"Promoted legacy conversation {legacy_id} to {channel}")
    db.expire(candidates[0])
    return get_conversation(db, legacy_id)


def resolve_conversation(db: Session, associate_id: str, company_id: str, channel: str) -> Conversation:
    """
    Find or create the conversation for (associate, company, channel).

    1. exact match
    2. promotion of a single legacy row
    3. a new conversation
    """
    existing = find_conversations(db, associate_id, company_id, channel)
    if existing:
        return existing[0]

    legacy = find_conversations(db, associate_id, company_id, Channel.UNSET)
    promoted = promote_if_unambiguous(db, legacy, channel)
    if promoted is not None:
        return promoted

    # A concurrent request may have promoted or created the row meanwhile
    existing = find_conversations(db, associate_id, company_id, channel)
    if existing:
        return existing[0]

    return create_conversation(db, associate_id, company_id, channel)
