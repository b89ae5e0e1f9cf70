"""
Per-conversation metadata: last activity and per-participant archive/mute.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wachat import message_store
from wachat.errors import Forbidden
from wachat.identity import conversation_participants, is_participant
from wachat.models import Conversation, ConversationArchive, ConversationMute, Message, MessageStatus
from wachat.user_store import get_user
from wachat.utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


def get_conversation(db: Session, conversation_id: str) -> Optional[Conversation]:
    return db.get(Conversation, conversation_id)


def get_or_create(
    db: Session,
    conversation_id: str,
    participants: Sequence[str],
    creator: str,
) -> Conversation:
    """Idempotent upsert. Every call touches last_activity."""
    now = utcnow()
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        first, second = sorted(participants)
        conversation = Conversation(
            conversation_id=conversation_id,
            participant_a=first,
            participant_b=second,
            created_by=creator,
            last_activity=now,
            created_at=now,
        )
        db.add(conversation)
        try:
            db.commit()
            logger.info(f"Conversation created: {conversation_id}")
            return conversation
        except IntegrityError:
            db.rollback()
            conversation = db.get(Conversation, conversation_id)

    conversation.last_activity = now
    db.commit()
    return conversation


def _for_participant(db: Session, conversation_id: str, participant: str) -> Conversation:
    if not is_participant(conversation_id, participant):
        raise Forbidden("Access denied to this conversation")
    return get_or_create(db, conversation_id, conversation_participants(conversation_id), participant)


def set_archived(db: Session, conversation_id: str, participant: str, archived: bool) -> Conversation:
    """Add or remove the participant's archive entry. Both directions are idempotent."""
    conversation = _for_participant(db, conversation_id, participant)
    entry = conversation.archive_entry(participant)

    if archived and entry is None:
        conversation.archives.append(ConversationArchive(participant=participant, archived_at=utcnow()))
    elif not archived and entry is not None:
        conversation.archives.remove(entry)
    else:
        return conversation

    try:
        db.commit()
    except IntegrityError:
        # Concurrent toggle already wrote the same entry
        db.rollback()
    db.refresh(conversation)
    logger.info(f"Conversation {conversation_id} archived={archived} for {participant}")
    return conversation


def set_muted(
    db: Session,
    conversation_id: str,
    participant: str,
    muted: bool,
    until: Optional[datetime] = None,
) -> Conversation:
    """
    Add or remove the participant's mute entry.

    Muting an already-muted conversation keeps the single entry and
    replaces its expiry.
    """
    conversation = _for_participant(db, conversation_id, participant)
    entry = conversation.mute_entry(participant)
    until = to_naive_utc(until) if until else None

    if muted:
        if entry is None:
            conversation.mutes.append(
                ConversationMute(participant=participant, muted_at=utcnow(), muted_until=until)
            )
        else:
            entry.muted_until = until
    elif entry is not None:
        conversation.mutes.remove(entry)
    else:
        return conversation

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
    db.refresh(conversation)
    logger.info(f"Conversation {conversation_id} muted={muted} for {participant}")
    return conversation


def is_muted_for(conversation: Optional[Conversation], participant: str, now: Optional[datetime] = None) -> bool:
    """True while the participant's mute entry exists and has not expired."""
    if conversation is None:
        return False
    entry = conversation.mute_entry(participant)
    if entry is None:
        return False
    if entry.muted_until is None:
        return True
    return (to_naive_utc(now) if now else utcnow()) < entry.muted_until


def delete_conversation(db: Session, conversation_id: str) -> bool:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        return False
    db.delete(conversation)
    db.commit()
    logger.info(f"Conversation deleted: {conversation_id}")
    return True


def _summary(db: Session, conversation_id: str, participant: str, conversation: Optional[Conversation]) -> Dict:
    first, second = conversation_participants(conversation_id)
    other_id = second if first == participant else first
    last_message: Optional[Message] = message_store.latest_visible_message(db, conversation_id, participant)
    archive = conversation.archive_entry(participant) if conversation else None

    return {
        "conversation_id": conversation_id,
        "user": get_user(db, other_id),
        "other_participant": other_id,
        "last_message": message_store.display_content(last_message) if last_message else "",
        "last_message_time": last_message.created_at if last_message else (
            conversation.last_activity if conversation else None
        ),
        "last_message_type": last_message.message_type if last_message else "text",
        "last_message_status": last_message.status if last_message else MessageStatus.SENT.value,
        "unread_count": message_store.unread_count(db, conversation_id, participant),
        "is_archived": archive is not None,
        "archived_at": archive.archived_at if archive else None,
        "is_muted": is_muted_for(conversation, participant),
    }


def list_archived(db: Session, participant: str) -> List[Dict]:
    """
    Conversations the participant archived, most recently active first,
    each joined with its latest visible message and unread count.
    """
    conversations = db.scalars(
        select(Conversation)
        .join(ConversationArchive, ConversationArchive.conversation_id == Conversation.conversation_id)
        .where(ConversationArchive.participant == participant)
        .order_by(Conversation.last_activity.desc())
    )
    return [_summary(db, c.conversation_id, participant, c) for c in conversations]


def list_conversations(db: Session, participant: str, include_archived: bool = False) -> List[Dict]:
    """Every conversation the participant has messages in, most recent first."""
    summaries = []
    for conversation_id in message_store.conversation_ids_for(db, participant):
        conversation = db.get(Conversation, conversation_id)
        summary = _summary(db, conversation_id, participant, conversation)
        if summary["is_archived"] and not include_archived:
            continue
        summaries.append(summary)

    summaries.sort(key=lambda s: s["last_message_time"] or datetime.min, reverse=True)
    return summaries
