"""
Message persistence: creation, status transitions, deletion and queries.

Both producers (live sends and webhook ingestion) go through
create_message, keyed by message_id. Status and delete-for-everyone
changes are single conditional UPDATE statements so concurrent writers on
the same message can never regress its state.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wachat.config import settings
from wachat.errors import (
    DuplicateMessage,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
    WindowExpired,
)
from wachat.identity import canonical_conversation_id, is_participant
from wachat.models import (
    DELETED_PLACEHOLDER,
    Message,
    MessageDeletion,
    MessageStatus,
    MessageType,
    Origin,
)
from wachat.utils import isoformat_z, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

# Statuses a message may be in for a transition to the key status to apply.
# sent is never a target; failed is only reachable from sent.
STATUS_PREDECESSORS = {
    MessageStatus.SENT: (),
    MessageStatus.DELIVERED: (MessageStatus.SENT,),
    MessageStatus.READ: (MessageStatus.SENT, MessageStatus.DELIVERED),
    MessageStatus.FAILED: (MessageStatus.SENT,),
}

UNREAD_STATUSES = (MessageStatus.SENT.value, MessageStatus.DELIVERED.value)


def _visible_to(viewer_id: str):
    """Hide messages the viewer deleted for themself, unless deleted for everyone."""
    deleted_by_viewer = exists().where(
        MessageDeletion.message_id == Message.message_id,
        MessageDeletion.user_id == viewer_id,
    )
    return or_(Message.deleted_for_everyone.is_(True), ~deleted_by_viewer)


def _require_participant(conversation_id: str, viewer_id: str) -> None:
    if not is_participant(conversation_id, viewer_id):
        raise Forbidden("Access denied to this conversation")


def _status_values(new_status: MessageStatus, at: datetime) -> Dict:
    values = {"status": new_status.value}
    if new_status in (MessageStatus.DELIVERED, MessageStatus.READ):
        # read implies delivered; keep the first delivery time
        values["delivered_at"] = func.coalesce(Message.delivered_at, at)
    if new_status == MessageStatus.READ:
        values["read_at"] = at
    return values


# =============================================================================
# Writes
# =============================================================================

def create_message(
    db: Session,
    message_id: str,
    from_number: str,
    to_number: str,
    sender_name: str,
    message_type: MessageType = MessageType.TEXT,
    content: Optional[Dict] = None,
    status: MessageStatus = MessageStatus.SENT,
    origin: Origin = Origin.LIVE,
    created_at: Optional[datetime] = None,
    reply_to: Optional[str] = None,
) -> Message:
    """
    Insert a message exactly once.

    The conversation id is always derived here from the two participants,
    so every producer files the message under the same key.

    Raises:
        DuplicateMessage: message_id already exists
    """
    content = content or {}
    conversation_id = canonical_conversation_id(from_number, to_number)

    logger.info(f"Creating message: id={message_id}, conversation={conversation_id}, origin={origin.value}")

    if db.get(Message, message_id) is not None:
        raise DuplicateMessage(f"Message already exists: {message_id}")

    created = to_naive_utc(created_at) if created_at else utcnow()
    message = Message(
        message_id=message_id,
        conversation_id=conversation_id,
        from_number=from_number,
        to_number=to_number,
        sender_name=sender_name,
        message_type=MessageType(message_type).value,
        body=content.get("body"),
        media_url=content.get("media_url"),
        caption=content.get("caption"),
        filename=content.get("filename"),
        size=content.get("size"),
        created_at=created,
        status=MessageStatus(status).value,
        origin=Origin(origin).value,
        reply_to=reply_to,
    )
    if status in (MessageStatus.DELIVERED, MessageStatus.READ):
        message.delivered_at = created
    if status == MessageStatus.READ:
        message.read_at = created

    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent insert of the same id
        db.rollback()
        raise DuplicateMessage(f"Message already exists: {message_id}")

    logger.info(f"Message created successfully: {message_id}")
    return message


def append_status(
    db: Session,
    message_id: str,
    new_status: MessageStatus,
    at: Optional[datetime] = None,
) -> Tuple[Message, bool]:
    """
    Advance a message's status if new_status is forward of the current one.

    Backward or repeated transitions are silent no-ops, since transports
    redeliver status callbacks out of order.

    Returns:
        (message, changed)

    Raises:
        NotFound: message does not exist
    """
    new_status = MessageStatus(new_status)
    message = db.get(Message, message_id)
    if message is None:
        raise NotFound(f"Message not found: {message_id}")

    predecessors = STATUS_PREDECESSORS[new_status]
    if not predecessors:
        logger.debug(f"Ignoring transition to {new_status.value} for {message_id}")
        return message, False

    at = to_naive_utc(at) if at else utcnow()
    result = db.execute(
        update(Message)
        .where(
            Message.message_id == message_id,
            Message.status.in_([p.value for p in predecessors]),
        )
        .values(**_status_values(new_status, at))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    changed = result.rowcount == 1
    db.refresh(message)

    if changed:
        logger.info(f"Message status updated: {message_id} -> {new_status.value}")
    else:
        logger.debug(f"Status {new_status.value} not forward of {message.status} for {message_id}")
    return message, changed


def soft_delete_for_viewer(db: Session, message_id: str, viewer_id: str) -> Message:
    """
    Hide a message for one participant only. Repeat calls are no-ops.

    Raises:
        NotFound: message does not exist
        Forbidden: viewer is not sender or recipient
    """
    message = db.get(Message, message_id)
    if message is None:
        raise NotFound(f"Message not found: {message_id}")
    if not message.has_participant(viewer_id):
        raise Forbidden("Permission denied")

    if message.is_deleted_for(viewer_id):
        return message

    db.add(MessageDeletion(message_id=message_id, user_id=viewer_id, deleted_at=utcnow()))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
    db.refresh(message)
    logger.info(f"Message deleted for viewer: {message_id}, viewer={viewer_id}")
    return message


def delete_for_everyone(
    db: Session,
    message_id: str,
    requester_id: str,
    now: Optional[datetime] = None,
    window_seconds: Optional[int] = None,
) -> Message:
    """
    Replace a message's content with the placeholder for all participants.

    Raises:
        NotFound: message does not exist
        Forbidden: requester is not the sender
        WindowExpired: the delete window has passed
        InvalidTransition: already deleted for everyone
    """
    if window_seconds is None:
        window_seconds = settings.DELETE_FOR_EVERYONE_WINDOW_SECONDS

    message = db.get(Message, message_id)
    if message is None:
        raise NotFound(f"Message not found: {message_id}")
    if message.from_number != requester_id:
        raise Forbidden("Only sender can delete message for everyone")
    if message.deleted_for_everyone:
        raise InvalidTransition("Message is already deleted for everyone")

    now = to_naive_utc(now) if now else utcnow()
    if (now - message.created_at).total_seconds() > window_seconds:
        raise WindowExpired(
            f"Message can only be deleted for everyone within {window_seconds // 60} minutes"
        )

    result = db.execute(
        update(Message)
        .where(
            Message.message_id == message_id,
            Message.deleted_for_everyone.is_(False),
        )
        .values(
            deleted_for_everyone=True,
            deleted_for_everyone_at=now,
            message_type=MessageType.DELETED.value,
            body=DELETED_PLACEHOLDER,
            media_url=None,
            caption=None,
            filename=None,
            size=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        raise InvalidTransition("Message is already deleted for everyone")

    db.refresh(message)
    logger.info(f"Message deleted for everyone: {message_id}")
    return message


def mark_conversation(
    db: Session,
    conversation_id: str,
    viewer_id: str,
    new_status: MessageStatus,
    at: Optional[datetime] = None,
) -> List[str]:
    """
    Bulk-advance every eligible message addressed to viewer_id.

    Returns:
        ids of the messages that were transitioned
    """
    new_status = MessageStatus(new_status)
    if new_status not in (MessageStatus.DELIVERED, MessageStatus.READ):
        raise ValidationError("Only delivered or read can be applied to a conversation")
    _require_participant(conversation_id, viewer_id)

    predecessors = [p.value for p in STATUS_PREDECESSORS[new_status]]
    eligible = [
        Message.conversation_id == conversation_id,
        Message.to_number == viewer_id,
        Message.status.in_(predecessors),
    ]
    ids = list(db.scalars(select(Message.message_id).where(*eligible).order_by(Message.created_at)))
    if not ids:
        return []

    at = to_naive_utc(at) if at else utcnow()
    db.execute(
        update(Message)
        .where(Message.message_id.in_(ids), *eligible)
        .values(**_status_values(new_status, at))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Marked {len(ids)} messages {new_status.value} in {conversation_id} for {viewer_id}")
    return ids


def delete_conversation_messages(db: Session, conversation_id: str) -> int:
    """Physically remove every message of a conversation. Returns the count."""
    message_ids = select(Message.message_id).where(Message.conversation_id == conversation_id)
    db.execute(
        delete(MessageDeletion)
        .where(MessageDeletion.message_id.in_(message_ids))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(
        delete(Message)
        .where(Message.conversation_id == conversation_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Deleted {result.rowcount} messages from {conversation_id}")
    return result.rowcount


# =============================================================================
# Reads
# =============================================================================

def get_message(db: Session, message_id: str) -> Optional[Message]:
    return db.get(Message, message_id)


def get_message_for_participant(db: Session, message_id: str, viewer_id: str) -> Message:
    message = db.get(Message, message_id)
    if message is None:
        raise NotFound(f"Message not found: {message_id}")
    if not message.has_participant(viewer_id):
        raise Forbidden("Access denied")
    return message


def list_by_conversation(
    db: Session,
    conversation_id: str,
    viewer_id: str,
    page: int = 1,
    page_size: int = 50,
) -> Tuple[List[Message], int]:
    """
    Page through a conversation as the viewer sees it.

    Pages are cut newest-first (page 1 is the most recent messages) and
    each page is returned in chronological order.

    Returns:
        (messages, total visible messages)
    """
    _require_participant(conversation_id, viewer_id)

    base = select(Message).where(
        Message.conversation_id == conversation_id,
        _visible_to(viewer_id),
    )
    total = db.scalar(select(func.count()).select_from(base.subquery())) or 0

    messages = list(
        db.scalars(
            base.order_by(Message.created_at.desc(), Message.message_id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    )
    messages.reverse()
    logger.debug(f"Listed {len(messages)} of {total} messages in {conversation_id} for {viewer_id}")
    return messages, total


def search_messages(
    db: Session,
    viewer_id: str,
    query: str,
    conversation_id: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Message], int]:
    """Case-insensitive substring search over the viewer's message bodies, newest first."""
    if not query or not query.strip():
        raise ValidationError("Search query is required")

    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    filters = [
        or_(Message.from_number == viewer_id, Message.to_number == viewer_id),
        Message.body.ilike(f"%{escaped}%", escape="\\"),
        Message.deleted_for_everyone.is_(False),
        _visible_to(viewer_id),
    ]
    if conversation_id:
        _require_participant(conversation_id, viewer_id)
        filters.append(Message.conversation_id == conversation_id)

    base = select(Message).where(*filters)
    total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
    messages = list(
        db.scalars(
            base.order_by(Message.created_at.desc(), Message.message_id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    )
    logger.debug(f"Search {query!r} for {viewer_id}: {len(messages)} of {total}")
    return messages, total


def latest_visible_message(db: Session, conversation_id: str, viewer_id: str) -> Optional[Message]:
    return db.scalar(
        select(Message)
        .where(Message.conversation_id == conversation_id, _visible_to(viewer_id))
        .order_by(Message.created_at.desc(), Message.message_id.desc())
        .limit(1)
    )


def unread_count(db: Session, conversation_id: str, viewer_id: str) -> int:
    return db.scalar(
        select(func.count(Message.message_id)).where(
            Message.conversation_id == conversation_id,
            Message.to_number == viewer_id,
            Message.status.in_(UNREAD_STATUSES),
            _visible_to(viewer_id),
        )
    ) or 0


def conversation_ids_for(db: Session, viewer_id: str) -> List[str]:
    return list(
        db.scalars(
            select(Message.conversation_id)
            .where(or_(Message.from_number == viewer_id, Message.to_number == viewer_id))
            .distinct()
        )
    )


def count_messages(db: Session) -> int:
    return db.scalar(select(func.count(Message.message_id))) or 0


def display_content(message: Message) -> str:
    """One-line rendering of a message's content for transcripts and notifications."""
    if message.deleted_for_everyone or message.message_type == MessageType.DELETED.value:
        return DELETED_PLACEHOLDER
    if message.message_type == MessageType.TEXT.value:
        return message.body or ""
    label = message.caption or message.filename or message.media_url or ""
    return f"<{message.message_type}> {label}".rstrip()


def export_transcript(db: Session, conversation_id: str, viewer_id: str) -> str:
    """
    Render the conversation as "[timestamp] sender: content" lines, oldest first.

    Raises:
        Forbidden: viewer is not a participant
        NotFound: nothing visible to export
    """
    _require_participant(conversation_id, viewer_id)
    messages = list(
        db.scalars(
            select(Message)
            .where(Message.conversation_id == conversation_id, _visible_to(viewer_id))
            .order_by(Message.created_at.asc(), Message.message_id.asc())
        )
    )
    if not messages:
        raise NotFound("No messages found in this conversation")

    lines = []
    for message in messages:
        sender = "You" if message.from_number == viewer_id else message.sender_name
        lines.append(f"[{isoformat_z(message.created_at)}] {sender}: {display_content(message)}")
    return "\n".join(lines)
