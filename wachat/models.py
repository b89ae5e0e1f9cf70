"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from wachat.storage import Base
from wachat.utils import utcnow


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    DELETED = "deleted"


class MessageStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Origin(str, enum.Enum):
    """Which producer wrote the message. Only live messages are broadcast."""
    LIVE = "live"
    INGESTED = "ingested"


DELETED_PLACEHOLDER = "This message was deleted"


class User(Base):
    """
    Phone-identified user.

    Table: users
    wa_id never changes once created.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wa_id = Column(String, nullable=False, unique=True, index=True)
    phone_number = Column(String, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    profile_image = Column(String, nullable=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Conversation(Base):
    """
    Per-conversation metadata keyed by the canonical conversation id.

    Archive and mute state is per participant; the aggregate flags are
    derived from the entry tables, never stored.
    """
    __tablename__ = "conversations"

    conversation_id = Column(String, primary_key=True)
    participant_a = Column(String, nullable=False, index=True)
    participant_b = Column(String, nullable=False, index=True)
    created_by = Column(String, nullable=False)
    last_activity = Column(DateTime, nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    archives = relationship(
        "ConversationArchive",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    mutes = relationship(
        "ConversationMute",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def participants(self):
        return [self.participant_a, self.participant_b]

    @property
    def is_archived(self) -> bool:
        return len(self.archives) > 0

    @property
    def is_muted(self) -> bool:
        return len(self.mutes) > 0

    def archive_entry(self, participant: str):
        return next((a for a in self.archives if a.participant == participant), None)

    def mute_entry(self, participant: str):
        return next((m for m in self.mutes if m.participant == participant), None)


class ConversationArchive(Base):
    __tablename__ = "conversation_archives"
    __table_args__ = (UniqueConstraint("conversation_id", "participant"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String, ForeignKey("conversations.conversation_id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant = Column(String, nullable=False)
    archived_at = Column(DateTime, nullable=False, default=utcnow)


class ConversationMute(Base):
    __tablename__ = "conversation_mutes"
    __table_args__ = (UniqueConstraint("conversation_id", "participant"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String, ForeignKey("conversations.conversation_id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant = Column(String, nullable=False)
    muted_at = Column(DateTime, nullable=False, default=utcnow)
    muted_until = Column(DateTime, nullable=True)  # null for indefinite mute


class Message(Base):
    """
    SQLAlchemy model for chat messages.

    Table: messages
    Primary Key: message_id (ensures idempotency across live and ingested writes)
    """
    __tablename__ = "messages"

    message_id = Column(String, primary_key=True, index=True)
    conversation_id = Column(String, nullable=False, index=True)
    from_number = Column(String, nullable=False, index=True)
    to_number = Column(String, nullable=False, index=True)
    sender_name = Column(String, nullable=False)
    message_type = Column(String, nullable=False, default=MessageType.TEXT.value)

    body = Column(Text, nullable=True)
    media_url = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    filename = Column(String, nullable=True)
    size = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    status = Column(String, nullable=False, default=MessageStatus.SENT.value)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    origin = Column(String, nullable=False, default=Origin.LIVE.value)
    reply_to = Column(String, nullable=True)

    deleted_for_everyone = Column(Boolean, nullable=False, default=False)
    deleted_for_everyone_at = Column(DateTime, nullable=True)

    deletions = relationship(
        "MessageDeletion",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def is_deleted_for(self, viewer_id: str) -> bool:
        return any(d.user_id == viewer_id for d in self.deletions)

    def has_participant(self, wa_id: str) -> bool:
        return wa_id in (self.from_number, self.to_number)


class MessageDeletion(Base):
    """Per-viewer ("delete for me") soft deletion."""
    __tablename__ = "message_deletions"
    __table_args__ = (UniqueConstraint("message_id", "user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(
        String, ForeignKey("messages.message_id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=False, default=utcnow)


class BlockedUser(Base):
    """Directional block; either direction prevents sending."""
    __tablename__ = "blocked_users"
    __table_args__ = (UniqueConstraint("blocked_by", "blocked_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    blocked_by = Column(String, nullable=False, index=True)
    blocked_user = Column(String, nullable=False, index=True)
    blocked_at = Column(DateTime, nullable=False, default=utcnow)
    reason = Column(String, nullable=False, default="User blocked")


class WebhookPayload(Base):
    """Raw webhook payload document awaiting (or done with) ingestion."""
    __tablename__ = "webhook_payloads"

    payload_id = Column(String, primary_key=True)
    payload_type = Column(String, nullable=False, default="whatsapp_webhook", index=True)
    meta_data = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
