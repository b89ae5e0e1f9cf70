"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from wachat.models import MessageType
from wachat.utils import isoformat_z

PHONE_PATTERN = r"^\+?\d{6,15}$"
MESSAGE_ID_PATTERN = r"^[A-Za-z0-9._:=-]{1,128}$"


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessageContent(BaseModel):
    """Text body, or a media reference with optional caption/filename/size."""
    body: Optional[str] = Field(None, max_length=4096)
    media_url: Optional[str] = None
    caption: Optional[str] = Field(None, max_length=1024)
    filename: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)


class SendMessageRequest(BaseModel):
    """
    Validates:
    - to: phone-like recipient id
    - message_type: text, image, document, audio or video
    - text messages carry a non-empty body; media messages carry a media_url
    - message_id: optional client-chosen id that makes retries idempotent
    """
    to: str = Field(..., pattern=PHONE_PATTERN, description="Recipient wa_id")
    message_type: MessageType = Field(MessageType.TEXT, description="Message kind")
    content: MessageContent
    reply_to: Optional[str] = Field(None, min_length=1)
    message_id: Optional[str] = Field(
        None, pattern=MESSAGE_ID_PATTERN, description="Client-chosen id; retries with the same id are rejected as duplicates"
    )

    @field_validator("message_type")
    @classmethod
    def validate_kind(cls, v: MessageType) -> MessageType:
        if v == MessageType.DELETED:
            raise ValueError("message_type 'deleted' cannot be sent")
        return v

    @model_validator(mode="after")
    def validate_content(self):
        if self.message_type == MessageType.TEXT:
            if not self.content.body or not self.content.body.strip():
                raise ValueError("Text messages require a non-empty content.body")
        elif not self.content.media_url:
            raise ValueError(f"{self.message_type.value} messages require content.media_url")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"to": "+14155550100", "message_type": "text", "content": {"body": "Hello"}}
            ]
        }
    }


class UpdateStatusRequest(BaseModel):
    # Unknown values are rejected by the coordinator with a typed ValidationError
    status: str = Field(..., min_length=1)


class DeleteMessageRequest(BaseModel):
    for_everyone: bool = False


class ForwardMessageRequest(BaseModel):
    message_id: str = Field(..., min_length=1)
    to: List[str] = Field(..., min_length=1)


class BlockRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=256)


class ArchiveRequest(BaseModel):
    archive: bool = True


class MuteRequest(BaseModel):
    mute: bool = True
    duration_seconds: Optional[int] = Field(None, gt=0, description="Mute length; omit for indefinite")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error kind")
    detail: str = Field(..., description="Error description")
    retryable: bool = False


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class MessageResponse(BaseModel):
    """A message as clients see it. Timestamps are ISO-8601 UTC strings."""
    message_id: str
    conversation_id: str
    from_number: str
    to_number: str
    sender_name: str
    message_type: str
    content: MessageContent
    created_at: str
    status: str
    delivered_at: Optional[str] = None
    read_at: Optional[str] = None
    origin: str
    reply_to: Optional[str] = None
    deleted_for_everyone: bool = False
    deleted_for_everyone_at: Optional[str] = None

    @classmethod
    def from_message(cls, message) -> "MessageResponse":
        return cls(
            message_id=message.message_id,
            conversation_id=message.conversation_id,
            from_number=message.from_number,
            to_number=message.to_number,
            sender_name=message.sender_name,
            message_type=message.message_type,
            content=MessageContent(
                body=message.body,
                media_url=message.media_url,
                caption=message.caption,
                filename=message.filename,
                size=message.size,
            ),
            created_at=isoformat_z(message.created_at),
            status=message.status,
            delivered_at=isoformat_z(message.delivered_at),
            read_at=isoformat_z(message.read_at),
            origin=message.origin,
            reply_to=message.reply_to,
            deleted_for_everyone=bool(message.deleted_for_everyone),
            deleted_for_everyone_at=isoformat_z(message.deleted_for_everyone_at),
        )


def serialize_message(message) -> dict:
    return MessageResponse.from_message(message).model_dump(mode="json")


class MessagesPageResponse(BaseModel):
    """
    One page of a conversation.

    - data: messages in chronological order
    - total: messages visible to the caller (ignoring pagination)
    """
    data: List[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1, le=100)
    pages: int = Field(..., ge=0)


class SearchResponse(MessagesPageResponse):
    query: str


class StatusUpdateResponse(BaseModel):
    message_id: str
    status: str
    changed: bool


class DeleteMessageResponse(BaseModel):
    message_id: str
    conversation_id: str
    for_everyone: bool


class ForwardResponse(BaseModel):
    forwarded_to: int = Field(..., ge=0)


class UserSummary(BaseModel):
    wa_id: str
    name: str
    profile_image: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[str] = None

    @classmethod
    def from_user(cls, user) -> Optional["UserSummary"]:
        if user is None:
            return None
        return cls(
            wa_id=user.wa_id,
            name=user.name,
            profile_image=user.profile_image,
            is_online=bool(user.is_online),
            last_seen=isoformat_z(user.last_seen),
        )


class ConversationSummary(BaseModel):
    conversation_id: str
    other_participant: str
    user: Optional[UserSummary] = None
    last_message: str = ""
    last_message_time: Optional[str] = None
    last_message_type: str = "text"
    last_message_status: str = "sent"
    unread_count: int = Field(0, ge=0)
    is_archived: bool = False
    archived_at: Optional[str] = None
    is_muted: bool = False

    @classmethod
    def from_summary(cls, summary: dict) -> "ConversationSummary":
        return cls(
            conversation_id=summary["conversation_id"],
            other_participant=summary["other_participant"],
            user=UserSummary.from_user(summary["user"]),
            last_message=summary["last_message"],
            last_message_time=isoformat_z(summary["last_message_time"]),
            last_message_type=summary["last_message_type"],
            last_message_status=summary["last_message_status"],
            unread_count=summary["unread_count"],
            is_archived=summary["is_archived"],
            archived_at=isoformat_z(summary["archived_at"]),
            is_muted=summary["is_muted"],
        )


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary] = Field(default_factory=list)


class ConversationStateResponse(BaseModel):
    conversation_id: str
    is_archived: bool
    is_muted: bool
    archived_for_caller: bool
    muted_for_caller: bool
    muted_until: Optional[str] = None


class BlockedUserResponse(BaseModel):
    user_id: str
    blocked_at: str
    reason: str


class BlockedListResponse(BaseModel):
    blocked_users: List[BlockedUserResponse] = Field(default_factory=list)


class IngestResponse(BaseModel):
    """Per-batch counters from webhook ingestion."""
    created: int = 0
    skipped: int = 0
    errored: int = 0
    users: int = 0
    statuses: int = 0


class LoadPayloadsResponse(BaseModel):
    loaded: int = 0
    skipped: int = 0
    errors: int = 0


class ProcessPayloadsResponse(IngestResponse):
    processed: int = 0
    failed: int = 0


class PayloadStatsResponse(BaseModel):
    total_payloads: int = Field(..., ge=0)
    processed_payloads: int = Field(..., ge=0)
    unprocessed_payloads: int = Field(..., ge=0)
    total_users: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)
