"""
DeliveryCoordinator: the orchestration core for live message traffic.

Validates send/update/delete requests against the block registry and
conversation membership, writes through the message store and then asks
the PresenceHub to fan the change out. Store work runs in the threadpool
under a bounded timeout; a broadcast is only ever issued after its write
has been acknowledged, so a timed-out or failed write never produces an
event.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from starlette.concurrency import run_in_threadpool

from wachat import block_registry, conversation_store, message_store, user_store
from wachat.config import Settings, get_settings
from wachat.errors import (
    Blocked,
    ChatError,
    Forbidden,
    InternalError,
    InvalidTransition,
    NotFound,
    RecipientNotFound,
    StoreTimeout,
    ValidationError,
)
from wachat.identity import canonical_conversation_id, generate_message_id, is_participant
from wachat.metrics import record_status_transition
from wachat.models import MessageStatus, MessageType, Origin
from wachat.presence import PresenceHub
from wachat.schemas import serialize_message
from wachat.utils import isoformat_z, utcnow

logger = logging.getLogger(__name__)

SENDABLE_TYPES = (
    MessageType.TEXT,
    MessageType.IMAGE,
    MessageType.DOCUMENT,
    MessageType.AUDIO,
    MessageType.VIDEO,
)

# Acknowledgements that only the recipient of a message may send
RECIPIENT_ACKS = (MessageStatus.DELIVERED, MessageStatus.READ)


class DeliveryCoordinator:
    def __init__(self, session_factory: Callable, hub: PresenceHub, settings: Optional[Settings] = None):
        self._session_factory = session_factory
        self.hub = hub
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Store access
    # -------------------------------------------------------------------------

    def _in_session(self, fn: Callable, *args) -> Any:
        with self._session_factory() as db:
            return fn(db, *args)

    async def _run(self, operation: str, fn: Callable, *args, **context) -> Any:
        """
        Run a store function in its own session with the configured timeout.

        Typed ChatErrors pass through unchanged. A timeout becomes the
        retryable StoreTimeout; anything else is logged with enough context
        to replay by hand and surfaces as InternalError.
        """
        log_context = {"operation": operation, **context}
        try:
            return await asyncio.wait_for(
                run_in_threadpool(self._in_session, fn, *args),
                timeout=self.settings.STORE_TIMEOUT_SECONDS,
            )
        except ChatError:
            raise
        except asyncio.TimeoutError:
            logger.error("Store operation timed out", extra=log_context)
            raise StoreTimeout(f"{operation} was not acknowledged in time, retry the request")
        except Exception as e:
            logger.exception(f"Store operation failed: {e}", extra=log_context)
            raise InternalError(f"{operation} failed") from e

    async def _broadcast(self, send: Callable, *args) -> None:
        # The write is already durable; a failed fan-out only delays delivery
        # until the client reconnects and refetches.
        try:
            await send(*args)
        except Exception as e:
            logger.error(f"Broadcast failed: {e}", extra={"event": args[1] if len(args) > 1 else None})

    # -------------------------------------------------------------------------
    # Send
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_kind(kind) -> MessageType:
        try:
            kind = MessageType(kind)
        except ValueError:
            raise ValidationError(f"Invalid message type: {kind}")
        if kind not in SENDABLE_TYPES:
            raise ValidationError(f"Message type '{kind.value}' cannot be sent")
        return kind

    @staticmethod
    def _write_message(
        db,
        from_user: str,
        to_identifier: str,
        content: Dict,
        kind: MessageType,
        reply_to: Optional[str],
        message_id: Optional[str],
    ) -> Dict:
        sender = user_store.get_user(db, from_user)
        if sender is None:
            raise NotFound("Sender not found")
        if user_store.get_user(db, to_identifier) is None:
            raise RecipientNotFound(f"Recipient not found: {to_identifier}")
        if block_registry.is_blocked_either_direction(db, from_user, to_identifier):
            raise Blocked("Cannot send message. User is blocked.")

        conversation_id = canonical_conversation_id(from_user, to_identifier)
        if reply_to:
            original = message_store.get_message(db, reply_to)
            if original is None or original.conversation_id != conversation_id:
                raise ValidationError(f"Reply target not found in this conversation: {reply_to}")

        message = message_store.create_message(
            db,
            message_id=message_id or generate_message_id(),
            from_number=from_user,
            to_number=to_identifier,
            sender_name=sender.name,
            message_type=kind,
            content=content,
            status=MessageStatus.SENT,
            origin=Origin.LIVE,
            reply_to=reply_to,
        )
        data = serialize_message(message)
        preview = message_store.display_content(message)

        conversation = conversation_store.get_or_create(
            db, conversation_id, (from_user, to_identifier), from_user
        )
        return {
            "message": data,
            "sender_name": sender.name,
            "preview": preview,
            "muted": conversation_store.is_muted_for(conversation, to_identifier),
        }

    async def send(
        self,
        from_user: str,
        to_identifier: str,
        content: Dict,
        kind=MessageType.TEXT,
        reply_to: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Dict:
        """
        Persist a live message and fan it out.

        A client-chosen message_id makes the send idempotent: the write may
        still land after a StoreTimeout, and a retry with the same id then
        fails with DuplicateMessage instead of storing a second copy.

        Raises:
            RecipientNotFound, Blocked, ValidationError, DuplicateMessage,
            StoreTimeout, InternalError
        """
        kind = self._parse_kind(kind)
        content = dict(content or {})
        if kind == MessageType.TEXT and not (content.get("body") or "").strip():
            raise ValidationError("Message content is required")
        if kind != MessageType.TEXT and not content.get("media_url"):
            raise ValidationError(f"{kind.value} messages require a media_url")

        written = await self._run(
            "send",
            self._write_message,
            from_user,
            to_identifier,
            content,
            kind,
            reply_to,
            message_id,
        )
        message = written["message"]
        conversation_id = message["conversation_id"]
        logger.info(f"Message sent: {message['message_id']} in {conversation_id}")

        await self._broadcast(
            self.hub.to_conversation,
            conversation_id,
            "new_message",
            {"message": message, "conversationId": conversation_id},
        )
        await self._broadcast(
            self.hub.to_user,
            to_identifier,
            "message_notification",
            {
                "from": written["sender_name"],
                "message": written["preview"],
                "conversationId": conversation_id,
                "timestamp": message["created_at"],
                "muted": written["muted"],
            },
        )
        return message

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @staticmethod
    def _apply_status(db, message_id: str, status: MessageStatus, requester: Optional[str], at):
        if requester is not None:
            message = message_store.get_message_for_participant(db, message_id, requester)
            if status in RECIPIENT_ACKS and message.to_number != requester:
                raise Forbidden(f"Only the recipient can mark a message {status.value}")
        message, changed = message_store.append_status(db, message_id, status, at)
        return {
            "message_id": message.message_id,
            "conversation_id": message.conversation_id,
            "status": message.status,
            "changed": changed,
        }

    async def update_status(
        self,
        message_id: str,
        new_status: str,
        requester: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Dict:
        """Advance one message's status and broadcast it when it actually moved."""
        try:
            status = MessageStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid status value: {new_status}")

        result = await self._run(
            "update_status",
            self._apply_status,
            message_id,
            status,
            requester,
            at,
            message_id=message_id,
        )
        if result["changed"]:
            record_status_transition(result["status"])
            await self._broadcast(
                self.hub.to_conversation,
                result["conversation_id"],
                "message_status_update",
                {
                    "messageId": message_id,
                    "status": result["status"],
                    "timestamp": isoformat_z(at or utcnow()),
                },
            )
        return {key: result[key] for key in ("message_id", "status", "changed")}

    async def _mark(self, conversation_id: str, viewer: str, status: MessageStatus) -> List[str]:
        at = utcnow()
        ids = await self._run(
            f"mark_{status.value}",
            message_store.mark_conversation,
            conversation_id,
            viewer,
            status,
            at,
            conversation_id=conversation_id,
        )
        record_status_transition(status.value, len(ids))
        timestamp = isoformat_z(at)
        for message_id in ids:
            await self._broadcast(
                self.hub.to_conversation,
                conversation_id,
                "message_status_update",
                {"messageId": message_id, "status": status.value, "timestamp": timestamp},
            )
        if ids and status == MessageStatus.READ:
            await self._broadcast(
                self.hub.to_conversation,
                conversation_id,
                "messages_read",
                {"readBy": viewer, "conversationId": conversation_id, "timestamp": timestamp},
            )
        return ids

    async def mark_delivered(self, conversation_id: str, viewer: str) -> List[str]:
        return await self._mark(conversation_id, viewer, MessageStatus.DELIVERED)

    async def mark_read(self, conversation_id: str, viewer: str) -> List[str]:
        return await self._mark(conversation_id, viewer, MessageStatus.READ)

    async def list_messages(
        self,
        conversation_id: str,
        viewer: str,
        page: int = 1,
        page_size: Optional[int] = None,
        mark_read: bool = True,
    ) -> Dict:
        """Open a conversation: list one page, then mark everything addressed to the viewer read."""
        page_size = page_size or self.settings.DEFAULT_PAGE_SIZE

        def read(db):
            messages, total = message_store.list_by_conversation(db, conversation_id, viewer, page, page_size)
            return [serialize_message(m) for m in messages], total

        messages, total = await self._run("list_messages", read, conversation_id=conversation_id)
        if mark_read:
            await self.mark_read(conversation_id, viewer)
        return {"data": messages, "total": total, "page": page, "page_size": page_size}

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def _delete(self, db, message_id: str, requester: str, for_everyone: bool, now):
        if for_everyone:
            message = message_store.delete_for_everyone(
                db, message_id, requester, now, self.settings.DELETE_FOR_EVERYONE_WINDOW_SECONDS
            )
        else:
            message = message_store.soft_delete_for_viewer(db, message_id, requester)
        return message.conversation_id

    async def delete_message(
        self,
        message_id: str,
        requester: str,
        for_everyone: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict:
        """
        Delete for everyone (broadcast to the room) or for the requester only
        (never broadcast, the other participant must not learn of it).
        """
        conversation_id = await self._run(
            "delete_message",
            self._delete,
            message_id,
            requester,
            for_everyone,
            now,
            message_id=message_id,
        )
        if for_everyone:
            await self._broadcast(
                self.hub.to_conversation,
                conversation_id,
                "message_deleted_for_everyone",
                {"messageId": message_id, "conversationId": conversation_id},
            )
        return {"message_id": message_id, "conversation_id": conversation_id, "for_everyone": for_everyone}

    # -------------------------------------------------------------------------
    # Forward
    # -------------------------------------------------------------------------

    @staticmethod
    def _forwardable(db, message_id: str, requester: str):
        message = message_store.get_message_for_participant(db, message_id, requester)
        if message.deleted_for_everyone:
            raise InvalidTransition("Deleted messages cannot be forwarded")
        content = {
            "body": message.body,
            "media_url": message.media_url,
            "caption": message.caption,
            "filename": message.filename,
            "size": message.size,
        }
        return message.message_type, {k: v for k, v in content.items() if v is not None}

    async def forward(self, message_id: str, requester: str, to_identifiers: Iterable[str]) -> int:
        """
        Re-send a message's content to each target.

        Blocked, unknown or malformed targets are skipped; the return value
        is the number of successful sends.
        """
        kind, content = await self._run(
            "forward", self._forwardable, message_id, requester, message_id=message_id
        )
        forwarded = 0
        for target in to_identifiers:
            try:
                await self.send(requester, target, content, kind)
            except (Blocked, NotFound, ValidationError) as e:
                logger.info(f"Skipping forward of {message_id} to {target}: {e.kind}")
                continue
            forwarded += 1
        logger.info(f"Message {message_id} forwarded to {forwarded} recipients")
        return forwarded

    # -------------------------------------------------------------------------
    # Conversation-wide operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _delete_conversation(db, conversation_id: str) -> int:
        removed = message_store.delete_conversation_messages(db, conversation_id)
        existed = conversation_store.delete_conversation(db, conversation_id)
        if not removed and not existed:
            raise NotFound("Conversation not found")
        return removed

    async def delete_conversation(self, conversation_id: str, requester: str) -> int:
        """Remove every message and the conversation row itself."""
        if not is_participant(conversation_id, requester):
            raise Forbidden("Access denied to this conversation")
        removed = await self._run(
            "delete_conversation",
            self._delete_conversation,
            conversation_id,
            conversation_id=conversation_id,
        )
        await self._broadcast(
            self.hub.to_conversation, conversation_id, "conversation_deleted", {"conversationId": conversation_id}
        )
        return removed

    async def clear_conversation(self, conversation_id: str, requester: str) -> int:
        """Remove every message but keep the conversation's archive/mute state."""
        if not is_participant(conversation_id, requester):
            raise Forbidden("Access denied to this conversation")
        removed = await self._run(
            "clear_conversation",
            message_store.delete_conversation_messages,
            conversation_id,
            conversation_id=conversation_id,
        )
        await self._broadcast(
            self.hub.to_conversation, conversation_id, "conversation_cleared", {"conversationId": conversation_id}
        )
        return removed
