"""
WebhookIngestor: turns WhatsApp Business webhook payloads into users,
messages and status updates.

Ingestion shares create_message with live sends, so a message that
arrives through both paths is stored once. Nothing here broadcasts:
ingested history shows up when clients next list a conversation.

A batch never fails as a whole. Every contact, message and status is
applied on its own and its outcome lands in one of the IngestResult
counters.
"""

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select

from wachat import message_store, user_store
from wachat.config import settings
from wachat.errors import ChatError, DuplicateMessage, NotFound
from wachat.metrics import record_ingest_outcome, record_status_transition
from wachat.models import MessageStatus, MessageType, Origin, WebhookPayload
from wachat.payloads import (
    WHATSAPP_PAYLOAD_TYPE,
    ContactsChange,
    InboundMessage,
    MessagesChange,
    StatusesChange,
    StatusUpdate,
    UnrecognizedChange,
    parse_payload,
)
from wachat.utils import from_epoch_seconds, utcnow

logger = logging.getLogger(__name__)

INGESTIBLE_TYPES = {kind.value for kind in MessageType if kind != MessageType.DELETED}


@dataclass
class IngestResult:
    created: int = 0
    skipped: int = 0
    errored: int = 0
    users: int = 0
    statuses: int = 0

    def add(self, other: "IngestResult") -> None:
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class WebhookIngestor:
    def __init__(self, session_factory: Callable, business_number: Optional[str] = None):
        self._session_factory = session_factory
        self.business_number = business_number if business_number is not None else settings.BUSINESS_PHONE_NUMBER

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def ingest(self, payload: Any) -> IngestResult:
        """
        Apply one webhook payload.

        Raises:
            ValidationError: the payload is not a JSON object with an entry list
        """
        parsed = parse_payload(payload)
        result = IngestResult(errored=parsed.errored)

        with self._session_factory() as db:
            for change in parsed.changes:
                if isinstance(change, ContactsChange):
                    for contact in change.contacts:
                        self._apply(db, result, self._upsert_contact, contact)
                elif isinstance(change, MessagesChange):
                    recipient = change.business_number or self.business_number
                    for message in change.messages:
                        self._apply(db, result, self._create_message, message, recipient)
                elif isinstance(change, StatusesChange):
                    for status in change.statuses:
                        self._apply(db, result, self._apply_status, status)
                elif isinstance(change, UnrecognizedChange):
                    logger.info(f"Skipping unrecognized webhook change: field={change.field}, reason={change.reason}")
                    result.skipped += 1

        record_ingest_outcome("created", result.created)
        record_ingest_outcome("skipped", result.skipped)
        record_ingest_outcome("errored", result.errored)
        logger.info(
            "Webhook payload ingested",
            extra={"ingest": result.as_dict()},
        )
        return result

    def _apply(self, db, result: IngestResult, fn: Callable, *args) -> None:
        try:
            fn(db, result, *args)
        except DuplicateMessage as e:
            logger.info(f"Skipping duplicate: {e.message}")
            result.skipped += 1
        except ChatError as e:
            logger.warning(f"Ingestion item rejected: {e.kind}: {e.message}")
            result.errored += 1
        except Exception as e:
            logger.exception(f"Ingestion item failed: {e}")
            db.rollback()
            result.errored += 1

    def _upsert_contact(self, db, result: IngestResult, contact) -> None:
        user_store.upsert_user(db, contact.wa_id, name=contact.display_name, phone_number=contact.wa_id)
        result.users += 1

    def _create_message(self, db, result: IngestResult, message: InboundMessage, recipient: Optional[str]) -> None:
        if message.type not in INGESTIBLE_TYPES:
            logger.info(f"Skipping unsupported message type {message.type!r}: {message.id}")
            result.skipped += 1
            return

        sender = user_store.get_user(db, message.from_)
        if sender is None:
            logger.warning(f"Sender not found: {message.from_}, skipping message {message.id}")
            result.skipped += 1
            return

        if not recipient:
            logger.error(f"No business number for message {message.id}; set BUSINESS_PHONE_NUMBER")
            result.errored += 1
            return

        message_store.create_message(
            db,
            message_id=message.id,
            from_number=message.from_,
            to_number=recipient,
            sender_name=sender.name,
            message_type=MessageType(message.type),
            content=message.content(),
            status=MessageStatus.DELIVERED,
            origin=Origin.INGESTED,
            created_at=from_epoch_seconds(message.epoch_seconds),
            reply_to=message.context.id if message.context else None,
        )
        result.created += 1

    def _apply_status(self, db, result: IngestResult, status: StatusUpdate) -> None:
        try:
            new_status = MessageStatus(status.status)
        except ValueError:
            logger.warning(f"Unknown status {status.status!r} for message {status.id}")
            result.errored += 1
            return

        if message_store.get_message(db, status.id) is None:
            logger.info(f"Message not found for status update: {status.id}")
            result.skipped += 1
            return

        at = from_epoch_seconds(int(status.timestamp)) if status.timestamp else None
        _, changed = message_store.append_status(db, status.id, new_status, at)
        if changed:
            record_status_transition(new_status.value)
            result.statuses += 1
        else:
            result.skipped += 1

    # -------------------------------------------------------------------------
    # Stored payload documents
    # -------------------------------------------------------------------------

    def load_payload_files(self, directory: Optional[str] = None) -> Dict[str, int]:
        """
        Store every *.json payload document in a directory, once.

        Documents are keyed by their "_id" (or the file name without
        extension); ones already stored are skipped.
        """
        path = Path(directory or settings.PAYLOADS_DIR)
        if not path.is_dir():
            raise NotFound(f"Payload directory not found: {path}")

        results = {"loaded": 0, "skipped": 0, "errors": 0}
        files = sorted(path.glob("*.json"))
        logger.info(f"Found {len(files)} payload files in {path}")

        with self._session_factory() as db:
            for file in files:
                try:
                    document = json.loads(file.read_text(encoding="utf-8"))
                    if not isinstance(document, dict):
                        raise ValueError("payload document is not a JSON object")
                    payload_id = str(document.get("_id") or file.stem)

                    if db.get(WebhookPayload, payload_id) is not None:
                        logger.debug(f"Skipping existing payload: {payload_id}")
                        results["skipped"] += 1
                        continue

                    db.add(
                        WebhookPayload(
                            payload_id=payload_id,
                            payload_type=document.get("payload_type", WHATSAPP_PAYLOAD_TYPE),
                            meta_data=document.get("metaData", document),
                        )
                    )
                    db.commit()
                    results["loaded"] += 1
                except Exception as e:
                    logger.error(f"Error loading payload file {file.name}: {e}")
                    db.rollback()
                    results["errors"] += 1

        logger.info("Payload files loaded", extra={"ingest": results})
        return results

    def process_pending(self) -> Dict[str, int]:
        """
        Ingest every stored payload not yet processed and mark it processed.

        A payload that cannot be parsed at all stays unprocessed and is
        counted as failed.
        """
        with self._session_factory() as db:
            pending = list(
                db.scalars(
                    select(WebhookPayload)
                    .where(WebhookPayload.processed.is_(False))
                    .order_by(WebhookPayload.created_at, WebhookPayload.payload_id)
                )
            )
            documents = [
                (p.payload_id, {"_id": p.payload_id, "payload_type": p.payload_type, "metaData": p.meta_data})
                for p in pending
            ]

        logger.info(f"Processing {len(documents)} unprocessed payloads")
        totals = IngestResult()
        processed = failed = 0

        for payload_id, document in documents:
            try:
                totals.add(self.ingest(document))
            except ChatError as e:
                logger.error(f"Error processing payload {payload_id}: {e.message}")
                failed += 1
                continue

            with self._session_factory() as db:
                stored = db.get(WebhookPayload, payload_id)
                stored.processed = True
                stored.processed_at = utcnow()
                db.commit()
            processed += 1

        summary = {"processed": processed, "failed": failed, **totals.as_dict()}
        logger.info("Stored payloads processed", extra={"ingest": summary})
        return summary

    def payload_stats(self) -> Dict[str, int]:
        with self._session_factory() as db:
            total = db.scalar(select(func.count(WebhookPayload.payload_id))) or 0
            processed = db.scalar(
                select(func.count(WebhookPayload.payload_id)).where(WebhookPayload.processed.is_(True))
            ) or 0
            return {
                "total_payloads": total,
                "processed_payloads": processed,
                "unprocessed_payloads": total - processed,
                "total_users": user_store.count_users(db),
                "total_messages": message_store.count_messages(db),
            }
