"""
Pydantic models for WhatsApp Business webhook payloads.

The payload tree is defined by Meta and only loosely structured, so each
change is parsed on its own into one of a small set of tagged variants.
Changes the importer does not understand become UnrecognizedChange and are
logged and skipped by the ingestor instead of failing the whole batch.

Reference: https://developers.facebook.com/docs/whatsapp/cloud-api/webhooks/payload-examples
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from wachat.errors import ValidationError

logger = logging.getLogger(__name__)

WHATSAPP_PAYLOAD_TYPE = "whatsapp_webhook"
MESSAGE_FIELDS = ("messages", "message_status")


# ============================================================================
# Payload tree
# ============================================================================

class ContactProfile(BaseModel):
    name: Optional[str] = None


class Contact(BaseModel):
    wa_id: str
    profile: Optional[ContactProfile] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.profile.name if self.profile else None


class TextBody(BaseModel):
    body: str = ""


class MediaBody(BaseModel):
    """Image, document, audio or video block. Meta sends a media id; tests and exports may send a link."""
    id: Optional[str] = None
    link: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self.link or self.id


class MessageContext(BaseModel):
    """Set when the message is a reply."""
    from_: Optional[str] = Field(default=None, alias="from")
    id: Optional[str] = None

    model_config = {"populate_by_name": True}


class InboundMessage(BaseModel):
    id: str
    from_: str = Field(alias="from")
    timestamp: Union[int, str]
    type: str = "text"

    text: Optional[TextBody] = None
    image: Optional[MediaBody] = None
    document: Optional[MediaBody] = None
    audio: Optional[MediaBody] = None
    video: Optional[MediaBody] = None

    context: Optional[MessageContext] = None

    model_config = {"populate_by_name": True}

    @property
    def epoch_seconds(self) -> int:
        return int(self.timestamp)

    def content(self) -> Dict[str, Any]:
        """Content dict in the shape the message store expects."""
        if self.type == "text":
            return {"body": self.text.body if self.text else ""}
        media = getattr(self, self.type, None)
        if media is None:
            return {}
        return {
            "media_url": media.url,
            "caption": media.caption,
            "filename": media.filename,
        }


class StatusUpdate(BaseModel):
    id: str
    status: str
    timestamp: Optional[Union[int, str]] = None
    recipient_id: Optional[str] = None


class Metadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class ChangeValue(BaseModel):
    messaging_product: Optional[str] = None
    metadata: Optional[Metadata] = None
    contacts: List[Any] = Field(default_factory=list)
    messages: List[Any] = Field(default_factory=list)
    statuses: List[Any] = Field(default_factory=list)


class ChangeEnvelope(BaseModel):
    field: str
    value: Dict[str, Any] = Field(default_factory=dict)


class Entry(BaseModel):
    id: Optional[str] = None
    changes: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Tagged change variants
# ============================================================================

class ContactsChange(BaseModel):
    kind: Literal["contacts"] = "contacts"
    contacts: List[Contact]


class MessagesChange(BaseModel):
    kind: Literal["messages"] = "messages"
    business_number: Optional[str] = None
    messages: List[InboundMessage]


class StatusesChange(BaseModel):
    kind: Literal["statuses"] = "statuses"
    statuses: List[StatusUpdate]


class UnrecognizedChange(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    field: Optional[str] = None
    reason: str


PayloadChange = Union[ContactsChange, MessagesChange, StatusesChange, UnrecognizedChange]


@dataclass
class ParsedPayload:
    changes: List[PayloadChange] = field(default_factory=list)
    errored: int = 0


# ============================================================================
# Parsing
# ============================================================================

def unwrap_document(document: Any) -> Dict[str, Any]:
    """
    Return the Meta payload body from either a raw webhook body or a stored
    payload document ({"_id", "payload_type", "metaData": {...}}).

    Raises:
        ValidationError: the document is not a JSON object with an entry list
    """
    if not isinstance(document, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    body = document.get("metaData", document)
    if not isinstance(body, dict) or not isinstance(body.get("entry"), list):
        raise ValidationError("Webhook payload has no entry list")
    return body


def _validate_items(model, raw_items: List[Any], label: str, parsed: ParsedPayload) -> List:
    items = []
    for index, raw in enumerate(raw_items):
        try:
            items.append(model.model_validate(raw))
        except PydanticValidationError as e:
            logger.warning(f"Malformed webhook {label} #{index}: {e.error_count()} errors")
            parsed.errored += 1
    return items


def _split_change(envelope: ChangeEnvelope, parsed: ParsedPayload) -> List[PayloadChange]:
    value = ChangeValue.model_validate(envelope.value)
    business_number = value.metadata.display_phone_number if value.metadata else None

    # One errored count per malformed item; its siblings are kept
    contacts = _validate_items(Contact, value.contacts, "contact", parsed)
    messages = _validate_items(InboundMessage, value.messages, "message", parsed)
    statuses = _validate_items(StatusUpdate, value.statuses, "status", parsed)

    variants: List[PayloadChange] = []
    # Contacts first so senders exist before their messages are written
    if contacts:
        variants.append(ContactsChange(contacts=contacts))
    if messages:
        variants.append(MessagesChange(business_number=business_number, messages=messages))
    if statuses:
        variants.append(StatusesChange(statuses=statuses))
    if not variants and not (value.contacts or value.messages or value.statuses):
        variants.append(UnrecognizedChange(field=envelope.field, reason="empty change value"))
    return variants


def parse_payload(document: Any) -> ParsedPayload:
    """
    Parse a webhook payload into tagged changes.

    Entries, changes and the items inside each change are validated one at
    a time; a malformed one is counted in ``errored`` and the rest of the
    payload is still parsed.
    """
    payload_type = document.get("payload_type") if isinstance(document, dict) else None
    body = unwrap_document(document)
    parsed = ParsedPayload()

    if payload_type is not None and payload_type != WHATSAPP_PAYLOAD_TYPE:
        parsed.changes.append(
            UnrecognizedChange(field=None, reason=f"unsupported payload_type {payload_type!r}")
        )
        return parsed

    for index, raw_entry in enumerate(body["entry"]):
        try:
            entry = Entry.model_validate(raw_entry)
        except PydanticValidationError as e:
            logger.warning(f"Malformed webhook entry #{index}: {e.error_count()} errors")
            parsed.errored += 1
            continue

        for raw_change in entry.changes:
            try:
                envelope = ChangeEnvelope.model_validate(raw_change)
                if envelope.field not in MESSAGE_FIELDS:
                    parsed.changes.append(
                        UnrecognizedChange(field=envelope.field, reason="unsupported field")
                    )
                    continue
                parsed.changes.extend(_split_change(envelope, parsed))
            except PydanticValidationError as e:
                logger.warning(f"Malformed webhook change in entry {entry.id}: {e.error_count()} errors")
                parsed.errored += 1

    return parsed
