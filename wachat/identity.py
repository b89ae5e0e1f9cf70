"""
Conversation and message identity.

The canonical conversation id must be identical for every producer (live
sends, the webhook importer, clients joining rooms), otherwise one
conversation's history splits into two unreachable halves.
"""

import time
import uuid
from typing import Tuple

from wachat.errors import ValidationError

# Phone-derived identifiers never contain this character
CONVERSATION_ID_DELIMITER = "_"


def _check_identifier(identifier: str) -> str:
    if not identifier or not isinstance(identifier, str):
        raise ValidationError("Participant identifier must be a non-empty string")
    if CONVERSATION_ID_DELIMITER in identifier:
        raise ValidationError(
            f"Participant identifier must not contain '{CONVERSATION_ID_DELIMITER}'"
        )
    return identifier


def canonical_conversation_id(participant_a: str, participant_b: str) -> str:
    """
    Derive the order-independent conversation key for two participants.

    canonical_conversation_id(a, b) == canonical_conversation_id(b, a)
    """
    first, second = sorted((_check_identifier(participant_a), _check_identifier(participant_b)))
    return f"{first}{CONVERSATION_ID_DELIMITER}{second}"


def conversation_participants(conversation_id: str) -> Tuple[str, str]:
    """Split a canonical conversation id back into its two participants."""
    parts = (conversation_id or "").split(CONVERSATION_ID_DELIMITER)
    if len(parts) != 2 or not all(parts):
        raise ValidationError(f"Malformed conversation id: {conversation_id!r}")
    if canonical_conversation_id(parts[0], parts[1]) != conversation_id:
        raise ValidationError(f"Conversation id is not canonical: {conversation_id!r}")
    return parts[0], parts[1]


def is_participant(conversation_id: str, wa_id: str) -> bool:
    try:
        return wa_id in conversation_participants(conversation_id)
    except ValidationError:
        return False


def generate_message_id() -> str:
    """
    Generate a message id for live sends.

    Microsecond timestamp plus a random suffix, so concurrent senders in the
    same microsecond still get distinct ids.
    """
    return f"msg_{time.time_ns() // 1000}_{uuid.uuid4().hex[:12]}"
