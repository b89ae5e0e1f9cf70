"""
Error taxonomy for the conversation engine.

Every failure the core raises is a ChatError carrying a machine-readable
kind and the HTTP status it maps to. The API layer renders these as
{"error": kind, "detail": message, "retryable": bool}.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for typed failures surfaced to callers."""

    kind = "ChatError"
    status_code = 500
    retryable = False

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.kind
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.message,
            "retryable": self.retryable,
        }


class NotFound(ChatError):
    kind = "NotFound"
    status_code = 404


class RecipientNotFound(NotFound):
    kind = "RecipientNotFound"


class Forbidden(ChatError):
    kind = "Forbidden"
    status_code = 403


class Blocked(ChatError):
    kind = "Blocked"
    status_code = 403


class DuplicateMessage(ChatError):
    """Idempotent insert collision on message_id."""
    kind = "DuplicateMessage"
    status_code = 409


class WindowExpired(ChatError):
    kind = "WindowExpired"
    status_code = 400


class InvalidTransition(ChatError):
    kind = "InvalidTransition"
    status_code = 409


class ValidationError(ChatError):
    kind = "ValidationError"
    status_code = 422


class AlreadyBlocked(ChatError):
    kind = "AlreadyBlocked"
    status_code = 409


class NotBlocked(ChatError):
    kind = "NotBlocked"
    status_code = 404


class StoreTimeout(ChatError):
    """
    The store did not acknowledge the write in time. The write may still
    land, so sends should be retried with the same message_id.
    """
    kind = "StoreTimeout"
    status_code = 503
    retryable = True


class InternalError(ChatError):
    kind = "InternalError"
    status_code = 500
