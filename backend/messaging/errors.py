"""Error taxonomy shared by the messaging components.

Every post-handshake failure is reported to the originating connection as an
``error`` event built from :meth:`MessagingError.to_event`. REST handlers map
the same classes onto HTTP status codes via ``status_code``.
"""
from typing import Optional


class MessagingError(Exception):
    """Base class for failures reported back to a single client."""

    code: str = "error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_event(
        self,
        event: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> dict:
        payload = {
            "type": "error",
            "message": self.message,
            "code": self.code,
            "event": event,
            "retryable": self.retryable,
        }
        if client_message_id:
            payload["clientMessageId"] = client_message_id
        return payload


class Unauthenticated(MessagingError):
    """Missing, malformed, or expired bearer credential."""
    code = "unauthenticated"
    status_code = 401


class Forbidden(MessagingError):
    """The user is not allowed to act on the target conversation."""
    code = "forbidden"
    status_code = 403


class ValidationFailed(MessagingError):
    """Malformed or out-of-bounds payload."""
    code = "validation_failed"
    status_code = 400


class ConversationNotFound(MessagingError):
    code = "conversation_not_found"
    status_code = 404


class StoreTimeout(MessagingError):
    """The message store did not answer in time. Safe to retry."""
    code = "timeout"
    status_code = 503
    retryable = True
