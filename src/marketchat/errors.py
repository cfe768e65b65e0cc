from __future__ import annotations


class MessagingError(Exception):
    """Base class for every error raised by the messaging core."""


class NotAuthenticatedError(MessagingError):
    pass


class TransportError(MessagingError):
    """The realtime channel could not be opened or a frame could not be sent."""


class ValidationError(MessagingError):
    """Input was rejected before any remote call was made."""


class BlockedSenderError(ValidationError):
    def __init__(self, *, sender_id: str, recipient_id: str):
        self.sender_id = sender_id
        self.recipient_id = recipient_id
        super().__init__("You are blocked from sending messages to this user")


class BackendError(MessagingError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        details: str | None = None,
    ):
        self.status = status
        self.code = code
        self.details = details
        super().__init__(message)

    @classmethod
    def from_payload(cls, status: int, payload: object) -> "BackendError":
        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("error") or f"HTTP {status}"
            code = payload.get("code")
            details = payload.get("details") or payload.get("hint")
            return cls(
                str(message),
                status=status,
                code=str(code) if code is not None else None,
                details=str(details) if details is not None else None,
            )
        text = str(payload).strip() if payload else ""
        return cls(text or f"HTTP {status}", status=status)
