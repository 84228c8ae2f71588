"""Error taxonomy and user-facing error messages."""

from enum import Enum
from typing import Any, Dict, List, Optional


class ChatSyncError(Exception):
    """Base class for all errors raised by the widget core."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class SessionError(ChatSyncError):
    """A session could not be bootstrapped."""


class VisitorInitError(SessionError):
    """No visitor UUID could be obtained."""


class ConversationInitError(SessionError):
    """No conversation could be fetched or created."""


class SessionVerificationError(SessionError):
    """The cached session could not be verified against the backend."""


class TransportFailure(ChatSyncError):
    """A backend call failed at the transport level."""

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ReportedAIFailure(ChatSyncError):
    """The backend persisted the visitor message but reported a failed AI reply."""


class NormalizationFallback(ChatSyncError):
    """A backend record could not be decoded as-is and a default was used."""


class ErrorKind(str, Enum):
    AI_RESPONSE_FAILED = "ai_response_failed"
    NETWORK_ERROR = "network_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT_ERROR = "timeout_error"
    GENERAL_ERROR = "general_error"


ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.AI_RESPONSE_FAILED: (
        "Sorry, the AI assistant is having trouble right now. Please try again "
        "in a moment or contact an administrator if the problem persists."
    ),
    ErrorKind.NETWORK_ERROR: (
        "Your internet connection seems to be having problems. Please check "
        "your connection and try again."
    ),
    ErrorKind.SERVICE_UNAVAILABLE: (
        "The chat service is under maintenance. Please try again later."
    ),
    ErrorKind.TIMEOUT_ERROR: (
        "The AI took too long to respond. Please try sending a simpler message."
    ),
    ErrorKind.GENERAL_ERROR: (
        "An unexpected error occurred. Please try again or contact an "
        "administrator if the problem persists."
    ),
}

ERROR_TIPS: Dict[ErrorKind, List[str]] = {
    ErrorKind.AI_RESPONSE_FAILED: [
        "Try sending your message again",
        "Use simpler wording",
        "Check that your question is clear",
    ],
    ErrorKind.NETWORK_ERROR: [
        "Check your Wi-Fi or mobile data connection",
        "Try refreshing the page",
        "Close other apps that are using the internet",
    ],
    ErrorKind.TIMEOUT_ERROR: [
        "Split a long question into several parts",
        "Avoid overly complex questions",
        "Try again with a more specific question",
    ],
}

# Checked in order; first match wins.
_ERROR_PATTERNS = [
    (ErrorKind.AI_RESPONSE_FAILED, ("ai response failed", "ai tidak memberikan jawaban", "failed to generate response")),
    (ErrorKind.NETWORK_ERROR, ("network", "connection", "fetch")),
    (ErrorKind.TIMEOUT_ERROR, ("timeout", "timed out", "too long")),
    (ErrorKind.SERVICE_UNAVAILABLE, ("service unavailable", "maintenance")),
]


def classify_error(error: Any) -> Optional[ErrorKind]:
    """Match an error or error string against the known patterns."""
    if isinstance(error, BaseException):
        if isinstance(error, TimeoutError):
            return ErrorKind.TIMEOUT_ERROR
        error = str(error)
    if not isinstance(error, str):
        return None

    lowered = error.lower()
    for kind, patterns in _ERROR_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return kind
    return None


def render_error(
    kind: ErrorKind,
    messages: Optional[Dict[ErrorKind, str]] = None,
    with_tips: bool = False,
) -> str:
    """Message for an error kind, optionally followed by troubleshooting tips."""
    table = messages or ERROR_MESSAGES
    text = table.get(kind, ERROR_MESSAGES[kind])
    tips = ERROR_TIPS.get(kind)
    if with_tips and tips:
        text = text + "\n\nTips:\n" + "\n".join(f"• {tip}" for tip in tips)
    return text


def user_facing_error(
    error: Any,
    messages: Optional[Dict[ErrorKind, str]] = None,
    with_tips: bool = False,
) -> str:
    """Convert a technical error into a message safe to show a visitor.

    Unrecognized errors map to the general message; the raw text is never
    returned.
    """
    kind = classify_error(error) or ErrorKind.GENERAL_ERROR
    return render_error(kind, messages, with_tips)


def payload_error_text(error: BaseException) -> Optional[str]:
    """The message/error/detail string of a JSON error body, if any."""
    payload = getattr(error, "payload", None)
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def extract_error_text(error: BaseException) -> Optional[str]:
    """Best-effort extraction of a backend error string from a failed call."""
    text = payload_error_text(error) or getattr(error, "message", None) or str(error)
    return text or None


def transport_error_text(
    error: BaseException,
    messages: Optional[Dict[ErrorKind, str]] = None,
    with_tips: bool = False,
) -> str:
    """Build the system message text shown for a failed send.

    Recognized errors use the user-facing table. An HTTP error without a
    JSON message maps to the service-unavailable message for 5xx and the
    general message otherwise. An unrecognized backend or exception message
    is shown as-is as a last resort; with nothing to show, the network
    message is used.
    """
    if isinstance(error, TimeoutError):
        return render_error(ErrorKind.TIMEOUT_ERROR, messages, with_tips)

    text = extract_error_text(error)
    if not text:
        return render_error(ErrorKind.NETWORK_ERROR, messages, with_tips)

    kind = classify_error(text)
    if kind is not None:
        return render_error(kind, messages, with_tips)

    status_code = getattr(error, "status_code", None)
    if status_code is not None and payload_error_text(error) is None:
        if status_code >= 500:
            return render_error(ErrorKind.SERVICE_UNAVAILABLE, messages, with_tips)
        return render_error(ErrorKind.GENERAL_ERROR, messages, with_tips)
    return text
