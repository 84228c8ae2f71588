"""Decoding of heterogeneous backend message payloads into timeline entries.

Every raw record passes through :func:`decode_message` before it enters the
timeline. All shape guessing (date detection, timestamp coercion, field
aliasing) lives here.
"""

import re
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Mapping, Optional, Union
from uuid import uuid4

import structlog
from pydantic import BaseModel, ValidationError

from ..errors import NormalizationFallback
from .models import (
    ChatMessage,
    DateMarker,
    ErrorMessage,
    MessageType,
    Sender,
    TextMessage,
    local_now,
)

logger = structlog.get_logger()

DATE_CONTENT = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Epoch values above this are taken to be milliseconds.
_EPOCH_MS_THRESHOLD = 100_000_000_000


def is_date_content(value: Any) -> bool:
    """True if value is a strict ``YYYY-MM-DD`` string."""
    return isinstance(value, str) and bool(DATE_CONTENT.match(value))


def _from_epoch(value: float) -> datetime:
    if abs(value) > _EPOCH_MS_THRESHOLD:
        value = value / 1000
    return datetime.fromtimestamp(value).astimezone()


def parse_timestamp(value: Any) -> datetime:
    """Coerce a string, epoch or date value into an aware local datetime.

    Raises NormalizationFallback when the value cannot be interpreted.
    """
    if isinstance(value, datetime):
        return value.astimezone()
    if isinstance(value, date):
        return datetime.combine(value, time()).astimezone()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return _from_epoch(float(value))
        except (OverflowError, OSError, ValueError) as e:
            raise NormalizationFallback(f"Invalid epoch timestamp {value!r}: {e}")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise NormalizationFallback("Empty timestamp")
        iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
        try:
            return datetime.fromisoformat(iso).astimezone()
        except ValueError:
            pass
        try:
            return _from_epoch(float(text))
        except (OverflowError, OSError, ValueError):
            raise NormalizationFallback(f"Unparsable timestamp {value!r}")
    raise NormalizationFallback(f"Unsupported timestamp type {type(value).__name__}")


def coerce_timestamp(
    value: Any,
    now: Callable[[], datetime] = local_now,
    message_id: Any = None,
) -> datetime:
    """Like parse_timestamp, but falls back to now instead of failing."""
    if value is None:
        logger.warning("timestamp_missing", message_id=message_id)
        return now()
    try:
        return parse_timestamp(value)
    except NormalizationFallback as e:
        logger.warning("timestamp_fallback", message_id=message_id, error=str(e))
        return now()


def local_date_string(moment: datetime) -> str:
    """ISO calendar date of a moment in the local timezone."""
    return moment.astimezone().date().isoformat()


def date_marker(moment: datetime, conversation_uuid: Optional[str] = None) -> DateMarker:
    """Synthesize the marker for the local calendar day of moment."""
    day = moment.astimezone().date()
    day_string = day.isoformat()
    return DateMarker(
        id=f"date-{day_string}",
        conversation_uuid=conversation_uuid,
        engine="system",
        text=day_string,
        timestamp=datetime.combine(day, time()).astimezone(),
        is_successful=True,
    )


def _as_mapping(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, BaseModel):
        return raw.model_dump()
    if isinstance(raw, Mapping):
        return raw
    raise NormalizationFallback(f"Unsupported message payload {type(raw).__name__}")


def _sender(value: Any, message_id: Any) -> Sender:
    if isinstance(value, Sender):
        return value
    try:
        return Sender(value)
    except ValueError:
        logger.warning("unknown_sender", message_id=message_id, sender=value)
        return Sender.ASSISTANT


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _message_id(value: Any) -> Union[int, str]:
    if value is None or value == "":
        return uuid4().hex
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value:
        return value
    return str(value)


def _metadata(value: Any, message_id: Any) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    if isinstance(value, Mapping):
        return dict(value)
    logger.warning("metadata_wrapped", message_id=message_id, type=type(value).__name__)
    return {"value": value}


def decode_message(
    raw: Any,
    conversation_uuid: Optional[str] = None,
    now: Callable[[], datetime] = local_now,
) -> ChatMessage:
    """Decode one backend record into a TextMessage, DateMarker or ErrorMessage.

    Raises NormalizationFallback when the record cannot be turned into a
    timeline entry at all.
    """
    record: Dict[str, Any] = dict(_as_mapping(raw))

    message_id = _message_id(record.get("id"))

    conversation = (
        record.get("conversation_uuid")
        or record.get("conversationId")
        or record.get("conversation_id")
        or conversation_uuid
    )
    content = record.get("message_content")
    text = _as_text(record.get("text") or content)
    raw_timestamp = record.get("timestamp")
    if raw_timestamp is None:
        raw_timestamp = record.get("created_at")
    engine = record.get("engine")
    is_successful = record.get("is_successful")

    common = dict(
        id=message_id,
        conversation_uuid=str(conversation) if conversation is not None else None,
        engine=_as_text(engine) if engine is not None else None,
        is_successful=is_successful if isinstance(is_successful, bool) else None,
        metadata=_metadata(record.get("metadata"), message_id),
    )

    try:
        if is_date_content(content) or (
            record.get("message_type") == MessageType.DATE.value and is_date_content(text)
        ):
            day = content if is_date_content(content) else text
            if raw_timestamp is None:
                raw_timestamp = day
            return DateMarker(
                text=day,
                timestamp=coerce_timestamp(raw_timestamp, now, message_id),
                **common,
            )

        sender = _sender(record.get("sender"), message_id)
        timestamp = coerce_timestamp(raw_timestamp, now, message_id)

        if record.get("message_type") == MessageType.ERROR.value or sender == Sender.SYSTEM:
            common["engine"] = common["engine"] or "system"
            if common["is_successful"] is None:
                common["is_successful"] = False
            return ErrorMessage(sender=sender, text=text, timestamp=timestamp, **common)

        return TextMessage(sender=sender, text=text, timestamp=timestamp, **common)
    except ValidationError as e:
        raise NormalizationFallback(
            f"Message {message_id!r} could not be decoded: {e.error_count()} invalid field(s)"
        ) from e
