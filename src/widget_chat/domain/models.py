"""Domain models for the chat widget."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def local_now() -> datetime:
    """Current time as an aware datetime in the local timezone."""
    return datetime.now().astimezone()


class Sender(str, Enum):
    VISITOR = "visitor"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    DATE = "date"


class MessageType(str, Enum):
    TEXT = "text"
    ERROR = "error"
    DATE = "date"


class Visitor(BaseModel):
    """Anonymous visitor record."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    uuid: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


class Conversation(BaseModel):
    """Conversation record."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    uuid: str
    visitor_uuid: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status: Optional[str] = None
    title: Optional[str] = None

    @property
    def recency(self) -> datetime:
        """Timestamp used to order conversations, most recent first."""
        moment = self.updated_at or self.started_at
        if moment is None:
            return datetime.min.replace(tzinfo=local_now().tzinfo)
        return moment.astimezone()


class MessageRecord(BaseModel):
    """Message as persisted by the backend."""

    model_config = ConfigDict(extra="ignore")

    id: int
    conversation_uuid: str
    sender: Sender
    engine: Optional[str] = None
    message_type: str = MessageType.TEXT.value
    message_content: str
    is_successful: Optional[bool] = None
    processing_time_ms: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=local_now)
    updated_at: Optional[datetime] = None


class MessageCreate(BaseModel):
    """Payload for creating a visitor message and triggering the AI reply."""

    conversation_uuid: str
    sender: Sender = Sender.VISITOR
    engine: str
    message_type: str = MessageType.TEXT.value
    message_content: str


class ReplyEnvelope(BaseModel):
    """Backend response to a message creation.

    ``data`` is a single record, a list of records, or a pair payload with
    ``visitor_message``/``ai_message``/``error_message`` keys.
    """

    status: str = "success"
    message: Optional[str] = None
    data: Any = None


class HistoryPage(BaseModel):
    """One page of cursor-paginated message history."""

    items: List[Dict[str, Any]] = []
    has_more: bool = False
    next_before_id: Optional[int] = None


class ChatMessage(BaseModel):
    """Timeline entry shown by the widget."""

    id: Union[int, str]
    conversation_uuid: Optional[str] = None
    sender: Sender
    engine: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    text: str = ""
    timestamp: datetime = Field(default_factory=local_now)
    is_sending: bool = False
    is_successful: Optional[bool] = None
    is_thinking: bool = False
    metadata: Optional[Dict[str, Any]] = None

    @property
    def can_retry(self) -> bool:
        """A resolved, unsuccessful message the visitor may send again."""
        return (
            self.sender != Sender.DATE
            and self.is_successful is False
            and not self.is_sending
        )

    @property
    def is_temporary(self) -> bool:
        return isinstance(self.id, str)


class TextMessage(ChatMessage):
    """Visitor or assistant text."""

    message_type: MessageType = MessageType.TEXT


class DateMarker(ChatMessage):
    """Synthetic separator for a calendar day."""

    sender: Sender = Sender.DATE
    message_type: MessageType = MessageType.DATE

    @property
    def date(self) -> str:
        return self.text


class ErrorMessage(ChatMessage):
    """System message shown in place of a failed reply."""

    sender: Sender = Sender.SYSTEM
    engine: Optional[str] = "system"
    message_type: MessageType = MessageType.ERROR
    is_successful: Optional[bool] = False


class PaginationCursor(BaseModel):
    """Backward pagination state of the active conversation."""

    has_more_messages: bool = True
    next_before_id: Optional[int] = None
