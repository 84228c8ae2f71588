"""Message synchronization engine.

Owns the message timeline of the active conversation. Sends are optimistic:
a pending visitor message and a thinking placeholder are appended before the
backend is called, then replaced in place once it answers. History is loaded
newest page first and extended backwards with a before-id cursor.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union
from uuid import uuid4

import structlog

from ..config import WidgetSettings, get_settings
from ..domain.models import (
    ChatMessage,
    Conversation,
    DateMarker,
    ErrorMessage,
    HistoryPage,
    MessageCreate,
    MessageType,
    PaginationCursor,
    ReplyEnvelope,
    Sender,
    TextMessage,
    local_now,
)
from ..domain.normalize import date_marker, decode_message, local_date_string
from ..errors import (
    ChatSyncError,
    ErrorKind,
    NormalizationFallback,
    ReportedAIFailure,
    TransportFailure,
    transport_error_text,
    user_facing_error,
)
from ..repositories.base import MessageDirectory

logger = structlog.get_logger()

T = TypeVar("T")

AI_FAILURE_MARKER = "ai response failed"


def random_token() -> str:
    """128-bit random token used for temporary identifiers."""
    return uuid4().hex


class SendStatus(str, Enum):
    SKIPPED = "skipped"
    REJECTED = "rejected"
    DELIVERED = "delivered"
    AI_FAILED = "ai_failed"
    TRANSPORT_FAILED = "transport_failed"


@dataclass
class SendOutcome:
    status: SendStatus
    visitor_message: Optional[ChatMessage] = None
    reply_message: Optional[ChatMessage] = None
    error: Optional[ChatSyncError] = None


def split_reply_data(data: Any) -> Tuple[Optional[Any], Optional[Any], Optional[Any]]:
    """Pick the visitor, AI and error records out of a reply payload."""
    if isinstance(data, dict):
        if any(key in data for key in ("visitor_message", "ai_message", "error_message")):
            return data.get("visitor_message"), data.get("ai_message"), data.get("error_message")
        if data.get("sender") == Sender.VISITOR.value:
            return data, None, None
        return None, data, None

    if isinstance(data, list):
        records = [item for item in data if isinstance(item, dict)]
        visitor = next((r for r in records if r.get("sender") == Sender.VISITOR.value), None)
        reply = next((r for r in records if r.get("sender") != Sender.VISITOR.value), None)
        return visitor, reply, None

    return None, None, None


class MessageSyncEngine:
    """Timeline of the active conversation."""

    def __init__(
        self,
        directory: MessageDirectory,
        conversation: Optional[Conversation] = None,
        settings: Optional[WidgetSettings] = None,
        clock: Callable[[], datetime] = local_now,
        id_factory: Callable[[], str] = random_token,
        on_messages_added: Optional[Callable[[], None]] = None,
        error_messages: Optional[Dict[ErrorKind, str]] = None,
    ) -> None:
        self.directory = directory
        self.settings = settings or get_settings()
        self.on_messages_added = on_messages_added
        self.error_messages = error_messages
        self._clock = clock
        self._id_factory = id_factory
        self._conversation = conversation
        self._timeline: List[ChatMessage] = []
        self.cursor = PaginationCursor()
        self.is_sending = False
        self.is_loading_older_messages = False
        self.is_loaded = False

    @property
    def conversation(self) -> Optional[Conversation]:
        return self._conversation

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._timeline)

    @property
    def has_more_messages(self) -> bool:
        return self.cursor.has_more_messages

    @property
    def next_before_id(self) -> Optional[int]:
        return self.cursor.next_before_id

    def _is_current(self, conversation_uuid: str) -> bool:
        return self._conversation is not None and self._conversation.uuid == conversation_uuid

    def _notify(self) -> None:
        if self.on_messages_added is not None:
            self.on_messages_added()

    def _append(self, message: ChatMessage) -> None:
        self._timeline.append(message)
        self._notify()

    def _replace(self, slot_id: Union[int, str], message: ChatMessage) -> bool:
        for index, existing in enumerate(self._timeline):
            if existing.id == slot_id:
                self._timeline[index] = message
                self._notify()
                return True
        return False

    def _index_of(self, message_id: Union[int, str]) -> int:
        for index, existing in enumerate(self._timeline):
            if existing.id == message_id:
                return index
        return -1

    def _temporary_id(self, prefix: str) -> str:
        return f"{prefix}-{self._id_factory()}"

    async def _call(self, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.settings.operation_timeout)
        except asyncio.TimeoutError as e:
            raise TransportFailure("Request timed out") from e

    def _decode(self, raw: Any, conversation_uuid: str) -> ChatMessage:
        return decode_message(raw, conversation_uuid, now=self._clock)

    def _decode_page(self, page: HistoryPage, conversation_uuid: str) -> List[ChatMessage]:
        decoded = []
        for item in page.items:
            try:
                decoded.append(self._decode(item, conversation_uuid))
            except NormalizationFallback as e:
                logger.warning("history_item_skipped", conversation_id=conversation_uuid, error=str(e))
        # Stable: equal timestamps keep backend order.
        return sorted(decoded, key=lambda m: m.timestamp)

    def _reset(self) -> None:
        self._timeline = []
        self.cursor = PaginationCursor()
        self.is_loading_older_messages = False
        self.is_loaded = False

    async def set_conversation(self, conversation: Optional[Conversation]) -> bool:
        """Switch the active conversation.

        A change of identity discards the timeline and cursor and reloads
        history. Returns True if a reload happened.
        """
        previous = self._conversation.uuid if self._conversation else None
        current = conversation.uuid if conversation else None
        self._conversation = conversation
        if previous == current and self.is_loaded:
            return False

        logger.info("conversation_switched", from_conversation=previous, to_conversation=current)
        self._reset()
        await self.load_messages()
        return True

    async def load_messages(self) -> List[ChatMessage]:
        """Replace the timeline with the newest page of history."""
        conversation = self._conversation
        if conversation is None:
            self._timeline = []
            self.cursor = PaginationCursor(has_more_messages=False)
            self.is_loaded = True
            return []

        conversation_uuid = conversation.uuid
        self.is_loaded = False
        try:
            page = await self._call(
                self.directory.history(conversation_uuid, limit=self.settings.initial_page_size)
            )
            if not self._is_current(conversation_uuid):
                logger.info("stale_history_discarded", conversation_id=conversation_uuid)
                return []

            loaded = self._decode_page(page, conversation_uuid)
            self._timeline = loaded
            self.cursor = PaginationCursor(
                has_more_messages=page.has_more,
                next_before_id=page.next_before_id,
            )
            logger.info(
                "messages_loaded",
                conversation_id=conversation_uuid,
                count=len(loaded),
                has_more=page.has_more,
            )
            return list(loaded)
        except Exception as e:
            logger.error("load_messages_error", conversation_id=conversation_uuid, error=str(e))
            if self._is_current(conversation_uuid):
                self.cursor = PaginationCursor(has_more_messages=False)
            return []
        finally:
            if self._is_current(conversation_uuid):
                self.is_loaded = True

    async def load_older_messages(self) -> List[ChatMessage]:
        """Prepend the page of history before the cursor.

        No-op without a conversation, when history is exhausted, or while
        another older-page load is running.
        """
        conversation = self._conversation
        if (
            conversation is None
            or not self.cursor.has_more_messages
            or self.is_loading_older_messages
        ):
            return []

        before_id = self.cursor.next_before_id
        if not before_id:
            self.cursor.has_more_messages = False
            return []

        conversation_uuid = conversation.uuid
        self.is_loading_older_messages = True
        try:
            page = await self._call(
                self.directory.history(
                    conversation_uuid,
                    limit=self.settings.older_page_size,
                    before_id=before_id,
                )
            )
            if not self._is_current(conversation_uuid):
                logger.info("stale_history_discarded", conversation_id=conversation_uuid)
                return []

            existing = {m.id for m in self._timeline}
            older = [m for m in self._decode_page(page, conversation_uuid) if m.id not in existing]
            self._timeline = older + self._timeline

            next_before_id = page.next_before_id
            has_more = page.has_more
            if next_before_id is not None and next_before_id >= before_id:
                logger.warning(
                    "cursor_not_advancing",
                    conversation_id=conversation_uuid,
                    before_id=before_id,
                    next_before_id=next_before_id,
                )
                has_more = False
            self.cursor = PaginationCursor(has_more_messages=has_more, next_before_id=next_before_id)

            logger.info(
                "older_messages_loaded",
                conversation_id=conversation_uuid,
                count=len(older),
                has_more=has_more,
            )
            return older
        except Exception as e:
            logger.error("load_older_messages_error", conversation_id=conversation_uuid, error=str(e))
            return []
        finally:
            self.is_loading_older_messages = False

    async def send_message(self, text: str) -> SendOutcome:
        """Send a visitor message and show the reply.

        Never raises for backend failures; the outcome and the timeline slots
        describe what happened.
        """
        conversation = self._conversation
        if conversation is None or not text or not text.strip():
            return SendOutcome(SendStatus.SKIPPED)
        if self.is_sending:
            logger.warning("send_rejected_in_flight", conversation_id=conversation.uuid)
            return SendOutcome(SendStatus.REJECTED)

        conversation_uuid = conversation.uuid
        self.is_sending = True
        try:
            pending = TextMessage(
                id=self._temporary_id("temp"),
                conversation_uuid=conversation_uuid,
                sender=Sender.VISITOR,
                engine=self.settings.engine,
                text=text,
                timestamp=self._clock(),
                is_sending=True,
            )
            self._append(pending)

            thinking = TextMessage(
                id=self._temporary_id("thinking"),
                conversation_uuid=conversation_uuid,
                sender=Sender.ASSISTANT,
                engine=self.settings.engine,
                text=self.settings.thinking_text,
                timestamp=self._clock(),
                is_thinking=True,
            )
            self._append(thinking)

            request = MessageCreate(
                conversation_uuid=conversation_uuid,
                sender=Sender.VISITOR,
                engine=self.settings.engine,
                message_type=MessageType.TEXT.value,
                message_content=text,
            )
            try:
                envelope = await self._call(self.directory.create_and_trigger_reply(request))
            except Exception as e:
                outcome = self._resolve_transport_failure(conversation_uuid, pending, thinking, e)
            else:
                outcome = self._resolve_reply(conversation_uuid, pending, thinking, envelope)

            if self._is_current(conversation_uuid):
                self._ensure_today_marker(conversation_uuid)
            return outcome
        finally:
            self.is_sending = False

    def _resolve_reply(
        self,
        conversation_uuid: str,
        pending: ChatMessage,
        thinking: ChatMessage,
        envelope: ReplyEnvelope,
    ) -> SendOutcome:
        visitor_record, ai_record, error_record = split_reply_data(envelope.data)

        # The visitor message is persisted once the call returns, even if
        # its record cannot be decoded.
        confirmed = pending
        if visitor_record is not None:
            try:
                confirmed = self._decode(visitor_record, conversation_uuid)
            except NormalizationFallback as e:
                logger.warning("visitor_record_fallback", conversation_id=conversation_uuid, error=str(e))
        confirmed = confirmed.model_copy(update={"is_sending": False, "is_successful": True})

        reply = None
        decode_error = None
        if ai_record is not None:
            try:
                reply = self._decode(ai_record, conversation_uuid)
            except NormalizationFallback as e:
                logger.warning("reply_record_fallback", conversation_id=conversation_uuid, error=str(e))
                decode_error = e

        reported_failure = (
            envelope.status == "warning"
            or AI_FAILURE_MARKER in (envelope.message or "").lower()
        )
        if reply is None and decode_error is None and not reported_failure:
            logger.warning("reply_missing", conversation_id=conversation_uuid, status=envelope.status)
        ai_failed = reported_failure or reply is None or isinstance(reply, ErrorMessage)

        if ai_failed:
            if decode_error is not None and not reported_failure:
                error = decode_error
            else:
                error = ReportedAIFailure(envelope.message or "AI response failed")
            source = error_record if isinstance(error_record, dict) else {}
            error_id = source.get("id")
            if isinstance(error_id, bool) or not isinstance(error_id, (int, str)) or error_id == "":
                error_id = self._temporary_id("error")
            reply = ErrorMessage(
                id=error_id,
                conversation_uuid=conversation_uuid,
                text=user_facing_error(error, self.error_messages, self.settings.error_tips),
                timestamp=self._clock(),
            )
            status = SendStatus.AI_FAILED
            logger.warning("ai_reply_failed", conversation_id=conversation_uuid, error=str(error))
        else:
            error = None
            reply = reply.model_copy(update={"is_thinking": False})
            status = SendStatus.DELIVERED
            logger.info(
                "message_delivered",
                conversation_id=conversation_uuid,
                visitor_message_id=confirmed.id,
                reply_id=reply.id,
            )

        self._replace(pending.id, confirmed)
        self._replace(thinking.id, reply)
        return SendOutcome(status, visitor_message=confirmed, reply_message=reply, error=error)

    def _resolve_transport_failure(
        self,
        conversation_uuid: str,
        pending: ChatMessage,
        thinking: ChatMessage,
        error: Exception,
    ) -> SendOutcome:
        logger.error("send_message_error", conversation_id=conversation_uuid, error=str(error))

        failed = pending.model_copy(update={"is_sending": False, "is_successful": False})
        reply = ErrorMessage(
            id=self._temporary_id("error"),
            conversation_uuid=conversation_uuid,
            text=transport_error_text(error, self.error_messages, self.settings.error_tips),
            timestamp=self._clock(),
        )
        self._replace(pending.id, failed)
        self._replace(thinking.id, reply)

        if not isinstance(error, ChatSyncError):
            error = TransportFailure(str(error) or type(error).__name__)
        return SendOutcome(
            SendStatus.TRANSPORT_FAILED,
            visitor_message=failed,
            reply_message=reply,
            error=error,
        )

    def _ensure_today_marker(self, conversation_uuid: str) -> None:
        # Placed before the first entry dated today, keeping the timeline sorted.
        now = self._clock()
        today = local_date_string(now)
        if any(isinstance(m, DateMarker) and m.text == today for m in self._timeline):
            return

        index = next(
            (
                i
                for i, m in enumerate(self._timeline)
                if not isinstance(m, DateMarker) and local_date_string(m.timestamp) >= today
            ),
            len(self._timeline),
        )
        self._timeline.insert(index, date_marker(now, conversation_uuid))
        self._notify()

    async def retry(self, message_id: Union[int, str]) -> SendOutcome:
        """Send again the visitor text behind a failed slot.

        The failed slot stays as it is; a new pending slot is created.
        """
        index = self._index_of(message_id)
        if index == -1 or not self._timeline[index].can_retry:
            return SendOutcome(SendStatus.SKIPPED)

        for message in reversed(self._timeline[: index + 1]):
            if message.sender == Sender.VISITOR:
                return await self.send_message(message.text)
        return SendOutcome(SendStatus.SKIPPED)
