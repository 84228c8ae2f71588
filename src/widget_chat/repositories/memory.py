"""In-memory backend and directory implementations."""

import asyncio
from datetime import datetime
from itertools import count
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from ..domain.models import (
    Conversation,
    HistoryPage,
    MessageCreate,
    MessageRecord,
    ReplyEnvelope,
    Sender,
    Visitor,
    local_now,
)
from .base import ConversationDirectory, MessageDirectory, SessionStore, VisitorDirectory

logger = structlog.get_logger()

ReplyGenerator = Callable[[str, List[MessageRecord]], Awaitable[str]]

AI_FAILURE_MESSAGE = "AI response failed"


async def echo_reply(content: str, history: List[MessageRecord]) -> str:
    """Default reply generator: repeats the visitor's message."""
    return content


class InMemoryChatStore:
    """Backend state for visitors, conversations and messages."""

    def __init__(self, clock: Callable[[], datetime] = local_now) -> None:
        self._visitors: Dict[str, Visitor] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[MessageRecord]] = {}
        self._message_ids = count(1)
        self._conversation_ids = count(1)
        self._visitor_ids = count(1)
        self._clock = clock
        self._lock = asyncio.Lock()
        logger.info("chat_store_initialized")

    async def create_visitor(
        self, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> Visitor:
        visitor = Visitor(
            id=next(self._visitor_ids),
            uuid=str(uuid4()),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self._clock(),
        )
        async with self._lock:
            self._visitors[visitor.uuid] = visitor
        logger.info("visitor_created", visitor_uuid=visitor.uuid)
        return visitor

    async def get_visitor(self, uuid: str) -> Optional[Visitor]:
        async with self._lock:
            visitor = self._visitors.get(uuid)
            if visitor is None:
                logger.warning("visitor_not_found", visitor_uuid=uuid)
            return visitor

    async def delete_visitor(self, uuid: str) -> bool:
        async with self._lock:
            deleted = self._visitors.pop(uuid, None) is not None
        if deleted:
            logger.info("visitor_deleted", visitor_uuid=uuid)
        return deleted

    async def create_conversation(self, visitor_uuid: str) -> Conversation:
        now = self._clock()
        async with self._lock:
            if visitor_uuid not in self._visitors:
                logger.error("visitor_not_found_for_conversation", visitor_uuid=visitor_uuid)
                raise ValueError(f"Visitor {visitor_uuid} not found")

            conversation = Conversation(
                id=next(self._conversation_ids),
                uuid=str(uuid4()),
                visitor_uuid=visitor_uuid,
                started_at=now,
                updated_at=now,
                status="active",
            )
            self._conversations[conversation.uuid] = conversation
            self._messages[conversation.uuid] = []
        logger.info("conversation_created", conversation_id=conversation.uuid)
        return conversation

    async def get_conversation(self, uuid: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.get(uuid)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=uuid)
            return conversation

    async def list_conversations(
        self, visitor_uuid: str, limit: int = 10, offset: int = 0
    ) -> Tuple[List[Conversation], int]:
        """Page of a visitor's conversations, most recent first, and the total."""
        async with self._lock:
            conversations = sorted(
                (c for c in self._conversations.values() if c.visitor_uuid == visitor_uuid),
                key=lambda c: (c.recency, c.id or 0),
                reverse=True,
            )
            return conversations[offset : offset + limit], len(conversations)

    async def active_conversation(self, visitor_uuid: str) -> Optional[Conversation]:
        conversations, _ = await self.list_conversations(visitor_uuid, limit=1)
        if conversations and conversations[0].status == "active":
            return conversations[0]
        return None

    async def add_message(
        self,
        conversation_uuid: str,
        sender: Sender,
        content: str,
        engine: Optional[str] = None,
        message_type: str = "text",
        is_successful: Optional[bool] = True,
    ) -> MessageRecord:
        now = self._clock()
        async with self._lock:
            conversation = self._conversations.get(conversation_uuid)
            if not conversation:
                logger.error(
                    "conversation_not_found_for_message",
                    conversation_id=conversation_uuid,
                )
                raise ValueError(f"Conversation {conversation_uuid} not found")

            message = MessageRecord(
                id=next(self._message_ids),
                conversation_uuid=conversation_uuid,
                sender=sender,
                engine=engine,
                message_type=message_type,
                message_content=content,
                is_successful=is_successful,
                created_at=now,
                updated_at=now,
            )
            self._messages[conversation_uuid].append(message)
            conversation.updated_at = now

            logger.info(
                "message_added",
                conversation_id=conversation_uuid,
                message_id=message.id,
                sender=sender.value,
            )
            return message

    async def get_messages(self, conversation_uuid: str) -> List[MessageRecord]:
        async with self._lock:
            if conversation_uuid not in self._conversations:
                logger.error(
                    "conversation_not_found_for_messages",
                    conversation_id=conversation_uuid,
                )
                raise ValueError(f"Conversation {conversation_uuid} not found")
            return list(self._messages[conversation_uuid])

    async def history(
        self, conversation_uuid: str, limit: int = 50, before_id: Optional[int] = None
    ) -> HistoryPage:
        """Newest ``limit`` messages older than before_id, oldest first."""
        messages = await self.get_messages(conversation_uuid)
        candidates = sorted(
            (m for m in messages if before_id is None or m.id < before_id),
            key=lambda m: m.id,
        )
        page = candidates[-limit:] if limit > 0 else []
        has_more = len(candidates) > len(page)
        return HistoryPage(
            items=[m.model_dump(mode="json") for m in page],
            has_more=has_more,
            next_before_id=page[0].id if page else None,
        )

    async def create_and_reply(
        self, request: MessageCreate, reply_generator: ReplyGenerator = echo_reply
    ) -> ReplyEnvelope:
        """Persist a visitor message, generate and persist the reply.

        A failing or empty reply is reported as a ``warning`` envelope whose
        data is the persisted visitor message.
        """
        visitor_message = await self.add_message(
            request.conversation_uuid,
            sender=request.sender,
            content=request.message_content,
            engine=request.engine,
            message_type=request.message_type,
        )
        history = await self.get_messages(request.conversation_uuid)

        try:
            reply = await reply_generator(request.message_content, history)
        except Exception as e:
            logger.error(
                "reply_generation_error",
                conversation_id=request.conversation_uuid,
                error=str(e),
            )
            reply = ""

        if not reply:
            return ReplyEnvelope(
                status="warning",
                message=AI_FAILURE_MESSAGE,
                data=visitor_message.model_dump(mode="json"),
            )

        ai_message = await self.add_message(
            request.conversation_uuid,
            sender=Sender.ASSISTANT,
            content=reply,
            engine=request.engine,
        )
        logger.info(
            "message_processed",
            conversation_id=request.conversation_uuid,
            visitor_message_length=len(request.message_content),
            ai_response_length=len(reply),
        )
        return ReplyEnvelope(
            status="success",
            message="Message created",
            data=ai_message.model_dump(mode="json"),
        )


class InMemoryVisitorDirectory(VisitorDirectory):
    def __init__(self, backend: InMemoryChatStore, store: SessionStore) -> None:
        super().__init__(store)
        self.backend = backend

    async def create(self) -> Optional[Visitor]:
        return await self.backend.create_visitor()

    async def get_by_uuid(self, uuid: str) -> Optional[Visitor]:
        return await self.backend.get_visitor(uuid)

    async def delete_remote(self, uuid: str) -> bool:
        return await self.backend.delete_visitor(uuid)


class InMemoryConversationDirectory(ConversationDirectory):
    def __init__(self, backend: InMemoryChatStore) -> None:
        self.backend = backend

    async def get_active_by_visitor(self, visitor_uuid: str) -> Optional[Conversation]:
        return await self.backend.active_conversation(visitor_uuid)

    async def create(self, visitor_uuid: str) -> Optional[Conversation]:
        return await self.backend.create_conversation(visitor_uuid)

    async def list_by_visitor(
        self, visitor_uuid: str, limit: int = 10, offset: int = 0
    ) -> List[Conversation]:
        conversations, _ = await self.backend.list_conversations(visitor_uuid, limit, offset)
        return conversations

    async def get_by_uuid(self, uuid: str) -> Optional[Conversation]:
        return await self.backend.get_conversation(uuid)


class InMemoryMessageDirectory(MessageDirectory):
    def __init__(
        self, backend: InMemoryChatStore, reply_generator: ReplyGenerator = echo_reply
    ) -> None:
        self.backend = backend
        self.reply_generator = reply_generator

    async def create_and_trigger_reply(self, message: MessageCreate) -> ReplyEnvelope:
        return await self.backend.create_and_reply(message, self.reply_generator)

    async def history(
        self, conversation_uuid: str, limit: int = 50, before_id: Optional[int] = None
    ) -> HistoryPage:
        return await self.backend.history(conversation_uuid, limit, before_id)
