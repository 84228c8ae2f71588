"""Shared fixtures and test doubles."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from widget_chat.config import WidgetSettings
from widget_chat.domain.models import (
    Conversation,
    HistoryPage,
    MessageCreate,
    ReplyEnvelope,
    local_now,
)
from widget_chat.repositories.base import MessageDirectory
from widget_chat.repositories.memory import (
    InMemoryChatStore,
    InMemoryConversationDirectory,
    InMemoryVisitorDirectory,
)
from widget_chat.repositories.storage import InMemorySessionStore


def make_record(
    id: int,
    sender: str = "visitor",
    content: str = "hello",
    created_at: Optional[datetime] = None,
    conversation_uuid: str = "C1",
    **extra: Any,
) -> Dict[str, Any]:
    """Backend-shaped message record"""
    record = {
        "id": id,
        "conversation_uuid": conversation_uuid,
        "sender": sender,
        "engine": "gemini",
        "message_type": "text",
        "message_content": content,
        "is_successful": True,
        "created_at": (created_at or local_now()).isoformat(),
    }
    record.update(extra)
    return record


class ScriptedMessageDirectory(MessageDirectory):
    """Message directory replaying queued replies and fixed history pages.

    Queued items that are exceptions are raised instead of returned. Calls
    block on the gates while they are set.
    """

    def __init__(self) -> None:
        self.replies: List[Any] = []
        self.pages: Dict[Optional[int], Any] = {}
        self.calls: List[MessageCreate] = []
        self.history_calls: List[tuple] = []
        self.reply_gate: Optional[asyncio.Event] = None
        self.history_gate: Optional[asyncio.Event] = None

    async def create_and_trigger_reply(self, message: MessageCreate) -> ReplyEnvelope:
        self.calls.append(message)
        if self.reply_gate is not None:
            await self.reply_gate.wait()
        outcome = self.replies.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def history(
        self, conversation_uuid: str, limit: int = 50, before_id: Optional[int] = None
    ) -> HistoryPage:
        self.history_calls.append((conversation_uuid, limit, before_id))
        if self.history_gate is not None:
            await self.history_gate.wait()
        result = self.pages.get(before_id, HistoryPage())
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def settings() -> WidgetSettings:
    return WidgetSettings(operation_timeout=None, engine="gemini", thinking_text="Thinking...")


@pytest.fixture
def backend() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def visitors(backend, session_store) -> InMemoryVisitorDirectory:
    return InMemoryVisitorDirectory(backend, session_store)


@pytest.fixture
def conversations(backend) -> InMemoryConversationDirectory:
    return InMemoryConversationDirectory(backend)


@pytest.fixture
def directory() -> ScriptedMessageDirectory:
    return ScriptedMessageDirectory()


@pytest.fixture
def conversation() -> Conversation:
    now = local_now()
    return Conversation(
        uuid="C1",
        visitor_uuid="V1",
        started_at=now - timedelta(minutes=5),
        updated_at=now,
        status="active",
    )
