"""Conversation list of the current visitor."""

from typing import List, Optional

import structlog

from ..config import WidgetSettings, get_settings
from ..domain.models import Conversation
from ..repositories.base import ConversationDirectory, VisitorDirectory

logger = structlog.get_logger()


class ConversationBrowser:
    """Offset-paginated conversation history and active-conversation selection.

    Failures are recorded on ``error`` and never raised.
    """

    def __init__(
        self,
        visitors: VisitorDirectory,
        conversations: ConversationDirectory,
        settings: Optional[WidgetSettings] = None,
    ) -> None:
        self.visitors = visitors
        self.directory = conversations
        self.settings = settings or get_settings()
        self.conversations: List[Conversation] = []
        self.active_conversation: Optional[Conversation] = None
        self.error: Optional[str] = None
        self.is_loading = False
        self.is_loading_more = False
        self.page_offset = 0
        self.has_more_conversations = True

    @property
    def page_limit(self) -> int:
        return self.settings.conversation_page_size

    @property
    def has_conversations(self) -> bool:
        return bool(self.conversations)

    @property
    def has_active_conversation(self) -> bool:
        return self.active_conversation is not None

    def _visitor_uuid(self) -> Optional[str]:
        visitor_uuid = self.visitors.cached_uuid()
        if not visitor_uuid:
            self.error = "Visitor UUID is not available"
            logger.warning("conversation_browser_no_visitor")
        return visitor_uuid

    async def load_conversations(self) -> List[Conversation]:
        """Load the first page, replacing the list."""
        visitor_uuid = self._visitor_uuid()
        if not visitor_uuid:
            return []

        self.is_loading = True
        self.error = None
        self.page_offset = 0
        try:
            page = await self.directory.list_by_visitor(visitor_uuid, self.page_limit, 0)
            self.conversations = list(page)
            self.has_more_conversations = len(page) >= self.page_limit
            return page
        except Exception as e:
            self.error = str(e) or "Failed to load conversations"
            self.has_more_conversations = False
            logger.error("load_conversations_error", visitor_uuid=visitor_uuid, error=str(e))
            return []
        finally:
            self.is_loading = False

    async def load_more_conversations(self) -> List[Conversation]:
        """Append the next page. No-op when exhausted or already loading."""
        visitor_uuid = self.visitors.cached_uuid()
        if not visitor_uuid or not self.has_more_conversations or self.is_loading_more:
            return []

        self.is_loading_more = True
        offset = self.page_offset + self.page_limit
        try:
            page = await self.directory.list_by_visitor(visitor_uuid, self.page_limit, offset)
            self.page_offset = offset
            if len(page) < self.page_limit:
                self.has_more_conversations = False
            known = {c.uuid for c in self.conversations}
            self.conversations.extend(c for c in page if c.uuid not in known)
            return page
        except Exception as e:
            self.has_more_conversations = False
            logger.error("load_more_conversations_error", visitor_uuid=visitor_uuid, error=str(e))
            return []
        finally:
            self.is_loading_more = False

    async def load_active_conversation(self) -> Optional[Conversation]:
        visitor_uuid = self._visitor_uuid()
        if not visitor_uuid:
            return None

        self.is_loading = True
        self.error = None
        try:
            self.active_conversation = await self.directory.get_active_by_visitor(visitor_uuid)
            return self.active_conversation
        except Exception as e:
            self.error = str(e) or "Failed to load active conversation"
            logger.error("load_active_conversation_error", visitor_uuid=visitor_uuid, error=str(e))
            return None
        finally:
            self.is_loading = False

    async def create_conversation(self) -> Optional[Conversation]:
        """Create a conversation, put it first in the list and make it active."""
        visitor_uuid = self._visitor_uuid()
        if not visitor_uuid:
            return None

        self.is_loading = True
        self.error = None
        try:
            conversation = await self.directory.create(visitor_uuid)
            if conversation is not None:
                self.conversations.insert(0, conversation)
                self.active_conversation = conversation
                logger.info("conversation_created", conversation_id=conversation.uuid)
            return conversation
        except Exception as e:
            self.error = str(e) or "Failed to create conversation"
            logger.error("create_conversation_error", visitor_uuid=visitor_uuid, error=str(e))
            return None
        finally:
            self.is_loading = False

    def select(self, conversation: Conversation) -> None:
        self.active_conversation = conversation

    def clear_conversations(self) -> None:
        self.conversations = []
        self.active_conversation = None
        self.page_offset = 0
        self.has_more_conversations = True
