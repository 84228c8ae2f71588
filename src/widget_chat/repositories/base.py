"""Base interfaces for the backend directories and the local session store."""

from abc import ABC, abstractmethod
from typing import List, Optional

import structlog

from ..domain.models import Conversation, HistoryPage, MessageCreate, ReplyEnvelope, Visitor

logger = structlog.get_logger()


class SessionStore(ABC):
    """Single scoped slot holding the visitor UUID."""

    @abstractmethod
    def get(self) -> Optional[str]:
        """Return the cached visitor UUID, if any."""
        pass

    @abstractmethod
    def set(self, visitor_uuid: str) -> None:
        """Cache a visitor UUID."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Forget the cached visitor UUID."""
        pass


class VisitorDirectory(ABC):
    """Visitor records on the backend, cached locally through a SessionStore."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    @abstractmethod
    async def create(self) -> Optional[Visitor]:
        """Create a visitor on the backend."""
        pass

    @abstractmethod
    async def get_by_uuid(self, uuid: str) -> Optional[Visitor]:
        """Fetch a visitor, or None if the backend does not know it."""
        pass

    @abstractmethod
    async def delete_remote(self, uuid: str) -> bool:
        """Delete a visitor on the backend."""
        pass

    def cached_uuid(self) -> Optional[str]:
        return self.store.get()

    def is_tracked(self) -> bool:
        return bool(self.store.get())

    def clear_local(self) -> None:
        self.store.clear()
        logger.info("visitor_cache_cleared")

    async def get_or_create(self) -> Optional[str]:
        """Return the cached visitor UUID, creating a visitor if none is cached."""
        visitor_uuid = self.store.get()
        if visitor_uuid:
            return visitor_uuid

        visitor = await self.create()
        if visitor is None or not visitor.uuid:
            logger.error("visitor_create_failed")
            return None

        self.store.set(visitor.uuid)
        logger.info("visitor_created", visitor_uuid=visitor.uuid)
        return visitor.uuid

    async def delete(self, uuid: str) -> bool:
        """Delete a visitor on the backend and clear the local slot on success."""
        deleted = await self.delete_remote(uuid)
        if deleted:
            self.clear_local()
        return deleted


class ConversationDirectory(ABC):
    """Conversations of a visitor."""

    @abstractmethod
    async def get_active_by_visitor(self, visitor_uuid: str) -> Optional[Conversation]:
        """Return the visitor's active conversation, or None."""
        pass

    @abstractmethod
    async def create(self, visitor_uuid: str) -> Optional[Conversation]:
        """Create a conversation for a visitor."""
        pass

    @abstractmethod
    async def list_by_visitor(
        self, visitor_uuid: str, limit: int = 10, offset: int = 0
    ) -> List[Conversation]:
        """List a visitor's conversations, most recent first."""
        pass

    @abstractmethod
    async def get_by_uuid(self, uuid: str) -> Optional[Conversation]:
        """Fetch a conversation by UUID."""
        pass


class MessageDirectory(ABC):
    """Message creation and cursor-paginated history."""

    @abstractmethod
    async def create_and_trigger_reply(self, message: MessageCreate) -> ReplyEnvelope:
        """Persist a visitor message and return the AI reply in one round trip."""
        pass

    @abstractmethod
    async def history(
        self, conversation_uuid: str, limit: int = 50, before_id: Optional[int] = None
    ) -> HistoryPage:
        """Return up to limit messages older than before_id, oldest first."""
        pass
