"""Session bootstrap: resolve the visitor and the active conversation.

Nothing raises past this module's public methods; every failure comes back
as a SessionResult carrying a SessionError.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Dict, Optional, TypeVar

import structlog

from ..config import WidgetSettings, get_settings
from ..domain.models import Conversation
from ..errors import (
    ConversationInitError,
    SessionError,
    SessionVerificationError,
    VisitorInitError,
)
from ..repositories.base import ConversationDirectory, VisitorDirectory

logger = structlog.get_logger()

T = TypeVar("T")


class SessionState(str, Enum):
    NO_LOCAL_VISITOR = "no_local_visitor"
    VISITOR_VERIFIED = "visitor_verified"
    CONVERSATION_RESOLVED = "conversation_resolved"
    REINITIALIZING = "reinitializing"
    FAILED = "failed"


@dataclass
class SessionOptions:
    auto_create_conversation: bool = False
    force_new_visitor: bool = False


@dataclass
class SessionResult:
    """Outcome of a bootstrap step."""

    success: bool
    visitor_uuid: Optional[str] = None
    conversation: Optional[Conversation] = None
    error: Optional[SessionError] = None

    @property
    def reason(self) -> Optional[str]:
        return self.error.message if self.error else None

    @classmethod
    def failed(
        cls,
        error: SessionError,
        visitor_uuid: Optional[str] = None,
    ) -> "SessionResult":
        return cls(success=False, visitor_uuid=visitor_uuid, error=error)


class SessionBootstrap:
    """State machine that establishes and repairs a visitor session."""

    def __init__(
        self,
        visitors: VisitorDirectory,
        conversations: ConversationDirectory,
        settings: Optional[WidgetSettings] = None,
    ) -> None:
        self.visitors = visitors
        self.conversations = conversations
        self.settings = settings or get_settings()
        self.state = SessionState.NO_LOCAL_VISITOR
        self.visitor_uuid: Optional[str] = None
        self.conversation: Optional[Conversation] = None

    def _transition(self, state: SessionState, **context) -> None:
        if state != self.state:
            logger.info(
                "session_state_changed",
                from_state=self.state.value,
                to_state=state.value,
                **context,
            )
        self.state = state

    async def _call(self, operation: Awaitable[T]) -> T:
        return await asyncio.wait_for(operation, timeout=self.settings.operation_timeout)

    def _resolved(self, visitor_uuid: str, conversation: Conversation) -> SessionResult:
        self.visitor_uuid = visitor_uuid
        self.conversation = conversation
        self._transition(
            SessionState.CONVERSATION_RESOLVED,
            visitor_uuid=visitor_uuid,
            conversation_id=conversation.uuid,
        )
        return SessionResult(success=True, visitor_uuid=visitor_uuid, conversation=conversation)

    def _failed(self, result: SessionResult) -> SessionResult:
        self._transition(SessionState.FAILED, reason=result.reason)
        return result

    async def initialize_visitor(self, options: Optional[SessionOptions] = None) -> SessionResult:
        """Get or create the visitor UUID."""
        options = options or SessionOptions()
        try:
            if options.force_new_visitor:
                self.visitors.clear_local()
            visitor_uuid = await self._call(self.visitors.get_or_create())
        except Exception as e:
            logger.error("visitor_init_error", error=str(e))
            return SessionResult.failed(
                VisitorInitError(str(e) or "Failed to initialize visitor")
            )

        if not visitor_uuid:
            return SessionResult.failed(
                VisitorInitError("Failed to get or create visitor UUID")
            )
        return SessionResult(success=True, visitor_uuid=visitor_uuid)

    async def initialize_conversation(
        self, visitor_uuid: str, options: Optional[SessionOptions] = None
    ) -> SessionResult:
        """Create a conversation, or reuse the visitor's active one."""
        options = options or SessionOptions()
        try:
            conversation = None
            if not options.auto_create_conversation:
                conversation = await self._call(
                    self.conversations.get_active_by_visitor(visitor_uuid)
                )
            if conversation is None:
                conversation = await self._call(self.conversations.create(visitor_uuid))
        except Exception as e:
            logger.error("conversation_init_error", visitor_uuid=visitor_uuid, error=str(e))
            return SessionResult.failed(
                ConversationInitError(str(e) or "Failed to initialize conversation"),
                visitor_uuid=visitor_uuid,
            )

        if conversation is None:
            message = (
                "Failed to create new conversation"
                if options.auto_create_conversation
                else "Failed to get active conversation or create new one"
            )
            return SessionResult.failed(ConversationInitError(message), visitor_uuid=visitor_uuid)

        return SessionResult(success=True, visitor_uuid=visitor_uuid, conversation=conversation)

    async def initialize_session(self, options: Optional[SessionOptions] = None) -> SessionResult:
        """Initialize the visitor, then its conversation."""
        options = options or SessionOptions()
        visitor_result = await self.initialize_visitor(options)
        if not visitor_result.success:
            return self._failed(visitor_result)

        self._transition(SessionState.VISITOR_VERIFIED, visitor_uuid=visitor_result.visitor_uuid)
        conversation_result = await self.initialize_conversation(
            visitor_result.visitor_uuid, options
        )
        if not conversation_result.success:
            return self._failed(conversation_result)

        return self._resolved(visitor_result.visitor_uuid, conversation_result.conversation)

    async def quick_init(self) -> SessionResult:
        """Reuse or create the visitor, reuse or create its conversation."""
        return await self.initialize_session(SessionOptions(auto_create_conversation=False))

    async def fresh_init(self) -> SessionResult:
        """Force a new visitor and a new conversation."""
        return await self.initialize_session(
            SessionOptions(force_new_visitor=True, auto_create_conversation=True)
        )

    async def is_session_ready(self) -> bool:
        """True if a cached visitor exists and the backend still knows it."""
        visitor_uuid = self.visitors.cached_uuid()
        if not visitor_uuid:
            return False
        try:
            return await self._call(self.visitors.get_by_uuid(visitor_uuid)) is not None
        except Exception as e:
            logger.error("session_ready_check_error", visitor_uuid=visitor_uuid, error=str(e))
            return False

    def session_status(self) -> Dict[str, object]:
        return {
            "visitor_uuid": self.visitors.cached_uuid(),
            "has_conversation": self.conversation is not None,
        }

    async def _reinitialize(self, stale_uuid: str, cause: Optional[Exception] = None) -> SessionResult:
        self.visitors.clear_local()
        self.visitor_uuid = None
        self.conversation = None
        self._transition(SessionState.REINITIALIZING, stale_visitor_uuid=stale_uuid)

        result = await self.quick_init()
        if result.success or cause is None:
            return result

        error = SessionVerificationError(
            f"Session verification failed ({str(cause) or type(cause).__name__}); "
            f"reinitialization failed: {result.reason}"
        )
        return self._failed(SessionResult.failed(error))

    async def ensure_session(self) -> SessionResult:
        """Reuse the cached session if the backend confirms it, else repair it.

        A cached visitor the backend no longer knows, or a backend error while
        verifying, clears the cache and runs one quick init.
        """
        try:
            visitor_uuid = self.visitors.cached_uuid()
            if not visitor_uuid:
                self._transition(SessionState.NO_LOCAL_VISITOR)
                return await self.quick_init()

            try:
                visitor = await self._call(self.visitors.get_by_uuid(visitor_uuid))
                if visitor is None:
                    logger.warning("stale_visitor_detected", visitor_uuid=visitor_uuid)
                    return await self._reinitialize(visitor_uuid)

                self._transition(SessionState.VISITOR_VERIFIED, visitor_uuid=visitor_uuid)
                conversation = await self._call(
                    self.conversations.get_active_by_visitor(visitor_uuid)
                )
                if conversation is None:
                    conversation = await self._call(self.conversations.create(visitor_uuid))
                    if conversation is None:
                        return self._failed(
                            SessionResult.failed(
                                ConversationInitError("Failed to create conversation"),
                                visitor_uuid=visitor_uuid,
                            )
                        )
            except Exception as e:
                logger.error(
                    "session_verification_error",
                    visitor_uuid=visitor_uuid,
                    error=str(e) or type(e).__name__,
                )
                return await self._reinitialize(visitor_uuid, cause=e)

            return self._resolved(visitor_uuid, conversation)

        except Exception as e:
            logger.error("session_ensure_error", error=str(e))
            return self._failed(
                SessionResult.failed(SessionVerificationError(str(e) or "Failed to ensure session"))
            )
