"""HTTP directory implementations.

Thin wrappers around httpx that talk to a backend exposing the
``{status, message, data}`` envelope. Failed calls raise TransportFailure;
a 404 on a lookup is reported as None.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..config import WidgetSettings, get_settings
from ..domain.models import Conversation, HistoryPage, MessageCreate, ReplyEnvelope, Visitor
from ..errors import TransportFailure
from .base import ConversationDirectory, MessageDirectory, SessionStore, VisitorDirectory

logger = structlog.get_logger()


class HttpTransport:
    """Shared httpx client with envelope unwrapping."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[WidgetSettings] = None,
    ) -> None:
        settings = settings or get_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_url.rstrip("/"),
            timeout=settings.request_timeout,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _body(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        body = self._body(resp)
        detail = None
        if isinstance(body, dict):
            detail = next(
                (
                    body[key]
                    for key in ("message", "error", "detail")
                    if isinstance(body.get(key), str) and body[key]
                ),
                None,
            )
        # Non-JSON bodies (proxy error pages) are never used as the message.
        raise TransportFailure(
            message=detail or f"HTTP {resp.status_code}",
            status_code=resp.status_code,
            payload=body if isinstance(body, dict) else None,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Send a request and return the decoded envelope.

        Returns None for a 404 when allow_not_found is set.
        """
        try:
            resp = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            logger.error("transport_error", method=method, path=path, error=str(e))
            raise TransportFailure(message=str(e) or type(e).__name__) from e

        if resp.status_code == 404 and allow_not_found:
            return None
        self._raise_for_status(resp)

        body = self._body(resp)
        if not isinstance(body, dict):
            raise TransportFailure(
                message="Invalid response body",
                status_code=resp.status_code,
                payload=body,
            )
        if body.get("status") == "error":
            raise TransportFailure(
                message=str(body.get("message") or "Request failed"),
                status_code=resp.status_code,
                payload=body,
            )
        return body


class HttpVisitorDirectory(VisitorDirectory):
    def __init__(self, transport: HttpTransport, store: SessionStore) -> None:
        super().__init__(store)
        self.transport = transport

    async def create(self) -> Optional[Visitor]:
        body = await self.transport.request("POST", "/visitors", json={})
        if body.get("status") != "success" or not body.get("data"):
            logger.error("visitor_create_rejected", response=body)
            return None
        return Visitor.model_validate(body["data"])

    async def get_by_uuid(self, uuid: str) -> Optional[Visitor]:
        body = await self.transport.request("GET", f"/visitors/{uuid}", allow_not_found=True)
        if body is None or not body.get("data"):
            return None
        return Visitor.model_validate(body["data"])

    async def delete_remote(self, uuid: str) -> bool:
        body = await self.transport.request("DELETE", f"/visitors/{uuid}", allow_not_found=True)
        return body is not None and body.get("status") == "success"


class HttpConversationDirectory(ConversationDirectory):
    def __init__(self, transport: HttpTransport) -> None:
        self.transport = transport

    async def get_active_by_visitor(self, visitor_uuid: str) -> Optional[Conversation]:
        body = await self.transport.request(
            "GET", f"/conversations/visitor/{visitor_uuid}/active", allow_not_found=True
        )
        if body is not None and body.get("data"):
            return Conversation.model_validate(body["data"])

        # No dedicated active conversation; fall back to the most recent one.
        conversations = await self.list_by_visitor(visitor_uuid)
        if not conversations:
            return None
        return max(conversations, key=lambda c: c.recency)

    async def create(self, visitor_uuid: str) -> Optional[Conversation]:
        body = await self.transport.request(
            "POST", "/conversations", json={"visitor_uuid": visitor_uuid}
        )
        if not body.get("data"):
            return None
        return Conversation.model_validate(body["data"])

    async def list_by_visitor(
        self, visitor_uuid: str, limit: int = 10, offset: int = 0
    ) -> List[Conversation]:
        body = await self.transport.request(
            "GET",
            f"/conversations/visitor/{visitor_uuid}",
            params={"limit": limit, "offset": offset},
            allow_not_found=True,
        )
        data = body.get("data") if body else None
        # Both a bare list and a paginated object are accepted.
        if isinstance(data, dict):
            data = data.get("items")
        if not isinstance(data, list):
            return []
        return [Conversation.model_validate(item) for item in data]

    async def get_by_uuid(self, uuid: str) -> Optional[Conversation]:
        body = await self.transport.request("GET", f"/conversations/{uuid}", allow_not_found=True)
        if body is None or not body.get("data"):
            return None
        return Conversation.model_validate(body["data"])


class HttpMessageDirectory(MessageDirectory):
    def __init__(self, transport: HttpTransport) -> None:
        self.transport = transport

    async def create_and_trigger_reply(self, message: MessageCreate) -> ReplyEnvelope:
        body = await self.transport.request(
            "POST", "/messages", json=message.model_dump(mode="json")
        )
        return ReplyEnvelope(
            status=body.get("status") or "success",
            message=body.get("message"),
            data=body.get("data"),
        )

    async def history(
        self, conversation_uuid: str, limit: int = 50, before_id: Optional[int] = None
    ) -> HistoryPage:
        params: Dict[str, Any] = {"conversation_uuid": conversation_uuid, "limit": limit}
        if before_id:
            params["before_id"] = before_id
        body = await self.transport.request("GET", "/messages/history", params=params)
        data = body.get("data") or {}
        return HistoryPage(
            items=data.get("items") or [],
            has_more=bool(data.get("has_more")),
            next_before_id=data.get("next_before_id"),
        )
