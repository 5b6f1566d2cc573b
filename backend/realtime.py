"""
Realtime change feed.

In-process pub/sub of row-level change events. Writers publish an event after
their transaction commits; readers hold a Subscription filtered by table and
tenant. A Subscription is an async context manager and async iterator, so
every acquisition has a matching release on every exit path.

Terminals outside the server process read the same events over the
WebSocket bridge through RemoteChangeFeed, which has the same subscribe/get/
close surface and reports a dropped socket as ChannelError.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Set

import aiohttp
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status

from auth import decode_tenant_id
from config import settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/realtime", tags=["realtime"])


class ChannelError(Exception):
    """The subscription broke; events may have been missed."""


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str  # INSERT or UPDATE
    tenant_id: int
    old: Mapping = field(default_factory=dict)
    new: Mapping = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "old", MappingProxyType(dict(self.old)))
        object.__setattr__(self, "new", MappingProxyType(dict(self.new)))

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "eventType": self.event_type,
            "tenantId": self.tenant_id,
            "old": dict(self.old),
            "new": dict(self.new),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ChangeEvent":
        return cls(
            table=data["table"],
            event_type=data["eventType"],
            tenant_id=data["tenantId"],
            old=data.get("old") or {},
            new=data.get("new") or {},
        )


_CLOSED = object()
_BROKEN = object()


class Subscription:
    """One listener on the feed, scoped to a table and tenant"""

    def __init__(self, feed: "ChangeFeed", table: str, tenant_id: int):
        self._feed = feed
        self.table = table
        self.tenant_id = tenant_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._error: Optional[BaseException] = None
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        return event.table == self.table and event.tenant_id == self.tenant_id

    def deliver(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def fail(self, exc: BaseException) -> None:
        """Mark the channel broken; the consumer sees ChannelError on its next read."""
        if self.closed:
            return
        logger.error(f"Realtime channel {self.table}:{self.tenant_id} failed: {exc}")
        self._error = exc
        self._queue.put_nowait(_BROKEN)

    async def get(self) -> Optional[ChangeEvent]:
        """Next event, or None once the subscription is closed."""
        item = await self._queue.get()
        if item is _BROKEN:
            raise ChannelError(str(self._error))
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed.remove(self)
        # Wake any consumer blocked on get()
        self._queue.put_nowait(_CLOSED)

    async def connect(self) -> "Subscription":
        return self

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        return False


class ChangeFeed:
    """Fan-out of change events to matching subscriptions"""

    def __init__(self):
        self._subscriptions: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, table: str, tenant_id: int) -> Subscription:
        subscription = Subscription(self, table, tenant_id)
        self._subscriptions.add(subscription)
        logger.info(f"✅ Subscribed to {table} changes for tenant {tenant_id}")
        return subscription

    def remove(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching subscription. Returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)
                delivered += 1
        return delivered


# Singleton instance shared by writers and the WebSocket bridge
change_feed = ChangeFeed()


# ==================== REMOTE FEED (terminal side) ====================

class RemoteSubscription:
    """One terminal's connection to the server's invoice bridge"""

    def __init__(self, url: str, table: str, tenant_id: int, heartbeat: float = 30.0):
        self.url = url
        self.table = table
        self.tenant_id = tenant_id
        self.closed = False
        self._heartbeat = heartbeat
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self) -> "RemoteSubscription":
        """Open the socket. Raises ChannelError when the bridge cannot be reached or refuses the token."""
        if self._ws is not None:
            return self
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=self._heartbeat)
        except aiohttp.ClientError as e:
            await self._session.close()
            self._session = None
            raise ChannelError(f"Could not connect to invoice feed: {e}") from e
        logger.info(f"✅ Connected to {self.table} feed for tenant {self.tenant_id}")
        return self

    async def get(self) -> Optional[ChangeEvent]:
        """Next event, or None once closed locally. A socket the server drops raises ChannelError."""
        if self.closed:
            return None
        if self._ws is None:
            raise ChannelError("Invoice feed is not connected")

        message = await self._ws.receive()
        if message.type == aiohttp.WSMsgType.TEXT:
            return ChangeEvent.from_dict(message.json())
        if self.closed:
            return None
        raise ChannelError(f"Invoice feed closed ({message.type.name}, code {self._ws.close_code})")

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        if ws is not None:
            await ws.close()
        if session is not None:
            await session.close()

    async def __aenter__(self) -> "RemoteSubscription":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False


class RemoteChangeFeed:
    """
    ChangeFeed stand-in for a terminal running outside the server process.
    Subscriptions read the /api/realtime bridge with the operator's token.
    """

    def __init__(self, token: str, base_url: str = settings.TERMINAL_API_BASE_URL, heartbeat: float = 30.0):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.heartbeat = heartbeat

    def subscribe(self, table: str, tenant_id: int) -> RemoteSubscription:
        if table != "invoices":
            raise ValueError(f"No realtime bridge for table '{table}'")
        ws_base = "ws" + self.base_url[len("http"):] if self.base_url.startswith("http") else self.base_url
        url = f"{ws_base}/api/realtime/{tenant_id}/invoices?token={self.token}"
        return RemoteSubscription(url, table, tenant_id, heartbeat=self.heartbeat)


# ==================== WEBSOCKET BRIDGE (server side) ====================

async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.to_dict())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Terminals never send anything; reading is how a closed socket is noticed
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def bridge_invoice_changes(websocket: WebSocket, tenant_id: int, feed: ChangeFeed = change_feed) -> None:
    """
    Forward one tenant's invoice events until the client leaves or the feed
    breaks. The subscription is released as soon as either side finishes.
    """
    await websocket.accept()
    async with feed.subscribe("invoices", tenant_id) as subscription:
        sender = asyncio.create_task(_forward_events(websocket, subscription))
        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sender, receiver):
                task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)

        error = sender.exception() if sender in done else None
        if isinstance(error, ChannelError):
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        elif isinstance(error, (WebSocketDisconnect, OSError)) or receiver in done:
            logger.info(f"Terminal for tenant {tenant_id} disconnected from invoice feed")
        elif error is not None:
            raise error


@router.websocket("/{tenant_id}/invoices")
async def stream_invoice_changes(
    websocket: WebSocket,
    tenant_id: int,
    token: str = Query(...)
):
    """Push invoice change events for one tenant to a connected terminal."""
    if decode_tenant_id(token) != tenant_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await bridge_invoice_changes(websocket, tenant_id)
