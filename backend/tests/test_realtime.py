"""
Change feed fan-out, subscription lifetime and the invoice WebSocket bridge.
"""
import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from auth import create_access_token
from conftest import wait_until
from realtime import ChangeEvent, ChannelError, RemoteChangeFeed, bridge_invoice_changes, change_feed


def invoice_event(tenant_id=1, status="paid"):
    return ChangeEvent(table="invoices", event_type="UPDATE", tenant_id=tenant_id, old={"status": "sent"}, new={"status": status})


async def test_publish_reaches_only_matching_subscriptions(feed):
    mine = feed.subscribe("invoices", 1)
    other_tenant = feed.subscribe("invoices", 2)
    other_table = feed.subscribe("appointments", 1)

    assert feed.publish(invoice_event()) == 1
    event = await mine.get()
    assert event.new["status"] == "paid"
    assert other_tenant._queue.empty()
    assert other_table._queue.empty()


async def test_event_snapshots_are_read_only():
    event = invoice_event()
    with pytest.raises(TypeError):
        event.new["status"] = "void"
    assert event.to_dict()["eventType"] == "UPDATE"
    assert event.to_dict()["tenantId"] == 1


async def test_close_wakes_blocked_reader(feed):
    subscription = feed.subscribe("invoices", 1)
    reader = asyncio.create_task(subscription.get())
    await asyncio.sleep(0)
    subscription.close()
    assert await reader is None
    assert feed.subscriber_count == 0


async def test_close_is_idempotent_and_stops_delivery(feed):
    subscription = feed.subscribe("invoices", 1)
    subscription.close()
    subscription.close()
    assert feed.publish(invoice_event()) == 0


async def test_async_iteration_ends_on_close(feed):
    received = []

    async with feed.subscribe("invoices", 1) as subscription:
        feed.publish(invoice_event())
        feed.publish(invoice_event(status="void"))

        async def drain():
            async for event in subscription:
                received.append(event.new["status"])

        task = asyncio.create_task(drain())
        await asyncio.sleep(0.01)
        subscription.close()
        await task

    assert received == ["paid", "void"]


async def test_failed_subscription_raises_channel_error(feed):
    subscription = feed.subscribe("invoices", 1)
    subscription.fail(ConnectionResetError("socket closed"))
    with pytest.raises(ChannelError):
        await subscription.get()


def test_websocket_rejects_token_for_another_tenant():
    from main import app

    token = create_access_token({"sub": "owner"}, tenant_id=2)
    client = TestClient(app)
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/api/realtime/1/invoices?token={token}") as websocket:
            websocket.receive_json()


def test_websocket_rejects_invalid_token():
    from main import app

    client = TestClient(app)
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/realtime/1/invoices?token=not-a-token") as websocket:
            websocket.receive_json()


def test_event_survives_the_wire_format():
    event = invoice_event(tenant_id=4)
    decoded = ChangeEvent.from_dict(json.loads(json.dumps(event.to_dict())))
    assert decoded == event


class FakeSocket:
    """Just enough of a Starlette WebSocket for the bridge"""

    def __init__(self):
        self.accepted = False
        self.sent = []
        self.close_code = None
        self._incoming = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        self.sent.append(data)

    async def receive(self):
        return await self._incoming.get()

    async def close(self, code=1000):
        self.close_code = code

    def disconnect(self):
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": 1001})


async def test_bridge_forwards_events_and_releases_on_disconnect(feed):
    socket = FakeSocket()
    bridge = asyncio.create_task(bridge_invoice_changes(socket, 1, feed))
    await wait_until(lambda: feed.subscriber_count == 1)

    feed.publish(invoice_event())
    feed.publish(invoice_event(tenant_id=2))
    await wait_until(lambda: socket.sent)

    socket.disconnect()
    await asyncio.wait_for(bridge, 1)

    assert socket.accepted
    assert [message["tenantId"] for message in socket.sent] == [1]
    assert socket.sent[0]["new"]["status"] == "paid"
    assert feed.subscriber_count == 0


async def test_idle_bridges_do_not_pile_up(feed):
    for _ in range(3):
        socket = FakeSocket()
        bridge = asyncio.create_task(bridge_invoice_changes(socket, 1, feed))
        await wait_until(lambda: feed.subscriber_count == 1)
        socket.disconnect()
        await asyncio.wait_for(bridge, 1)
    assert feed.subscriber_count == 0


async def test_bridge_closes_socket_when_feed_breaks(feed):
    socket = FakeSocket()
    bridge = asyncio.create_task(bridge_invoice_changes(socket, 1, feed))
    await wait_until(lambda: feed.subscriber_count == 1)

    next(iter(feed._subscriptions)).fail(ConnectionResetError("feed lost"))
    await asyncio.wait_for(bridge, 1)

    assert socket.close_code == 1011
    assert feed.subscriber_count == 0


async def test_remote_feed_receives_events_over_the_bridge(live_server):
    remote = RemoteChangeFeed(create_access_token({"sub": "owner"}, tenant_id=1), base_url=live_server)

    for _ in range(3):
        async with remote.subscribe("invoices", 1) as subscription:
            await wait_until(lambda: change_feed.subscriber_count == 1)
            change_feed.publish(invoice_event(tenant_id=2))
            change_feed.publish(invoice_event())

            event = await asyncio.wait_for(subscription.get(), 5)
            assert event.tenant_id == 1
            assert event.new["status"] == "paid"

        await wait_until(lambda: change_feed.subscriber_count == 0)


async def test_remote_feed_reports_server_side_failure(live_server):
    remote = RemoteChangeFeed(create_access_token({"sub": "owner"}, tenant_id=1), base_url=live_server)

    async with remote.subscribe("invoices", 1) as subscription:
        await wait_until(lambda: change_feed.subscriber_count == 1)
        next(iter(change_feed._subscriptions)).fail(ConnectionResetError("feed lost"))

        with pytest.raises(ChannelError):
            await asyncio.wait_for(subscription.get(), 5)

    await wait_until(lambda: change_feed.subscriber_count == 0)


async def test_remote_feed_refused_token_is_channel_error(live_server):
    remote = RemoteChangeFeed(create_access_token({"sub": "owner"}, tenant_id=2), base_url=live_server)

    with pytest.raises(ChannelError):
        await remote.subscribe("invoices", 1).connect()
    assert change_feed.subscriber_count == 0


def test_remote_feed_only_bridges_invoices():
    with pytest.raises(ValueError):
        RemoteChangeFeed("token").subscribe("appointments", 1)
