"""Tests for CastConnection: handshakes, request ids, routing, correlation and heartbeat."""
import asyncio
import json

import pytest

from shared.errors import ConnectionClosed, RemoteClosed, RequestRejected, RequestTimeout
from shared.protocol import (
    NS_CONNECTION, NS_HEARTBEAT, NS_MEDIA, NS_RECEIVER, RECEIVER_ID, SENDER_ID,
    MediaStatus, ReceiverStatus, UnknownMessage,
)
from conftest import media_status, push_receiver, receiver_status


def test_open_channel_connects_first(connection, transport):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    channel.send("GET_STATUS")
    first, second = transport.sent
    assert first.namespace == NS_CONNECTION
    assert json.loads(first.payload_utf8)["type"] == "CONNECT"
    assert "requestId" not in json.loads(first.payload_utf8)
    assert (first.source_id, first.destination_id) == (SENDER_ID, RECEIVER_ID)
    assert second.namespace == NS_RECEIVER


def test_open_channel_is_idempotent(connection, transport):
    a = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    b = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    assert a is b
    assert transport.sent_types(NS_CONNECTION) == ["CONNECT"]


def test_request_ids_increase_from_initial(connection, transport, config):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    ids = [channel.send("GET_STATUS") for _ in range(3)]
    assert ids == [config.initial_request_id + i for i in range(3)]
    assert [m["requestId"] for m in transport.sent_json(NS_RECEIVER)] == ids


def test_messages_routed_by_namespace(connection, transport):
    receiver = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    anything = connection.open_channel(SENDER_ID, RECEIVER_ID)
    got_receiver, got_any = [], []
    receiver.subscribe(got_receiver.append)
    anything.subscribe(got_any.append)

    push_receiver(transport, receiver_status())
    transport.inject(RECEIVER_ID, SENDER_ID, "urn:x-cast:com.example.custom", {"type": "HELLO"})

    assert [type(m) for m in got_receiver] == [ReceiverStatus]
    assert [m.type for m in got_any] == ["RECEIVER_STATUS", "HELLO"]
    assert isinstance(got_any[1], UnknownMessage)


def test_broadcast_reaches_every_local_endpoint(connection, transport):
    first = connection.open_channel("client-1", "app-1", NS_MEDIA)
    second = connection.open_channel("client-2", "app-1", NS_MEDIA)
    got = []
    first.subscribe(lambda m: got.append(("client-1", m)))
    second.subscribe(lambda m: got.append(("client-2", m)))

    transport.inject("app-1", "*", NS_MEDIA, media_status())
    assert sorted(name for name, _ in got) == ["client-1", "client-2"]


def test_unrouted_message_is_dropped(connection, transport):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    got = []
    channel.subscribe(got.append)
    transport.inject("app-9", SENDER_ID, NS_RECEIVER, receiver_status())
    transport.inject(RECEIVER_ID, "someone-else", NS_RECEIVER, receiver_status())
    assert got == []


def test_invalid_json_is_dropped(connection, transport):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    got = []
    channel.subscribe(got.append)
    transport.inject(RECEIVER_ID, SENDER_ID, NS_RECEIVER, "{not json")
    push_receiver(transport, receiver_status())
    assert len(got) == 1
    assert not connection.closed


async def test_send_and_await_matches_request_id(connection, transport):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    task = asyncio.create_task(channel.send_and_await("GET_STATUS"))
    await asyncio.sleep(0)
    request_id = transport.sent_json(NS_RECEIVER)[-1]["requestId"]

    # unsolicited, wrong id, and right id from the wrong remote are all ignored
    push_receiver(transport, receiver_status())
    push_receiver(transport, receiver_status(request_id=request_id + 100))
    transport.inject("app-1", SENDER_ID, NS_RECEIVER, receiver_status(request_id=request_id))
    await asyncio.sleep(0)
    assert not task.done()

    push_receiver(transport, receiver_status(level=0.3, request_id=request_id))
    reply = await task
    assert isinstance(reply, ReceiverStatus)
    assert reply.request_id == request_id
    assert reply.volume.level == 0.3


async def test_reply_is_also_delivered_to_subscribers(connection, transport):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    got = []
    channel.subscribe(got.append)
    task = asyncio.create_task(channel.send_and_await("GET_STATUS"))
    await asyncio.sleep(0)
    request_id = transport.sent_json(NS_RECEIVER)[-1]["requestId"]
    push_receiver(transport, receiver_status(request_id=request_id))
    await task
    assert len(got) == 1


async def test_error_reply_rejects_request(connection, transport):
    channel = connection.open_channel("client-1", "app-1", NS_MEDIA)
    task = asyncio.create_task(channel.send_and_await("PLAY", {"mediaSessionId": 1}))
    await asyncio.sleep(0)
    request_id = transport.sent_json(NS_MEDIA)[-1]["requestId"]
    transport.inject("app-1", "client-1", NS_MEDIA,
                     {"type": "INVALID_REQUEST", "requestId": request_id, "reason": "INVALID_MEDIA_SESSION_ID"})
    with pytest.raises(RequestRejected) as info:
        await task
    assert info.value.message.type == "INVALID_REQUEST"


async def test_request_times_out(connection):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    with pytest.raises(RequestTimeout):
        await channel.send_and_await("GET_STATUS", timeout=0.05)
    assert connection._pending == {}


async def test_close_fails_pending_requests(connection):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    task = asyncio.create_task(channel.send_and_await("GET_STATUS"))
    await asyncio.sleep(0)
    connection.close()
    with pytest.raises(ConnectionClosed):
        await task


async def test_transport_failure_notifies_listeners_once(connection, transport):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    task = asyncio.create_task(channel.send_and_await("GET_STATUS"))
    await asyncio.sleep(0)
    reasons = []
    connection.add_close_listener(reasons.append)

    err = RemoteClosed("gone")
    transport.fail(err)
    transport.fail(err)

    assert reasons == [err]
    assert connection.closed
    assert connection.close_reason is err
    assert channel.closed
    with pytest.raises(ConnectionClosed):
        await task
    await asyncio.wait_for(connection.wait_closed(), 1.0)


def test_send_after_close_raises(connection):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    connection.close()
    with pytest.raises(ConnectionClosed):
        channel.send("GET_STATUS")
    with pytest.raises(ConnectionClosed):
        connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)


def test_local_close_says_close_to_each_endpoint(connection, transport):
    connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    connection.open_channel(SENDER_ID, RECEIVER_ID)
    connection.open_channel("client-1", "app-1", NS_MEDIA)
    reasons = []
    connection.add_close_listener(reasons.append)
    connection.close()
    closes = [(e.source_id, e.destination_id) for e in transport.sent
              if e.namespace == NS_CONNECTION and json.loads(e.payload_utf8)["type"] == "CLOSE"]
    assert sorted(closes) == [("client-1", "app-1"), (SENDER_ID, RECEIVER_ID)]
    assert transport.closed
    assert reasons == [None]


def test_channel_close_sends_close_for_last_channel_only(connection, transport):
    a = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    b = connection.open_channel(SENDER_ID, RECEIVER_ID)
    a.close()
    assert "CLOSE" not in transport.sent_types(NS_CONNECTION)
    b.close()
    assert transport.sent_types(NS_CONNECTION) == ["CONNECT", "CONNECT", "CLOSE"]
    # a fresh channel reconnects
    connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    assert transport.sent_types(NS_CONNECTION)[-1] == "CONNECT"


def test_remote_close_detaches_channels(connection, transport):
    media = connection.open_channel("client-1", "app-1", NS_MEDIA)
    receiver = connection.open_channel(SENDER_ID, RECEIVER_ID, NS_RECEIVER)
    transport.inject("app-1", "client-1", NS_CONNECTION, {"type": "CLOSE"})
    assert media.closed
    assert not receiver.closed
    assert not connection.closed
    with pytest.raises(ConnectionClosed):
        media.send("GET_STATUS")
    # no CLOSE echoed back to a peer that already closed
    assert "CLOSE" not in transport.sent_types(NS_CONNECTION)


def test_ping_is_answered_and_not_delivered(connection, transport):
    channel = connection.open_channel(SENDER_ID, RECEIVER_ID)
    got = []
    channel.subscribe(got.append)
    transport.inject(RECEIVER_ID, SENDER_ID, NS_HEARTBEAT, {"type": "PING"})
    assert got == []
    pong = transport.sent[-1]
    assert pong.namespace == NS_HEARTBEAT
    assert (pong.source_id, pong.destination_id) == (SENDER_ID, RECEIVER_ID)
    assert json.loads(pong.payload_utf8) == {"type": "PONG"}


def test_pong_is_swallowed(connection, transport):
    transport.inject(RECEIVER_ID, SENDER_ID, NS_HEARTBEAT, {"type": "PONG"})
    assert transport.sent == []


async def test_heartbeat_pings_until_closed(connection, transport, config):
    connection.start()
    assert transport.started
    await asyncio.sleep(config.heartbeat_interval * 3.5)
    pings = transport.sent_json(NS_HEARTBEAT, RECEIVER_ID)
    assert len(pings) >= 2
    assert all(p == {"type": "PING"} for p in pings)

    connection.close()
    await asyncio.sleep(0)
    count = len(transport.sent_json(NS_HEARTBEAT))
    await asyncio.sleep(config.heartbeat_interval * 2)
    assert len(transport.sent_json(NS_HEARTBEAT)) == count


def test_media_status_reaches_media_channel(connection, transport):
    channel = connection.open_channel("client-1", "app-1", NS_MEDIA)
    got = []
    channel.subscribe(got.append)
    transport.inject("app-1", "client-1", NS_MEDIA, media_status(session_id=7))
    assert isinstance(got[0], MediaStatus)
    assert got[0].current.media_session_id == 7
