"""Tests for chat.transport — Redis pub/sub channel over a shared fakeredis server."""

import asyncio

import fakeredis
import pytest
import pytest_asyncio
import redis

from DonationChat.chat_shared import config
from DonationChat.chat_shared.errors import ChannelUnavailableError
from DonationChat.chat.protocol import (
    EVENT_NEW_MESSAGE,
    EVENT_PRESENCE_SNAPSHOT,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
)
from DonationChat.chat.transport import ChannelClient

pytestmark = pytest.mark.asyncio


async def _wait_for(predicate, timeout: float = 3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class Recorder:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def listen(self, client: ChannelClient, *events):
        for event in events:
            client.on(event, lambda payload, e=event: self.events.append((e, payload)))

    def payloads(self, event):
        return [p for e, p in self.events if e == event]


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def make_client(redis_server):
    clients = []

    def _make():
        client = ChannelClient(fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.close()


# ─── Connect / presence ───

async def test_connect_dispatches_presence_snapshot(make_client):
    alice = make_client()
    rec = Recorder()
    rec.listen(alice, EVENT_PRESENCE_SNAPSHOT)

    await alice.connect("1")

    assert alice.connected
    assert rec.payloads(EVENT_PRESENCE_SNAPSHOT) == [{"onlineUserIds": ["1"]}]


async def test_second_user_sees_first_in_snapshot(make_client):
    alice, bob = make_client(), make_client()
    rec = Recorder()
    rec.listen(bob, EVENT_PRESENCE_SNAPSHOT)

    await alice.connect("1")
    await bob.connect("2")

    assert rec.payloads(EVENT_PRESENCE_SNAPSHOT) == [{"onlineUserIds": ["1", "2"]}]


async def test_user_connected_and_disconnected(make_client):
    alice, bob = make_client(), make_client()
    rec = Recorder()
    rec.listen(alice, EVENT_USER_CONNECTED, EVENT_USER_DISCONNECTED)

    await alice.connect("1")
    await bob.connect("2")
    await _wait_for(lambda: rec.payloads(EVENT_USER_CONNECTED))
    assert rec.payloads(EVENT_USER_CONNECTED) == [{"userId": "2"}]

    await bob.disconnect()
    await _wait_for(lambda: rec.payloads(EVENT_USER_DISCONNECTED))
    assert rec.payloads(EVENT_USER_DISCONNECTED) == [{"userId": "2"}]


async def test_presence_counts_connections(make_client, redis_server):
    first, second = make_client(), make_client()
    await first.connect("1")
    await second.connect("1")
    await first.disconnect()

    probe = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    assert await probe.hget(config.PRESENCE_KEY, "1") == "1"

    await second.disconnect()
    assert await probe.hget(config.PRESENCE_KEY, "1") is None
    await probe.aclose()


# ─── Emit ───

async def test_emit_reaches_other_clients_not_self(make_client):
    alice, bob = make_client(), make_client()
    alice_rec, bob_rec = Recorder(), Recorder()
    alice_rec.listen(alice, EVENT_NEW_MESSAGE)
    bob_rec.listen(bob, EVENT_NEW_MESSAGE)
    await alice.connect("1")
    await bob.connect("2")

    await alice.emit(EVENT_NEW_MESSAGE, {"id": "101", "conversationId": "42"})
    await _wait_for(lambda: bob_rec.payloads(EVENT_NEW_MESSAGE))

    assert bob_rec.payloads(EVENT_NEW_MESSAGE) == [{"id": "101", "conversationId": "42"}]
    await asyncio.sleep(0.1)
    assert alice_rec.payloads(EVENT_NEW_MESSAGE) == []


async def test_emit_when_disconnected_raises(make_client):
    with pytest.raises(ChannelUnavailableError):
        await make_client().emit(EVENT_NEW_MESSAGE, {})


async def test_async_handler_and_failing_handler(make_client):
    alice, bob = make_client(), make_client()
    got = []

    async def async_handler(payload):
        got.append(payload)

    def broken(payload):
        raise RuntimeError("handler bug")

    bob.on(EVENT_NEW_MESSAGE, broken)
    bob.on(EVENT_NEW_MESSAGE, async_handler)
    await alice.connect("1")
    await bob.connect("2")

    await alice.emit(EVENT_NEW_MESSAGE, {"id": "1", "conversationId": "42"})
    await _wait_for(lambda: got)
    assert got == [{"id": "1", "conversationId": "42"}]


# ─── Handlers ───

async def test_off_removes_handlers(make_client):
    client = make_client()

    def a(payload):
        pass

    def b(payload):
        pass

    client.on(EVENT_NEW_MESSAGE, a)
    client.on(EVENT_NEW_MESSAGE, b)
    client.off(EVENT_NEW_MESSAGE, a)
    assert client.handler_count(EVENT_NEW_MESSAGE) == 1
    client.off(EVENT_NEW_MESSAGE)
    assert client.handler_count() == 0


async def test_connect_failure_raises():
    server = fakeredis.FakeServer()
    server.connected = False
    client = ChannelClient(fakeredis.FakeAsyncRedis(server=server, decode_responses=True))
    with pytest.raises(ChannelUnavailableError):
        await client.connect("1")
    assert not client.connected


async def test_listener_failure_drops_connection(make_client, redis_server):
    client = make_client()
    await client.connect("1")

    async def broken(**kwargs):
        raise redis.exceptions.ConnectionError("connection reset")

    client._pubsub.get_message = broken
    await _wait_for(lambda: not client.connected)
    assert client.user_id is None

    await client.connect("1")
    assert client.connected
    probe = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    assert await probe.hget(config.PRESENCE_KEY, "1") == "1"
    await probe.aclose()


async def test_partial_connect_closes_pubsub(make_client, monkeypatch):
    client = make_client()
    closed = []
    make_pubsub = client._redis.pubsub

    def tracking_pubsub():
        pubsub = make_pubsub()
        original = pubsub.aclose

        async def aclose():
            closed.append(True)
            await original()

        pubsub.aclose = aclose
        return pubsub

    async def refuse(*args):
        raise redis.exceptions.ConnectionError("connection reset")

    monkeypatch.setattr(client._redis, "pubsub", tracking_pubsub)
    monkeypatch.setattr(client._redis, "hincrby", refuse)

    with pytest.raises(ChannelUnavailableError):
        await client.connect("1")
    assert closed == [True]
    assert not client.connected
