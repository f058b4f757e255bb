import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from feed import ConnectionManager, LocalBroker, RedisBroker, build_broker


class FakeWebSocket:
    def __init__(self, fail=False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


@pytest.mark.anyio
async def test_frames_reach_only_the_named_profiles():
    manager = ConnectionManager()
    teacher_tab, teacher_phone, student, bystander = (FakeWebSocket() for _ in range(4))
    await manager.connect(teacher_tab, 1)
    await manager.connect(teacher_phone, 1)
    await manager.connect(student, 11)
    await manager.connect(bystander, 12)

    delivered = await manager.send_to_users({"type": "message.created"}, [1, 11, 11])

    assert delivered == 3
    assert teacher_tab.sent == teacher_phone.sent == student.sent == [{"type": "message.created"}]
    assert bystander.sent == []
    assert all(ws.accepted for ws in (teacher_tab, teacher_phone, student, bystander))


@pytest.mark.anyio
async def test_dead_sockets_are_dropped():
    manager = ConnectionManager()
    alive, dead = FakeWebSocket(), FakeWebSocket(fail=True)
    await manager.connect(alive, 1)
    await manager.connect(dead, 1)

    assert await manager.send_to_users({"type": "pong"}, [1]) == 1
    assert manager.connection_count(1) == 1

    manager.disconnect(alive, 1)
    assert manager.connection_count() == 0
    assert 1 not in manager.active_connections


@pytest.mark.anyio
async def test_local_broker_hands_frames_to_the_manager():
    manager = ConnectionManager()
    socket = FakeWebSocket()
    await manager.connect(socket, 11)
    broker = LocalBroker(manager)

    await broker.start()
    await broker.publish({"type": "messages.read"}, (11,))
    await broker.stop()

    assert socket.sent == [{"type": "messages.read"}]


class FakePubSub:
    def __init__(self, items, error=None, hang=False):
        self.items = items
        self.error = error
        self.hang = hang
        self.subscribed = []
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed.append(channel)

    async def close(self):
        self.closed = True

    async def listen(self):
        for item in self.items:
            yield item
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()


class FakeRedis:
    def __init__(self, *pubsubs):
        self.pubsubs = list(pubsubs)

    def pubsub(self):
        return self.pubsubs.pop(0)


@pytest.mark.anyio
async def test_redis_broker_relays_envelopes_to_local_sockets():
    manager = ConnectionManager()
    socket = FakeWebSocket()
    await manager.connect(socket, 11)
    broker = RedisBroker(manager, "redis://localhost:6379/0")
    broker._pubsub = FakePubSub([
        {"type": "subscribe", "data": 1},
        {"type": "message", "data": "{broken"},
        {"type": "message", "data": json.dumps({"recipients": [11], "frame": {"type": "message.created"}})},
        {"type": "message", "data": json.dumps({"recipients": [12], "frame": {"type": "message.created"}})},
    ])

    await broker._consume()

    assert socket.sent == [{"type": "message.created"}]


@pytest.mark.anyio
async def test_redis_broker_resubscribes_after_the_connection_drops():
    manager = ConnectionManager()
    socket = FakeWebSocket()
    await manager.connect(socket, 11)
    broker = RedisBroker(manager, "redis://localhost:6379/0", retry_delay=0)
    dropped = FakePubSub([], error=RedisConnectionError("Connection reset by peer"))
    fresh = FakePubSub(
        [{"type": "message", "data": json.dumps({"recipients": [11], "frame": {"type": "message.created"}})}],
        hang=True,
    )
    broker._pubsub = dropped
    broker._redis = FakeRedis(fresh)

    listener = asyncio.create_task(broker._listen())
    for _ in range(200):
        if socket.sent:
            break
        await asyncio.sleep(0.01)
    listener.cancel()
    with pytest.raises(asyncio.CancelledError):
        await listener

    assert socket.sent == [{"type": "message.created"}]
    assert dropped.closed is True
    assert fresh.subscribed == [broker.channel]
    assert broker._pubsub is fresh


def test_broker_choice_follows_redis_url():
    assert isinstance(build_broker(None), LocalBroker)
    assert isinstance(build_broker("redis://cache:6379/2"), RedisBroker)
