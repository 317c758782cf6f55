import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from errors import BackendUnavailable
from relay import ChatRelay
from store import InMemoryMessageStore, MessageLog, ResilientMessageStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingTransport:
    """Stands in for ConnectionManager and keeps every delivery."""

    def __init__(self):
        self.sent = []
        self.closed = []

    async def send(self, session_id, event, data):
        self.sent.append((session_id, event, data))

    async def send_many(self, session_ids, event, data):
        for session_id in sorted(session_ids):
            await self.send(session_id, event, data)

    async def close(self, session_id):
        self.closed.append(session_id)

    def events(self, session_id, event=None):
        return [
            (ev, data) for sid, ev, data in self.sent
            if sid == session_id and (event is None or ev == event)
        ]

    def texts(self, session_id):
        """Bodies of chat-message events delivered to a session."""
        return [data["message"] for ev, data in self.events(session_id, "chat-message")]

    def reset(self):
        self.sent.clear()


class FlakyLog(MessageLog):
    """In-memory durable log that can be switched off."""

    name = "redis"

    def __init__(self, clock):
        self.inner = InMemoryMessageStore(clock=clock)
        self.down = False
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise BackendUnavailable("backend is down")

    async def append_message(self, message):
        self._check()
        await self.inner.append_message(message)

    async def recent(self, room):
        self._check()
        return await self.inner.recent(room)

    async def clear(self, room):
        self._check()
        await self.inner.clear(room)


class HangingLog(MessageLog):
    name = "redis"

    async def append_message(self, message):
        await asyncio.sleep(10)

    async def recent(self, room):
        await asyncio.sleep(10)
        return []

    async def clear(self, room):
        await asyncio.sleep(10)


class LateLog(FlakyLog):
    """Applies the write, then answers too late for the store timeout."""

    async def append_message(self, message):
        await self.inner.append_message(message)
        await asyncio.sleep(0.05)


class InterleavingLog(MessageLog):
    """Durable log that yields between push and trim, like a pipelined round trip."""

    name = "redis"

    def __init__(self, limit=200):
        self.limit = limit
        self.entries = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.max_before_trim = 0

    async def append_message(self, message):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.entries.append(message)
        await asyncio.sleep(0)
        self.max_before_trim = max(self.max_before_trim, len(self.entries))
        del self.entries[:-self.limit]
        await asyncio.sleep(0)
        self.in_flight -= 1

    async def recent(self, room):
        return [m for m in self.entries if m.room == room]

    async def clear(self, room):
        self.entries = [m for m in self.entries if m.room != room]


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def rpush(self, key, value):
        self.commands.append(("rpush", key, value))
        return self

    def ltrim(self, key, start, end):
        self.commands.append(("ltrim", key, start, end))
        return self

    def expire(self, key, ttl):
        self.commands.append(("expire", key, ttl))
        return self

    async def execute(self):
        if self.redis.fail:
            raise RedisConnectionError("connection refused")
        results = []
        for command, key, *args in self.commands:
            if command == "rpush":
                self.redis.lists.setdefault(key, []).append(args[0])
                results.append(len(self.redis.lists[key]))
            elif command == "ltrim":
                start, end = args
                items = self.redis.lists.get(key, [])
                self.redis.lists[key] = items[start:] if end == -1 else items[start:end + 1]
                results.append(True)
            else:
                self.redis.ttls[key] = args[0]
                results.append(True)
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisBackend."""

    def __init__(self):
        self.lists = {}
        self.ttls = {}
        self.fail = False
        self.closed = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def lrange(self, key, start, end):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return list(self.lists.get(key, []))

    async def delete(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return 1 if self.lists.pop(key, None) is not None else 0

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def store(clock):
    return ResilientMessageStore(clock=clock)


@pytest.fixture
async def relay(transport, store, clock):
    relay = ChatRelay(
        transport,
        store,
        credentials={"admin": "secret"},
        clock=clock,
        disconnect_grace=0.01,
    )
    yield relay
    await relay.shutdown()
