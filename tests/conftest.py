"""Shared fixtures: an in-memory stand-in for the redis.asyncio commands relaylb uses."""
import asyncio
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from relaylb.registry.store import RegistryStore

_CLOSED = object()


class FakePubSub:
    def __init__(self, server: "FakeRedis"):
        self._server = server
        self._queue: asyncio.Queue = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    @property
    def subscribed(self) -> bool:
        return bool(self.channels)

    async def subscribe(self, channel: str) -> None:
        self._server._check("subscribe")
        self.channels.add(channel)
        self._server._subscribers.append(self)
        self._queue.put_nowait({"type": "subscribe", "channel": channel, "data": 1})

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)

    async def listen(self):
        while self.subscribed:
            msg = await self._queue.get()
            if msg is _CLOSED:
                return
            if isinstance(msg, Exception):
                raise msg
            yield msg

    async def aclose(self) -> None:
        self.closed = True
        self.channels.clear()
        if self in self._server._subscribers:
            self._server._subscribers.remove(self)
        self._queue.put_nowait(_CLOSED)

    def deliver(self, item) -> None:
        self._queue.put_nowait(item)


class FakeRedis:
    """Sets, hashes and pub/sub kept in dicts; ``fail`` names commands that raise."""

    def __init__(self):
        self.sets: dict[str, dict[str, None]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.published: list[tuple[str, str]] = []
        self.fail: set[str] = set()
        self.fail_keys: set[str] = set()
        self._subscribers: list[FakePubSub] = []
        self.closed = False

    def _check(self, command: str, key: str = "") -> None:
        if command in self.fail or (key and key in self.fail_keys):
            raise RedisConnectionError(f"{command} failed")

    async def smembers(self, key):
        self._check("smembers", key)
        return list(self.sets.get(key, {}))

    async def sadd(self, key, *members):
        self._check("sadd", key)
        s = self.sets.setdefault(key, {})
        added = sum(1 for m in members if m not in s)
        for m in members:
            s[m] = None
        return added

    async def hgetall(self, key):
        self._check("hgetall", key)
        return dict(self.hashes.get(key, {}))

    async def hget(self, key, field):
        self._check("hget", key)
        return self.hashes.get(key, {}).get(field)

    async def hset(self, key, mapping):
        self._check("hset", key)
        h = self.hashes.setdefault(key, {})
        h.update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def publish(self, channel, message):
        self._check("publish")
        self.published.append((channel, message))
        receivers = [p for p in self._subscribers if channel in p.channels]
        for p in receivers:
            p.deliver({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self):
        return FakePubSub(self)

    async def aclose(self):
        self.closed = True

    # test helpers

    def add_backend(self, backend_id, url=None, status=None):
        self.sets.setdefault("backends", {})[backend_id] = None
        fields = {}
        if url is not None:
            fields["url"] = url
        if status is not None:
            fields["status"] = status
        self.hashes.setdefault(f"backend:{backend_id}", {}).update(fields)

    def drop_subscriptions(self, error=None):
        for p in list(self._subscribers):
            p.deliver(error if error is not None else _CLOSED)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return RegistryStore(fake_redis)


@pytest.fixture
def eventually():
    """Await until ``predicate()`` is true, yielding to the event loop in between."""

    async def _wait(predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait
