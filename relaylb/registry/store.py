"""Redis-backed backend registry.

Layout in Redis:
  - set ``backends``               members are backend ids
  - hash ``backend:{id}``          fields ``url``, ``status``, ``last_checked``
  - channel ``backend_changes``    JSON change events (see ``events``)

Every method lets ``redis.exceptions.RedisError`` propagate; callers decide
whether a failure is fatal (router startup) or skipped (health cycle, subscriber).
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, List, Optional, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from relaylb.models.schemas import Backend, BackendStatus
from relaylb.registry.events import CHANGES_CHANNEL, encode_event

log = logging.getLogger("Registry")

BACKENDS_KEY = "backends"


def backend_key(backend_id: str) -> str:
    return f"backend:{backend_id}"


def _to_backend(backend_id: str, fields: dict[str, str]) -> Optional[Backend]:
    url = fields.get("url")
    if not url:
        return None
    status = fields.get("status")
    last_checked = fields.get("last_checked")
    return Backend(
        id=backend_id,
        url=url,
        status=BackendStatus(status) if status in {s.value for s in BackendStatus} else None,
        last_checked=int(last_checked) if last_checked and last_checked.isdecimal() else None,
    )


class ChangeSubscription:
    """An open subscription to the change channel."""

    def __init__(self, pubsub: Any, channel: str = CHANGES_CHANNEL):
        self._pubsub = pubsub
        self.channel = channel
        self._closed = False

    async def payloads(self) -> AsyncIterator[str]:
        """Yield raw message payloads in delivery order.

        Ends when the subscription is closed; connection failures raise
        ``RedisError``.
        """
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            yield message["data"]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        except RedisError as e:
            log.warning("unsubscribe from %s failed: %s", self.channel, e)
        await self._pubsub.aclose()


class RegistryStore:
    """
    Thin async wrapper over the registry keys.

    Holds a ``redis.asyncio.Redis`` client created with ``decode_responses=True``.
    """

    def __init__(self, redis: Any):
        self._redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RegistryStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def close(self) -> None:
        await self._redis.aclose()

    async def backend_ids(self) -> List[str]:
        return list(await self._redis.smembers(BACKENDS_KEY))

    async def get_backend(self, backend_id: str) -> Optional[Backend]:
        """Return the backend's record, or None when it has no ``url``."""
        fields = await self._redis.hgetall(backend_key(backend_id))
        return _to_backend(backend_id, fields or {})

    async def get_url(self, backend_id: str) -> Optional[str]:
        return await self._redis.hget(backend_key(backend_id), "url")

    async def get_status(self, backend_id: str) -> Optional[str]:
        return await self._redis.hget(backend_key(backend_id), "status")

    async def update_status(self, backend_id: str, status: BackendStatus, checked_at: int) -> None:
        await self._redis.hset(
            backend_key(backend_id),
            mapping={"status": status.value, "last_checked": int(checked_at)},
        )

    async def publish_change(self, backend_id: str, status: Union[BackendStatus, str]) -> int:
        """Publish a change event; returns the number of receiving subscribers."""
        return await self._redis.publish(CHANGES_CHANNEL, encode_event(backend_id, status))

    async def register_backend(self, backend_id: str, url: str) -> None:
        """Add a backend to the registry without touching its status."""
        await self._redis.sadd(BACKENDS_KEY, backend_id)
        await self._redis.hset(backend_key(backend_id), mapping={"url": url})
        log.info("registered backend %s (%s)", backend_id, url)

    async def list_backends(self) -> List[Backend]:
        """Every registered backend with a url, in registry order."""
        out: List[Backend] = []
        for backend_id in await self.backend_ids():
            backend = await self.get_backend(backend_id)
            if backend is not None:
                out.append(backend)
        return out

    async def load_healthy_backends(self) -> List[Backend]:
        """
        Full load of the healthy backends, in registry order.

        A failure reading the id set propagates. A failure reading one
        backend's hash is logged and that backend is left out.
        """
        result: List[Backend] = []
        for backend_id in await self.backend_ids():
            try:
                backend = await self.get_backend(backend_id)
            except RedisError as e:
                log.warning("failed to read backend %s: %s", backend_id, e)
                continue
            if backend is None:
                log.warning("backend %s has no url, skipping", backend_id)
                continue
            if backend.status is BackendStatus.HEALTHY:
                result.append(backend)
        return result

    async def subscribe_changes(self) -> ChangeSubscription:
        """Subscribe to the change channel.

        Returns once the SUBSCRIBE command has been sent, so events published
        afterwards are delivered to the returned subscription.
        """
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(CHANGES_CHANNEL)
        log.info("subscribed to %s", CHANGES_CHANNEL)
        return ChangeSubscription(pubsub)
