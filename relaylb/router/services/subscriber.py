"""Background consumer of backend change events.

Keeps the router's live set in step with the registry: ``healthy`` events add
a backend (fetching its url from the registry), any other status removes it.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from prometheus_client import Counter
from redis.exceptions import RedisError

from relaylb.models.schemas import BackendEvent
from relaylb.registry.events import InvalidEvent, decode_event
from relaylb.registry.store import ChangeSubscription, RegistryStore
from relaylb.router.services.state import RouterState

log = logging.getLogger("Router.Subscriber")

EVENTS = Counter("lb_backend_events_total", "Backend change events received", ["outcome"])


class BackendSubscriber:
    """Applies change events to a RouterState, one at a time, in delivery order."""

    def __init__(self, store: RegistryStore, state: RouterState):
        self._store = store
        self._state = state
        self._subscription: Optional[ChangeSubscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Subscribe to the change channel and spawn the consumer task."""
        self._subscription = await self._store.subscribe_changes()
        self._task = asyncio.create_task(self._consume(self._subscription), name="backend-subscriber")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await sub.close()
        log.info("subscriber stopped")

    async def _consume(self, subscription: ChangeSubscription) -> None:
        try:
            async for payload in subscription.payloads():
                try:
                    await self.handle_payload(payload)
                except Exception:
                    EVENTS.labels(outcome="error").inc()
                    log.exception("failed to apply backend event %r", payload)
        except RedisError as e:
            log.error("subscription failed, backend changes are no longer tracked: %s", e)
            return
        log.error("subscription closed, backend changes are no longer tracked")

    async def handle_payload(self, payload: str | bytes) -> None:
        try:
            event = decode_event(payload)
        except InvalidEvent as e:
            EVENTS.labels(outcome="invalid").inc()
            log.warning("%s", e)
            return
        await self.apply(event)

    async def apply(self, event: BackendEvent) -> None:
        if not event.is_healthy:
            if self._state.remove(event.backend_id):
                EVENTS.labels(outcome="removed").inc()
                log.info("removed backend %s (%s)", event.backend_id, event.status)
            else:
                EVENTS.labels(outcome="noop").inc()
                log.info("backend %s not cached, nothing to remove", event.backend_id)
            return

        if self._state.contains(event.backend_id):
            EVENTS.labels(outcome="noop").inc()
            log.info("backend %s already present, skipping add", event.backend_id)
            return

        try:
            backend = await self._store.get_backend(event.backend_id)
        except RedisError as e:
            EVENTS.labels(outcome="dropped").inc()
            log.warning("failed to fetch backend %s from registry: %s", event.backend_id, e)
            return
        if backend is None:
            EVENTS.labels(outcome="dropped").inc()
            log.warning("backend %s missing url field, dropping event", event.backend_id)
            return

        if self._state.add(backend):
            EVENTS.labels(outcome="added").inc()
            log.info("added backend %s (%s)", backend.id, backend.url)
        else:
            EVENTS.labels(outcome="noop").inc()
