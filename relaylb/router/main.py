"""Router FastAPI application.

Seeds the live set from the registry, keeps it current from the change channel
(plus an optional periodic resync) and proxies ``/process`` requests across it.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from prometheus_client import Gauge

from relaylb.core.config import Settings, settings as default_settings
from relaylb.core.logging import setup_logging
from relaylb.core.scheduler import PeriodicTask
from relaylb.registry.store import RegistryStore
from relaylb.router.api.routes import router
from relaylb.router.services.state import RouterState
from relaylb.router.services.subscriber import BackendSubscriber

log = logging.getLogger("Router")

LIVE_BACKENDS = Gauge("lb_live_backends", "Backends currently in the router's live set")


async def resync(store: RegistryStore, state: RouterState) -> None:
    """Reconcile the live set with the registry's healthy backends."""
    state.reconcile(await store.load_healthy_backends())


def create_app(
    store: Optional[RegistryStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the router app. ``store`` and ``http_client`` are owned by the caller when given."""
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        async with AsyncExitStack() as stack:
            registry = store
            if registry is None:
                registry = RegistryStore.from_url(cfg.redis_url)
                stack.push_async_callback(registry.close)

            client = http_client
            if client is None:
                timeout = httpx.Timeout(cfg.forward_timeout_s or None)
                client = await stack.enter_async_context(httpx.AsyncClient(timeout=timeout))

            state = RouterState()
            LIVE_BACKENDS.set_function(lambda: len(state))
            subscriber = BackendSubscriber(registry, state)
            # subscribe before the full load so no change slips in between
            await subscriber.start()
            stack.push_async_callback(subscriber.stop)

            # startup failure is fatal: the exception propagates out of the lifespan
            await resync(registry, state)
            if len(state) == 0:
                log.warning("no healthy backends found, serving 503 until one appears")
            log.info("loaded %d backends from registry", len(state))

            if cfg.resync_interval_s > 0:
                resync_task = PeriodicTask(
                    "router-resync", cfg.resync_interval_s, lambda: resync(registry, state),
                    run_immediately=False,
                )
                resync_task.start()
                stack.push_async_callback(resync_task.stop)

            app.state.router_state = state
            app.state.subscriber = subscriber
            app.state.http = client
            yield

    app = FastAPI(title="relaylb router", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=default_settings.port)
