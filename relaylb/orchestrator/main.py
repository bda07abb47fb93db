"""Orchestrator FastAPI application.

Runs the health-check cycle on a fixed period for the life of the process and
exposes a small admin surface over the registry.
"""
from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from redis.exceptions import RedisError

from relaylb.core.config import Settings, settings as default_settings
from relaylb.core.logging import setup_logging
from relaylb.core.scheduler import PeriodicTask
from relaylb.orchestrator.api.routes import router
from relaylb.orchestrator.services.health import HealthChecker
from relaylb.registry.store import RegistryStore

log = logging.getLogger("Orchestrator")


async def seed_backends(store: RegistryStore, seeds: dict[str, str]) -> None:
    """Register the backends listed in SEED_BACKENDS; registry errors are logged."""
    for backend_id, url in seeds.items():
        try:
            await store.register_backend(backend_id, url)
        except RedisError as e:
            log.error("failed to seed backend %s: %s", backend_id, e)


def create_app(
    store: Optional[RegistryStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
    start_loop: bool = True,
) -> FastAPI:
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
                client = await stack.enter_async_context(
                    httpx.AsyncClient(timeout=cfg.probe_timeout_s)
                )

            await seed_backends(registry, cfg.seed_backends)

            checker = HealthChecker(registry, client, timeout_s=cfg.probe_timeout_s)
            loop = PeriodicTask("health-check", cfg.health_interval_s, checker.run_cycle)
            if start_loop:
                loop.start()
                stack.push_async_callback(loop.stop)
            log.info("orchestrator started")

            app.state.store = registry
            app.state.checker = checker
            app.state.health_loop = loop
            yield

    app = FastAPI(title="relaylb orchestrator", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=default_settings.port)
