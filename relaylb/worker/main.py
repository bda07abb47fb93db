"""Worker FastAPI application: answers health probes and processing requests."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from relaylb.core.config import Settings, settings as default_settings
from relaylb.core.logging import setup_logging
from relaylb.worker.api.routes import router
from relaylb.worker.services.node import Node

log = logging.getLogger("Worker")


def create_app(node: Optional[Node] = None, settings: Optional[Settings] = None) -> FastAPI:
    cfg = settings or default_settings
    node = node or Node(cfg.node_id, cfg.process_min_ms, cfg.process_max_ms)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        log.info("[%s] starting backend server on port %d", node.node_id, cfg.port)
        yield

    app = FastAPI(title=f"relaylb worker {node.node_id}", version="0.1.0", lifespan=lifespan)
    # set eagerly so the app also works without lifespan (e.g. bare ASGI transport)
    app.state.node = node
    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=default_settings.port)
