"""API routes for the router.

``/process`` picks the next healthy backend round-robin and proxies the request
to it; the remaining routes expose liveness, readiness and the live set.
"""
from __future__ import annotations

from logging import getLogger

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

from relaylb.router.services.proxy import forward
from relaylb.router.services.state import RouterState
from relaylb.router.services.subscriber import BackendSubscriber

log = getLogger("Router.API")
router = APIRouter()

REQUESTS = Counter("lb_requests_total", "Total incoming router requests")
SELECTION_ERRORS = Counter("lb_selection_errors_total", "Requests rejected with no healthy backend")


def _state(request: Request) -> RouterState:
    return request.app.state.router_state


@router.get("/process")
async def process(request: Request):
    REQUESTS.inc()
    backend = _state(request).select_next()
    if backend is None:
        SELECTION_ERRORS.inc()
        raise HTTPException(status_code=503, detail="no healthy backends available")

    log.info("forwarding request to %s (%s)", backend.id, backend.url)
    client: httpx.AsyncClient = request.app.state.http
    return await forward(client, backend)


@router.get("/backends")
async def live_backends(request: Request):
    """Current live set in rotation order."""
    return [{"id": b.id, "url": b.url} for b in _state(request).snapshot()]


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request):
    """Ready while the change subscriber is still consuming events."""
    subscriber: BackendSubscriber | None = getattr(request.app.state, "subscriber", None)
    if subscriber is None or not subscriber.running:
        raise HTTPException(status_code=503, detail="backend change subscriber is not running")
    return {"status": "ok", "backends": len(_state(request))}


@router.get("/metrics")
async def metrics():
    """Prometheus exposition endpoint for router process metrics."""
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)
