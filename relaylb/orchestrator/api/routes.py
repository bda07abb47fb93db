from dataclasses import asdict
from typing import List

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from relaylb.models.schemas import Backend, BackendIn

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness of the orchestrator process itself."""
    return {"status": "ok"}


@router.get("/backends", response_model=List[Backend])
async def list_backends(request: Request):
    """Registry view: every registered backend with its last derived status."""
    try:
        return await request.app.state.store.list_backends()
    except RedisError as e:
        raise HTTPException(503, detail=f"registry unavailable: {e}") from e


@router.post("/backends", response_model=BackendIn)
async def register_backend(backend: BackendIn, request: Request):
    """Add a backend; its status is derived on the next cycle."""
    try:
        await request.app.state.store.register_backend(backend.id, backend.url)
    except RedisError as e:
        raise HTTPException(503, detail=f"registry unavailable: {e}") from e
    return backend


@router.post("/cycle")
async def run_cycle(request: Request):
    """Run one health-check cycle now and return what it did."""
    report = await request.app.state.checker.run_cycle()
    return asdict(report)


@router.get("/metrics")
async def metrics():
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)
