from logging import getLogger

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from relaylb.models.schemas import WorkerResponse

log = getLogger("Worker")
router = APIRouter()


@router.get("/process", response_model=WorkerResponse)
async def process(request: Request):
    node = request.app.state.node
    result = await node.process()
    log.info("[%s] processed request in %dms", node.node_id, result.processing_time_ms)
    return result


@router.get("/health")
async def health(request: Request):
    if request.app.state.node.healthy:
        return JSONResponse({"status": "healthy"}, status_code=200)
    return JSONResponse({"status": "unhealthy"}, status_code=503)


@router.get("/toggle-health")
async def toggle_health(request: Request):
    """Debug aid: flip the node between healthy and unhealthy."""
    node = request.app.state.node
    healthy = node.toggle_health()
    log.info("[%s] health toggled, healthy=%s", node.node_id, healthy)
    return PlainTextResponse("health toggled")
