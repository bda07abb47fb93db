"""Reverse-proxy utilities for the router.

Forwards a client request to the selected backend's ``/process`` endpoint and
streams the upstream status and decoded body back. One attempt per request: a
transport failure is reported as 502, never retried on another backend.
"""
from __future__ import annotations

import logging
from typing import Dict, Mapping

import httpx
from fastapi import HTTPException, Response
from fastapi.responses import StreamingResponse
from prometheus_client import Counter
from starlette.background import BackgroundTask

from relaylb.models.schemas import Backend

log = logging.getLogger("Router.Proxy")

UPSTREAM_ERRORS = Counter("lb_upstream_errors_total", "Forward attempts that failed in transport", ["backend"])

# RFC 9110 hop-by-hop headers (must not be forwarded)
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}

PROCESS_PATH = "/process"


# the body is relayed decoded, so its length and encoding headers no longer apply
BODY_HEADERS = {"content-length", "content-encoding"}


def _strip_hop_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        k: v for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP and k.lower() not in BODY_HEADERS
    }


def target_url(base: str, path: str = PROCESS_PATH) -> str:
    base = base[:-1] if base.endswith("/") else base
    path = path if path.startswith("/") else f"/{path}"
    return f"{base}{path}"


async def forward(client: httpx.AsyncClient, backend: Backend, path: str = PROCESS_PATH) -> Response:
    """GET ``{backend.url}{path}`` and relay status code and body to the caller."""
    try:
        upstream_request = client.build_request("GET", target_url(backend.url, path))
    except (httpx.InvalidURL, ValueError) as e:
        log.error("cannot build request for backend %s (%s): %s", backend.id, backend.url, e)
        raise HTTPException(status_code=500, detail="failed to create backend request") from e

    try:
        upstream_response = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as e:
        UPSTREAM_ERRORS.labels(backend=backend.id).inc()
        log.warning("backend %s (%s) unavailable: %s", backend.id, backend.url, e)
        raise HTTPException(status_code=502, detail="backend unavailable") from e

    resp_headers = _strip_hop_headers(upstream_response.headers)

    async def iter_upstream():
        try:
            async for chunk in upstream_response.aiter_bytes():
                yield chunk
        finally:
            await upstream_response.aclose()

    # the background close also covers clients that disconnect before streaming starts
    return StreamingResponse(
        iter_upstream(),
        status_code=upstream_response.status_code,
        headers=resp_headers,
        background=BackgroundTask(upstream_response.aclose),
    )
