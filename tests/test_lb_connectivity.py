# tests/test_lb_connectivity.py
import socket
import threading
import time
from contextlib import closing

import httpx
import pytest
import uvicorn

from relaylb.core.config import Settings
from relaylb.orchestrator.services.health import HealthChecker
from relaylb.router.main import create_app as create_router
from relaylb.worker.main import create_app as create_worker
from relaylb.worker.services.node import Node

# --- helpers ---------------------------------------------------------------

def _free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

class _BgServer:
    """Run a uvicorn server in a background thread; stop with should_exit=True."""
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error")
        self.server = uvicorn.Server(self.config)
        self.thread = threading.Thread(target=self.server.run, daemon=True)

    def start(self):
        self.thread.start()
        # Wait until port is accepting connections
        deadline = time.time() + 5
        while time.time() < deadline:
            try:
                with socket.create_connection((self.config.host, self.config.port), timeout=0.25):
                    return
            except OSError:
                time.sleep(0.05)
        raise RuntimeError("Server failed to start")

    def stop(self):
        self.server.should_exit = True
        self.thread.join(timeout=3)

# --- tests ----------------------------------------------------------------

@pytest.mark.anyio
async def test_router_proxies_to_worker_and_follows_health(fake_redis, store, eventually):
    # 1) Start a worker on a free port
    port = _free_port()
    worker = _BgServer(create_worker(Node("backend-1", 0, 0)), "127.0.0.1", port)
    worker.start()
    worker_url = f"http://127.0.0.1:{port}"

    try:
        # 2) Register it and let the orchestrator derive its status
        await store.register_backend("b1", worker_url)
        async with httpx.AsyncClient() as probe_client:
            checker = HealthChecker(store, probe_client)
            report = await checker.run_cycle()
            assert report.checked == {"b1": "healthy"}

            # 3) Router loads the healthy worker at startup and proxies to it
            router = create_router(store=store, settings=Settings(resync_interval_s=0, forward_timeout_s=5))
            async with router.router.lifespan_context(router):
                transport = httpx.ASGITransport(app=router)
                async with httpx.AsyncClient(transport=transport, base_url="http://lb.local") as client:
                    resp = await client.get("/process")
                    assert resp.status_code == 200
                    assert resp.json()["node_id"] == "backend-1"

                    # 4) Negative case: worker reports unhealthy => router stops routing to it
                    await probe_client.get(f"{worker_url}/toggle-health")
                    report = await checker.run_cycle()
                    assert report.changed == ["b1"]
                    await eventually(lambda: len(router.state.router_state) == 0)

                    resp2 = await client.get("/process")
                    assert resp2.status_code == 503
    finally:
        worker.stop()


@pytest.mark.anyio
async def test_slow_worker_exceeding_forward_timeout_returns_502(fake_redis, store):
    port = _free_port()
    worker = _BgServer(create_worker(Node("slow", 1000, 1000)), "127.0.0.1", port)
    worker.start()

    try:
        fake_redis.add_backend("b1", f"http://127.0.0.1:{port}", "healthy")
        # no http_client given: the router builds its own from FORWARD_TIMEOUT_S
        router = create_router(store=store, settings=Settings(resync_interval_s=0, forward_timeout_s=0.2))
        async with router.router.lifespan_context(router):
            assert router.state.http.timeout.read == 0.2
            transport = httpx.ASGITransport(app=router)
            async with httpx.AsyncClient(transport=transport, base_url="http://lb.local") as client:
                started = time.monotonic()
                resp = await client.get("/process")
                assert resp.status_code == 502
                assert time.monotonic() - started < 1.0
    finally:
        worker.stop()
