"""Backend health-check cycle.

Each cycle reads the registry's backend set, probes ``{url}/health`` on every
backend and, for backends whose status changed, writes the new status to the
registry and publishes a change event. Failures are logged and left for the
next cycle; nothing here raises out of ``run_cycle``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
from prometheus_client import Counter, Histogram
from redis.exceptions import RedisError

from relaylb.models.schemas import BackendStatus
from relaylb.registry.store import RegistryStore

log = logging.getLogger("Orchestrator.Health")

PROBES = Counter("orch_probes_total", "Backend health probes", ["result"])
STATUS_CHANGES = Counter("orch_status_changes_total", "Backend status transitions", ["status"])
REGISTRY_FAILURES = Counter("orch_registry_failures_total", "Failed registry operations", ["op"])
CYCLE_SECONDS = Histogram("orch_cycle_seconds", "Health-check cycle duration seconds")


def _health_url(url: str) -> str:
    return url + "health" if url.endswith("/") else url + "/health"


@dataclass
class CycleReport:
    """Outcome of one health-check cycle."""
    checked: dict[str, str] = field(default_factory=dict)  # id -> derived status
    changed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


class HealthChecker:
    """Probes registered backends and keeps their registry status current."""

    def __init__(
        self,
        store: RegistryStore,
        client: httpx.AsyncClient,
        timeout_s: float = 2.0,
        now: Callable[[], float] = time.time,
    ):
        self._store = store
        self._client = client
        self._timeout = timeout_s
        self._now = now
        self._cycle_lock = asyncio.Lock()

    async def probe(self, url: str) -> BackendStatus:
        """200 from ``GET {url}/health`` means healthy; anything else unhealthy."""
        try:
            r = await self._client.get(_health_url(url), timeout=self._timeout)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            PROBES.labels(result="error").inc()
            log.debug("probe %s failed: %s", url, e)
            return BackendStatus.UNHEALTHY
        PROBES.labels(result=str(r.status_code)).inc()
        return BackendStatus.HEALTHY if r.status_code == 200 else BackendStatus.UNHEALTHY

    async def run_cycle(self) -> CycleReport:
        """Run one full sweep. Concurrent callers are serialized."""
        async with self._cycle_lock:
            with CYCLE_SECONDS.time():
                return await self._sweep()

    async def _sweep(self) -> CycleReport:
        report = CycleReport()
        try:
            backend_ids = await self._store.backend_ids()
        except RedisError as e:
            REGISTRY_FAILURES.labels(op="list").inc()
            log.error("failed to get backends: %s", e)
            report.failures.append("list")
            return report

        targets: list[tuple[str, str, Optional[str]]] = []
        for backend_id in backend_ids:
            try:
                url = await self._store.get_url(backend_id)
            except RedisError as e:
                REGISTRY_FAILURES.labels(op="read").inc()
                log.warning("failed to get url for %s: %s", backend_id, e)
                report.skipped.append(backend_id)
                continue
            if not url:
                log.warning("backend %s has no url, skipping", backend_id)
                report.skipped.append(backend_id)
                continue
            try:
                prev = await self._store.get_status(backend_id)
            except RedisError as e:
                REGISTRY_FAILURES.labels(op="read").inc()
                log.warning("failed to get status for %s: %s", backend_id, e)
                prev = None
            targets.append((backend_id, url, prev))

        statuses = await asyncio.gather(*(self.probe(url) for _, url, _ in targets))

        for (backend_id, url, prev), status in zip(targets, statuses):
            report.checked[backend_id] = status.value
            if prev == status.value:
                log.debug("backend=%s status=%s", backend_id, status.value)
                continue
            await self._record_change(backend_id, status, report)
            log.info("backend=%s status changed %s -> %s", backend_id, prev, status.value)
        return report

    async def _record_change(self, backend_id: str, status: BackendStatus, report: CycleReport) -> None:
        STATUS_CHANGES.labels(status=status.value).inc()
        report.changed.append(backend_id)
        try:
            await self._store.update_status(backend_id, status, int(self._now()))
        except RedisError as e:
            REGISTRY_FAILURES.labels(op="write").inc()
            log.error("failed to update %s: %s", backend_id, e)
            report.failures.append(f"write:{backend_id}")
        try:
            await self._store.publish_change(backend_id, status)
        except RedisError as e:
            REGISTRY_FAILURES.labels(op="publish").inc()
            log.error("failed to publish event for %s: %s", backend_id, e)
            report.failures.append(f"publish:{backend_id}")
