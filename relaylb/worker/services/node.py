"""Worker node state: identity, a togglable health flag and simulated work."""
from __future__ import annotations

import asyncio
import random
import threading
import time
from typing import Optional

from relaylb.models.schemas import WorkerResponse


class Node:
    """A simulated backend with latency drawn uniformly from ``[min_ms, max_ms)``."""

    def __init__(self, node_id: str, min_ms: int = 500, max_ms: int = 2000, rng: Optional[random.Random] = None):
        self.node_id = node_id
        self.min_ms = min_ms
        self.max_ms = max_ms
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._healthy = True

    @property
    def healthy(self) -> bool:
        with self._lock:
            return self._healthy

    def toggle_health(self) -> bool:
        """Flip the health flag and return the new value."""
        with self._lock:
            self._healthy = not self._healthy
            return self._healthy

    def _delay_ms(self) -> int:
        if self.max_ms <= self.min_ms:
            return self.min_ms
        return self._rng.randrange(self.min_ms, self.max_ms)

    async def process(self) -> WorkerResponse:
        start = time.perf_counter()
        await asyncio.sleep(self._delay_ms() / 1000)
        elapsed = int((time.perf_counter() - start) * 1000)
        return WorkerResponse(node_id=self.node_id, processing_time_ms=elapsed)
