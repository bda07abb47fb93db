"""Router live set: the cached healthy backends and the round-robin cursor."""
from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from relaylb.models.schemas import Backend

log = logging.getLogger("Router.State")


class RouterState:
    """
    Thread-safe live set with round-robin selection.

    The backend list and the cursor are one unit guarded by a single lock. The
    lock is only held for in-memory bookkeeping, never across network calls.
    Order is insertion order; newly healthy backends are appended.
    """

    def __init__(self, backends: Iterable[Backend] = ()):
        self._lock = threading.Lock()
        self._backends: list[Backend] = []
        self._index = 0
        for b in backends:
            self._add_locked(b)

    def __len__(self) -> int:
        with self._lock:
            return len(self._backends)

    def contains(self, backend_id: str) -> bool:
        with self._lock:
            return self._position(backend_id) is not None

    def snapshot(self) -> list[Backend]:
        """Copy of the live set in rotation order."""
        with self._lock:
            return list(self._backends)

    def select_next(self) -> Optional[Backend]:
        """Pick the next backend, or None when the live set is empty."""
        with self._lock:
            n = len(self._backends)
            if n == 0:
                return None
            i = self._index % n
            backend = self._backends[i]
            self._index = (i + 1) % n
            return backend

    def add(self, backend: Backend) -> bool:
        """Append ``backend`` unless its id is already present."""
        with self._lock:
            return self._add_locked(backend)

    def remove(self, backend_id: str) -> bool:
        """Drop the backend with ``backend_id``; False when it is not cached."""
        with self._lock:
            return self._remove_locked(backend_id)

    def reconcile(self, backends: Iterable[Backend]) -> tuple[list[str], list[str]]:
        """
        Make the live set match ``backends``.

        Entries that are still healthy keep their position, new ones are
        appended in the given order. Returns ``(added_ids, removed_ids)``.
        """
        wanted = {b.id: b for b in backends}
        with self._lock:
            removed = [b.id for b in self._backends if b.id not in wanted]
            for backend_id in removed:
                self._remove_locked(backend_id)
            added = [b.id for b in wanted.values() if self._add_locked(b)]
        if added or removed:
            log.info("reconciled live set: +%s -%s", added, removed)
        return added, removed

    def _position(self, backend_id: str) -> Optional[int]:
        for i, b in enumerate(self._backends):
            if b.id == backend_id:
                return i
        return None

    def _add_locked(self, backend: Backend) -> bool:
        if self._position(backend.id) is not None:
            return False
        self._backends.append(backend)
        return True

    def _remove_locked(self, backend_id: str) -> bool:
        i = self._position(backend_id)
        if i is None:
            return False
        del self._backends[i]
        n = len(self._backends)
        if n == 0:
            self._index = 0
            return True
        # keep the rotation on the entry that followed the removed one
        if i < self._index:
            self._index -= 1
        self._index %= n
        return True
