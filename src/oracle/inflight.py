"""Process-wide registry of oracle ids with an update in flight."""

import threading
from contextlib import contextmanager
from typing import Iterator, List, Set


class UpdateTracker:
    """
    Guards against two overlapping update attempts for the same oracle.

    ``claim`` atomically checks and inserts an id; the id is removed when the
    ``with`` block exits, whatever the exit path.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._updating: Set[str] = set()

    def try_acquire(self, oracle_id: str) -> bool:
        with self._lock:
            if oracle_id in self._updating:
                return False
            self._updating.add(oracle_id)
            return True

    def release(self, oracle_id: str) -> None:
        with self._lock:
            self._updating.discard(oracle_id)

    @contextmanager
    def claim(self, oracle_id: str) -> Iterator[bool]:
        acquired = self.try_acquire(oracle_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(oracle_id)

    def is_updating(self, oracle_id: str) -> bool:
        with self._lock:
            return oracle_id in self._updating

    def snapshot(self) -> List[str]:
        with self._lock:
            return sorted(self._updating)

    def __len__(self) -> int:
        with self._lock:
            return len(self._updating)
