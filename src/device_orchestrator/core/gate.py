"""Bounded admission control for concurrently running task loops."""

import threading


class ConcurrencyGate:
    """Counting gate: at most ``limit`` holders at any instant."""

    def __init__(self, limit: int = 3):
        if limit < 1:
            raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
        self.limit = limit
        self._slots = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def peak(self) -> int:
        """Highest number of simultaneous holders seen so far."""
        with self._lock:
            return self._peak

    def acquire(self):
        """Block until a slot is free."""
        self._slots.acquire()
        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)

    def release(self):
        with self._lock:
            if self._active == 0:
                raise ValueError("release() called without a matching acquire()")
            self._active -= 1
        self._slots.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
