import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Tuple


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per identifier within a time window.
    """

    def __init__(self, max_requests: int = 60, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}

    def is_allowed(self, identifier: str) -> bool:
        with self._lock:
            now = self._clock()
            count, start_time = self.requests.get(identifier, (0, now))

            if now - start_time >= self.window_seconds:
                self.requests[identifier] = (1, now)
                return True

            if count >= self.max_requests:
                return False

            self.requests[identifier] = (count + 1, start_time)
            return True

    def retry_after(self, identifier: str) -> float:
        with self._lock:
            entry = self.requests.get(identifier)
            if entry is None:
                return 0.0
            return max(0.0, self.window_seconds - (self._clock() - entry[1]))

    def wait(self, identifier: str, sleep: Callable[[float], None] = time.sleep) -> None:
        """Block until the identifier has budget left in the current window."""
        while not self.is_allowed(identifier):
            sleep(max(self.retry_after(identifier), 0.01))

    def cleanup(self) -> None:
        """Cleanup old entries to prevent memory leak"""
        with self._lock:
            now = self._clock()
            expired = [key for key, value in self.requests.items() if now - value[1] > self.window_seconds]
            for key in expired:
                del self.requests[key]


class StorageGate:
    """
    Process-wide limit on storage traffic shared by every job.

    Bounds concurrent transfers with a semaphore and request rate with a
    RateLimiter keyed on the storage target.
    """

    def __init__(self, max_connections: int = 8, requests_per_second: float = 50.0):
        self.max_connections = max_connections
        self._semaphore = threading.BoundedSemaphore(max_connections)
        self._limiter = (
            RateLimiter(max_requests=max(1, int(requests_per_second)), window_seconds=1.0)
            if requests_per_second and requests_per_second > 0
            else None
        )
        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak_in_flight = 0

    @contextmanager
    def slot(self, identifier: str = "storage") -> Iterator[None]:
        if self._limiter is not None:
            self._limiter.wait(identifier)
        with self._semaphore:
            with self._lock:
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield
            finally:
                with self._lock:
                    self.in_flight -= 1
