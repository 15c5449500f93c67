"""Global per-minute ceiling on gateway calls, shared by all scan workers."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

WINDOW_SECONDS = 60.0


class DispatchRateLimiter:
    """Sliding one-minute window; ``per_minute=0`` disables the limit."""

    def __init__(self, per_minute: int, clock: Callable[[], float] = time.monotonic) -> None:
        if per_minute < 0:
            raise ValueError("per_minute must be non-negative")
        self.per_minute = per_minute
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: Deque[float] = deque()

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """Block until a slot is free. Returns False if cancelled while waiting."""
        if self.per_minute == 0:
            return not (cancel_event and cancel_event.is_set())
        waiter = cancel_event or threading.Event()
        while True:
            if waiter.is_set():
                return False
            with self._lock:
                now = self._clock()
                while self._calls and now - self._calls[0] >= WINDOW_SECONDS:
                    self._calls.popleft()
                if len(self._calls) < self.per_minute:
                    self._calls.append(now)
                    return True
                wait = WINDOW_SECONDS - (now - self._calls[0])
            waiter.wait(max(wait, 0.01))

    def in_window(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for t in self._calls if now - t < WINDOW_SECONDS)
