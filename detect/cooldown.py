"""
Notification cooldown governor.

Remembers when the last *reclaimed* alert was sent for each instance so a
spot instance flapping between ticks does not flood the operator chat.
"""

from __future__ import annotations

import threading
import time


class CooldownGovernor:
    """Per-instance "last alerted at" map guarded by a single lock."""

    def __init__(self, window_seconds: float, clock=time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._last_notified: dict[str, float] = {}
        self._lock = threading.Lock()

    def can_notify(self, instance_id: str, now: float | None = None) -> bool:
        """True if no alert was recorded yet or the window has elapsed."""
        now = self._clock() if now is None else now
        with self._lock:
            last = self._last_notified.get(instance_id)
        if last is None:
            return True
        return now - last > self.window_seconds

    def record_notified(self, instance_id: str, now: float | None = None) -> None:
        now = self._clock() if now is None else now
        with self._lock:
            self._last_notified[instance_id] = now

    def last_notified(self, instance_id: str) -> float | None:
        with self._lock:
            return self._last_notified.get(instance_id)
