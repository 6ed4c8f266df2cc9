"""Deterministic clock whose sleep advances time"""

import threading


class FakeClock:
    """Monotonic clock stand-in; ``sleep`` advances it by the slept time."""

    def __init__(self, start=0.0, sleep_overshoot=1.0):
        self.now = start
        self.sleep_overshoot = sleep_overshoot
        self.sleeps = []
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now += seconds

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.advance(seconds * self.sleep_overshoot)
