"""
ChainTrust — Clock
Wall-clock time in epoch seconds, injected so expiries, windows and
scheduling can be driven deterministically.
"""
import time


class SystemClock:
    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now

    def set(self, value: float):
        self._now = float(value)
