from __future__ import annotations

import time


class FakeClock:
    # Epoch-seconds time source that only moves when a test advances it.
    def __init__(self, start: float | None = None) -> None:
        self.now = float(start if start is not None else int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
