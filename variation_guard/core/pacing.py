"""
Inter-call pacing for the generation provider.
"""

import time
from typing import Callable


class Pacer:
    """Waits between consecutive calls to the generation capability."""

    def pause(self) -> None:
        raise NotImplementedError


class SleepPacer(Pacer):
    """Fixed delay between calls. Reference value is 2 seconds."""

    def __init__(self, seconds: float = 2.0, sleep: Callable[[float], None] = time.sleep):
        if seconds < 0:
            raise ValueError("pacing seconds must be >= 0")
        self.seconds = seconds
        self._sleep = sleep

    def pause(self) -> None:
        if self.seconds:
            self._sleep(self.seconds)


class NoDelayPacer(Pacer):
    """Pacer that never waits."""

    def pause(self) -> None:
        return None
