"""castlink playback position math (extrapolation between status updates)."""
from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

Clock = Callable[[], float]


@dataclass
class PlaybackClock:
    """
    Last position reported by the receiver and the local time it was captured at.
    While running, the position is extrapolated with the local clock.
    """

    position: float = 0.0
    captured_at: float = 0.0
    running: bool = False
    rate: float = 1.0
    clock: Clock = field(default=time.monotonic, repr=False, compare=False)

    def now(self) -> float:
        return self.clock()

    def current(self, now: Optional[float] = None) -> float:
        if not self.running:
            return self.position
        if now is None:
            now = self.clock()
        elapsed = max(0.0, now - self.captured_at)
        return self.position + elapsed * self.rate

    def reset(self, position: float, running: bool, now: Optional[float] = None) -> None:
        """Anchor the clock to a freshly reported position."""
        self.position = position
        self.running = running
        self.captured_at = self.clock() if now is None else now

    def rebase(self, running: bool, now: Optional[float] = None) -> None:
        """Fold elapsed time into the position, then anchor at `now` with a new running flag."""
        if now is None:
            now = self.clock()
        self.reset(self.current(now), running, now)


def clamp_volume(level: float) -> float:
    return min(1.0, max(0.0, float(level)))


def clamp_seek(target: float, duration: Optional[float]) -> float:
    """Clamp a seek target to [0, duration], or to >= 0 when the duration is unknown."""
    target = max(0.0, float(target))
    if duration is not None:
        target = min(target, duration)
    return target
