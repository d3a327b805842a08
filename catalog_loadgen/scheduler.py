from __future__ import annotations

import time
from typing import Callable

from .config import RampProfile


class StageScheduler:
    """Maps wall-clock time onto the desired VU count of a ramp profile."""

    def __init__(
        self,
        profile: RampProfile,
        started_at: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._profile = profile
        self._clock = clock
        self._started_at = clock() if started_at is None else started_at

    @property
    def profile(self) -> RampProfile:
        return self._profile

    @property
    def started_at(self) -> float:
        return self._started_at

    @property
    def ends_at(self) -> float:
        return self._started_at + self._profile.total_duration

    def elapsed(self, now: float | None = None) -> float:
        if now is None:
            now = self._clock()
        return max(now - self._started_at, 0.0)

    def remaining(self, now: float | None = None) -> float:
        return max(self._profile.total_duration - self.elapsed(now), 0.0)

    def finished(self, now: float | None = None) -> bool:
        return self.remaining(now) <= 0.0

    def desired_concurrency(self, now: float | None = None) -> int:
        return self._profile.concurrency_at(self.elapsed(now))

    def stage_index(self, now: float | None = None) -> int:
        """Index of the stage active at ``now``; the last stage once finished."""
        elapsed = self.elapsed(now)
        for index, end in enumerate(self._profile.boundaries()):
            if elapsed < end:
                return index
        return len(self._profile.stages) - 1


__all__ = ["StageScheduler"]
