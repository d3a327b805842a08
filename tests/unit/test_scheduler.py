"""
Unit tests for StageScheduler using an injected clock.
"""

from __future__ import annotations

import pytest

from catalog_loadgen.config import RampProfile, Stage
from catalog_loadgen.scheduler import StageScheduler

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def profile() -> RampProfile:
    return RampProfile(
        name="baseline",
        stages=(Stage(300, 100), Stage(600, 100), Stage(300, 0)),
    )


def test_desired_concurrency_follows_wall_clock(profile):
    clock = FakeClock()
    scheduler = StageScheduler(profile, clock=clock)

    assert scheduler.desired_concurrency() == 0
    clock.now += 150
    assert scheduler.desired_concurrency() == 50
    clock.now += 450
    assert scheduler.desired_concurrency() == 100
    clock.now += 600
    assert scheduler.desired_concurrency() == 0


def test_explicit_start_and_now(profile):
    scheduler = StageScheduler(profile, started_at=10.0, clock=FakeClock(0.0))

    assert scheduler.desired_concurrency(10.0) == 0
    assert scheduler.desired_concurrency(160.0) == 50
    # before the start the profile has not begun yet
    assert scheduler.desired_concurrency(0.0) == 0
    assert scheduler.ends_at == 1210.0


def test_remaining_and_finished(profile):
    clock = FakeClock()
    scheduler = StageScheduler(profile, clock=clock)

    assert scheduler.remaining() == 1200
    assert not scheduler.finished()
    clock.now += 1200
    assert scheduler.remaining() == 0
    assert scheduler.finished()
    clock.now += 50
    assert scheduler.elapsed() == 1250
    assert scheduler.desired_concurrency() == 0


def test_stage_index_tracks_boundaries(profile):
    clock = FakeClock()
    scheduler = StageScheduler(profile, clock=clock)

    assert scheduler.stage_index() == 0
    clock.now += 300
    assert scheduler.stage_index() == 1
    clock.now += 899
    assert scheduler.stage_index() == 2
    clock.now += 100
    assert scheduler.stage_index() == 2
