"""
Unit tests for the VU runtime, driven synchronously through ``stream()``.

No threads are started here: each test pulls check results straight from
the VU generator so step-level behaviour can be asserted exactly.
"""

from __future__ import annotations

import itertools

import pytest
import requests

from catalog_loadgen.checks import TRANSPORT, UNEXPECTED_STATUS
from catalog_loadgen.metrics import HTTP_REQ_DURATION, step_metric
from catalog_loadgen.vu import VirtualUser

pytestmark = pytest.mark.unit

STEP_COUNT = 6


def _make_vu(template, workflow, aggregator, session_factory, **kwargs) -> VirtualUser:
    kwargs.setdefault("pacing_s", 0)
    return VirtualUser(
        1,
        template,
        workflow,
        "http://catalog.test/",
        aggregator,
        session_factory=session_factory,
        **kwargs,
    )


class RetiringSession:
    """Forwards to the fake catalog and calls ``stop`` after ``k`` requests."""

    def __init__(self, inner, k: int, stop) -> None:
        self.inner = inner
        self.k = k
        self.stop = stop
        self.count = 0

    def request(self, *args, **kwargs):
        response = self.inner.request(*args, **kwargs)
        self.count += 1
        if self.count == self.k:
            self.stop()
        return response

    def close(self) -> None:
        self.inner.close()


def _retiring_vu(k, template, workflow, aggregator, session_factory, action="retire", **kwargs):
    sessions = []

    def factory():
        session = RetiringSession(session_factory(), k, getattr(vu, action))
        sessions.append(session)
        return session

    vu = _make_vu(template, workflow, aggregator, factory, **kwargs)
    return vu, sessions


def test_one_iteration_emits_one_check_per_step(template, workflow, aggregator, session_factory, catalog):
    vu = _make_vu(template, workflow, aggregator, session_factory)

    results = list(itertools.islice(vu.stream(), STEP_COUNT))

    assert [r.name for r in results] == [step.check_name for step in workflow]
    assert all(r.passed for r in results)
    assert all(r.vu_id == 1 for r in results)
    assert catalog.calls == [
        ("POST", "/products"),
        ("GET", "/products/TEST-SKU-1"),
        ("GET", "/products"),
        ("PUT", "/products/TEST-SKU-1"),
        ("PATCH", "/products/TEST-SKU-1"),
        ("DELETE", "/products/TEST-SKU-1"),
    ]
    assert catalog.products == {}


def test_results_and_durations_reach_the_aggregator(template, workflow, aggregator, session_factory):
    vu = _make_vu(template, workflow, aggregator, session_factory)
    stream = vu.stream()
    for _ in range(STEP_COUNT):
        next(stream)
    vu.retire()
    assert list(stream) == []

    durations = aggregator.durations_frame()
    assert (durations["metric"] == HTTP_REQ_DURATION).sum() == STEP_COUNT
    assert (durations["metric"] == step_metric("product created")).sum() == 1
    assert aggregator.check_counts() == {"passed": STEP_COUNT, "failed": 0}
    assert vu.iterations == 1
    assert aggregator.finalize([]).iteration_count == 1


@pytest.mark.parametrize("k", range(1, STEP_COUNT))
def test_retirement_between_steps_runs_exactly_k_steps(k, template, workflow, aggregator, session_factory):
    vu, _ = _retiring_vu(k, template, workflow, aggregator, session_factory, retirement="step")

    results = list(vu.stream())

    assert len(results) == k
    assert vu.steps_executed == k
    assert vu.iterations == 0
    assert sum(aggregator.check_counts().values()) == k


@pytest.mark.parametrize("k", range(1, STEP_COUNT + 1))
def test_default_retirement_finishes_the_iteration(k, template, workflow, aggregator, session_factory, catalog):
    vu, _ = _retiring_vu(k, template, workflow, aggregator, session_factory)

    results = list(vu.stream())

    assert len(results) == STEP_COUNT
    assert vu.iterations == 1
    assert catalog.calls[-1] == ("DELETE", "/products/TEST-SKU-1")
    assert catalog.products == {}


@pytest.mark.parametrize("retirement", ["iteration", "step"])
def test_abort_stops_at_the_next_step_in_any_mode(retirement, template, workflow, aggregator, session_factory, catalog):
    vu, _ = _retiring_vu(2, template, workflow, aggregator, session_factory, action="abort", retirement=retirement)

    results = list(vu.stream())

    assert len(results) == 2
    assert vu.iterations == 0
    assert "TEST-SKU-1" in catalog.products


def test_abort_wakes_a_pacing_vu(template, workflow, aggregator, session_factory):
    vu = _make_vu(template, workflow, aggregator, session_factory, pacing_s=30)

    vu.start()
    vu.abort()

    assert vu.join(timeout=5.0)
    assert vu.steps_executed <= 1


def test_failed_check_does_not_abort_the_iteration(template, workflow, aggregator, session_factory, catalog):
    catalog.conflict_every = 1
    vu = _make_vu(template, workflow, aggregator, session_factory)

    results = list(itertools.islice(vu.stream(), STEP_COUNT))

    assert not results[0].passed
    assert results[0].failure == UNEXPECTED_STATUS
    assert results[0].status_code == 409
    assert all(r.passed for r in results[1:])
    # cleanup still ran
    assert catalog.calls[-1] == ("DELETE", "/products/TEST-SKU-1")


def test_transport_errors_become_failed_checks(template, workflow, aggregator, session_factory, catalog):
    catalog.unreachable = True
    vu = _make_vu(template, workflow, aggregator, session_factory)

    results = list(itertools.islice(vu.stream(), STEP_COUNT * 2))

    assert len(results) == STEP_COUNT * 2
    assert all(r.failure == TRANSPORT for r in results)
    assert aggregator.durations_frame().empty
    assert vu.iterations == 1


def test_timeout_is_passed_to_each_request(template, workflow, aggregator):
    seen = []

    class RecordingSession:
        def request(self, method, url, json=None, timeout=None):
            seen.append((method, url, timeout))
            raise requests.Timeout("read timed out")

        def close(self):
            pass

    vu = _make_vu(template, workflow, aggregator, RecordingSession, request_timeout_s=2.5)
    list(itertools.islice(vu.stream(), STEP_COUNT))

    assert {timeout for _, _, timeout in seen} == {2.5}
    assert seen[0][1] == "http://catalog.test/products"


def test_run_closes_session_and_reports_exit(template, workflow, aggregator, session_factory):
    exited = []
    vu, sessions = _retiring_vu(
        3, template, workflow, aggregator, session_factory, retirement="step", on_exit=exited.append
    )

    vu.run()

    assert exited == [vu]
    assert len(sessions) == 1
    assert sessions[0].inner.closed
    assert vu.steps_executed == 3


def test_threaded_vu_stops_when_retired(template, workflow, aggregator, session_factory):
    vu = _make_vu(template, workflow, aggregator, session_factory, pacing_s=0.01)

    vu.start()
    assert vu.is_alive()
    vu.retire()

    assert vu.join(timeout=5.0)
    assert vu.retiring
    assert not vu.is_alive()


def test_unknown_retirement_mode_is_rejected(template, workflow, aggregator, session_factory):
    with pytest.raises(ValueError):
        _make_vu(template, workflow, aggregator, session_factory, retirement="never")
