from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Sequence

import requests

from .config import RunConfig
from .fixtures import ProductTemplate, build_product_template
from .metrics import MetricsAggregator, RunVerdict, Threshold, parse_thresholds, validate_threshold_metrics
from .scheduler import StageScheduler
from .vu import SessionFactory, VirtualUser
from .workflow import WorkflowStep, product_workflow, validate_workflow

LOGGER = logging.getLogger("catalog_loadgen.runner")


class LoadRunner:
    """Drives VUs along a ramp profile and produces the run verdict."""

    def __init__(
        self,
        config: RunConfig,
        *,
        workflow: Optional[Sequence[WorkflowStep]] = None,
        template: Optional[ProductTemplate] = None,
        aggregator: Optional[MetricsAggregator] = None,
        session_factory: SessionFactory = requests.Session,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        # raises ConfigurationError before any VU starts
        self._thresholds = parse_thresholds(config.thresholds)
        self._workflow = validate_workflow(workflow if workflow is not None else product_workflow())
        validate_threshold_metrics(self._thresholds, (step.check_name for step in self._workflow))
        self._template = template or build_product_template()
        self._aggregator = aggregator or MetricsAggregator()
        self._session_factory = session_factory
        self._clock = clock

        self._lock = threading.Lock()
        self._active: list[VirtualUser] = []
        self._retiring: list[VirtualUser] = []
        self._ids_in_use: set[int] = set()
        self._stop_event = threading.Event()
        self._peak_live = 0
        self._spawned = 0

    @property
    def aggregator(self) -> MetricsAggregator:
        return self._aggregator

    @property
    def thresholds(self) -> tuple[Threshold, ...]:
        return self._thresholds

    @property
    def peak_live(self) -> int:
        return self._peak_live

    @property
    def spawned(self) -> int:
        return self._spawned

    def live_count(self) -> int:
        with self._lock:
            return len(self._active)

    def live_vu_ids(self) -> list[int]:
        with self._lock:
            return sorted(vu.vu_id for vu in self._active)

    def stop(self) -> None:
        """Cut the profile short; the run then drains and finalizes as usual."""
        self._stop_event.set()

    def run(self) -> RunVerdict:
        profile = self._config.profile
        LOGGER.info(
            "Starting run %r against %s (%d stages, %.0fs, peak %d VUs)",
            profile.name,
            self._config.base_url,
            len(profile.stages),
            profile.total_duration,
            profile.peak_concurrency,
        )
        started_wall = time.time()
        scheduler = StageScheduler(profile, clock=self._clock)
        current_stage = -1

        try:
            while True:
                now = self._clock()
                stage = scheduler.stage_index(now)
                if stage != current_stage:
                    current_stage = stage
                    LOGGER.info(
                        "Stage %d/%d: %s",
                        stage + 1,
                        len(profile.stages),
                        profile.stages[stage].describe(),
                    )
                self.scale_to(scheduler.desired_concurrency(now))

                remaining = scheduler.remaining(now)
                if remaining <= 0:
                    break
                if self._stop_event.wait(min(self._config.poll_interval_s, remaining)):
                    LOGGER.warning("Run stopped with %.1fs of the profile left", remaining)
                    break
        except KeyboardInterrupt:
            self._stop_event.set()
            raise
        finally:
            self.drain(abort=self._stop_event.is_set())

        finished_wall = time.time()
        self._aggregator.set_run_window(started_wall, finished_wall)
        verdict = self._aggregator.finalize(self._thresholds)
        LOGGER.info(
            "Run %r finished: %s (check pass rate %.2f%%, %d requests)",
            profile.name,
            "PASS" if verdict.overall_passed else "FAIL",
            verdict.check_pass_rate * 100.0,
            verdict.request_count,
        )
        return verdict

    def scale_to(self, desired: int) -> None:
        with self._lock:
            delta = desired - len(self._active)
            if delta > 0:
                for _ in range(delta):
                    self._spawn_locked()
                LOGGER.debug("Spawned %d VU(s), %d live", delta, len(self._active))
            elif delta < 0:
                # newest first
                for _ in range(-delta):
                    vu = self._active.pop()
                    vu.retire()
                    self._retiring.append(vu)
                LOGGER.debug("Retiring %d VU(s), %d live", -delta, len(self._active))
            self._peak_live = max(self._peak_live, len(self._active))

    def _spawn_locked(self) -> None:
        vu_id = self._next_vu_id_locked()
        vu = VirtualUser(
            vu_id,
            self._template,
            self._workflow,
            self._config.base_url,
            self._aggregator,
            pacing_s=self._config.pacing_s,
            request_timeout_s=self._config.request_timeout_s,
            retirement=self._config.retirement,
            session_factory=self._session_factory,
            on_exit=self._on_vu_exit,
        )
        self._ids_in_use.add(vu_id)
        self._active.append(vu)
        self._spawned += 1
        vu.start()

    def _next_vu_id_locked(self) -> int:
        # an id stays reserved until its VU thread exits
        vu_id = 1
        while vu_id in self._ids_in_use:
            vu_id += 1
        return vu_id

    def _on_vu_exit(self, vu: VirtualUser) -> None:
        with self._lock:
            self._ids_in_use.discard(vu.vu_id)
            if vu in self._retiring:
                self._retiring.remove(vu)
            if vu in self._active:
                self._active.remove(vu)

    def drain(self, abort: bool = False) -> None:
        """Retire every VU and wait for them up to the graceful stop window.

        With ``abort`` the VUs stop at their next step instead of finishing
        the current iteration. VUs still running at the deadline are aborted
        and abandoned.
        """
        with self._lock:
            self._retiring.extend(self._active)
            self._active.clear()
            pending = list(self._retiring)
            for vu in pending:
                if abort:
                    vu.abort()
                else:
                    vu.retire()

        if pending:
            LOGGER.info("Waiting up to %.0fs for %d VU(s) to stop", self._config.graceful_stop_s, len(pending))
        deadline = self._clock() + self._config.graceful_stop_s
        stragglers = []
        for vu in pending:
            if not vu.join(timeout=max(deadline - self._clock(), 0.0)):
                vu.abort()
                stragglers.append(vu.vu_id)
        if stragglers:
            LOGGER.warning(
                "%d VU(s) did not stop within %.0fs and were abandoned: %s",
                len(stragglers),
                self._config.graceful_stop_s,
                ", ".join(str(vu_id) for vu_id in sorted(stragglers)),
            )


__all__ = ["LoadRunner"]
