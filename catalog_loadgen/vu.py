from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterator, Optional, Sequence

import requests

from .checks import CheckResult, evaluate, transport_failure
from .config import DEFAULT_PACING_S, DEFAULT_REQUEST_TIMEOUT_S, DEFAULT_RETIREMENT, RETIREMENT_MODES
from .fixtures import ProductTemplate
from .metrics import HTTP_REQ_DURATION, MetricsAggregator, step_metric
from .workflow import WorkflowStep

LOGGER = logging.getLogger("catalog_loadgen.vu")

SessionFactory = Callable[[], Any]


class VirtualUser:
    """One simulated client looping over the workflow in its own thread.

    Retirement is cooperative. In ``iteration`` mode a retired VU finishes the
    workflow it is in, so the delete step still runs; in ``step`` mode it stops
    before its next step. :meth:`abort` always stops at the next step and wakes
    the VU from its pacing pause.
    """

    def __init__(
        self,
        vu_id: int,
        template: ProductTemplate,
        workflow: Sequence[WorkflowStep],
        base_url: str,
        aggregator: MetricsAggregator,
        *,
        pacing_s: float = DEFAULT_PACING_S,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        retirement: str = DEFAULT_RETIREMENT,
        session_factory: SessionFactory = requests.Session,
        on_exit: Optional[Callable[["VirtualUser"], None]] = None,
    ) -> None:
        if retirement not in RETIREMENT_MODES:
            raise ValueError(f"unknown retirement mode {retirement!r}")
        self.vu_id = vu_id
        self._template = template
        self._workflow = tuple(workflow)
        self._base_url = base_url.rstrip("/")
        self._aggregator = aggregator
        self._pacing_s = pacing_s
        self._request_timeout_s = request_timeout_s
        self._retirement = retirement
        self._session_factory = session_factory
        self._on_exit = on_exit

        self._retire_event = threading.Event()
        self._abort_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.iterations = 0
        self.steps_executed = 0

    def start(self) -> None:
        thread = threading.Thread(target=self.run, name=f"vu-{self.vu_id}", daemon=True)
        self._thread = thread
        thread.start()

    def retire(self) -> None:
        self._retire_event.set()
        if self._retirement == "step":
            self._abort_event.set()

    def abort(self) -> None:
        self._retire_event.set()
        self._abort_event.set()

    @property
    def retiring(self) -> bool:
        return self._retire_event.is_set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    def run(self) -> None:
        try:
            for _ in self.stream():
                pass
        except Exception:  # noqa: BLE001
            LOGGER.exception("VU %d stopped on an unexpected error", self.vu_id)
        finally:
            if self._on_exit is not None:
                self._on_exit(self)

    def stream(self) -> Iterator[CheckResult]:
        """Run iterations until retired, yielding each recorded check."""
        session = self._session_factory()
        try:
            while not self._retire_event.is_set():
                product = self._template.for_vu(self.vu_id)
                for index, step in enumerate(self._workflow):
                    if index and self._pause():
                        return
                    yield self._execute(session, step, product)
                self.iterations += 1
                self._aggregator.record_iteration()
        finally:
            session.close()

    def _pause(self) -> bool:
        """Sleep between steps; True when the VU should stop before the next one."""
        if self._pacing_s > 0:
            return self._abort_event.wait(self._pacing_s)
        return self._abort_event.is_set()

    def _execute(self, session: Any, step: WorkflowStep, product: dict[str, Any]) -> CheckResult:
        url = f"{self._base_url}{step.path_for(product)}"
        started = time.perf_counter()
        try:
            response = session.request(
                step.method.http_method,
                url,
                json=step.body_for(product),
                timeout=self._request_timeout_s,
            )
        except requests.RequestException as exc:
            result = transport_failure(step.check_name, exc, vu_id=self.vu_id)
            LOGGER.debug("VU %d %s %s failed: %s", self.vu_id, step.method.http_method, url, exc)
        else:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            now = time.time()
            self._aggregator.record_duration(HTTP_REQ_DURATION, elapsed_ms, now)
            self._aggregator.record_duration(step_metric(step.check_name), elapsed_ms, now)
            result = evaluate(
                step.check_name,
                response,
                step.expectation_for(product),
                vu_id=self.vu_id,
                now=now,
            )
            if not result.passed:
                LOGGER.debug("VU %d check %r failed: %s", self.vu_id, step.check_name, result.detail)

        self._aggregator.record(result)
        self.steps_executed += 1
        return result


__all__ = ["VirtualUser"]
