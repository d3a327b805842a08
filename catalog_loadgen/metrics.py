from __future__ import annotations

import logging
import operator
import re
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

import pandas as pd

from .checks import CheckResult
from .config import ConfigurationError

LOGGER = logging.getLogger("catalog_loadgen.metrics")

HTTP_REQ_DURATION = "http_req_duration"
CHECKS = "checks"
ITERATIONS = "iterations"

SUMMARY_PERCENTILES: tuple[float, ...] = (90.0, 95.0, 99.0)

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)|avg|min|max|med|count|rate)"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<limit>-?\d+(?:\.\d+)?)\s*$"
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

CHECK_COLUMNS = ["name", "passed", "timestamp", "vu_id", "status_code", "failure", "detail"]
DURATION_COLUMNS = ["metric", "duration_ms", "timestamp"]


def step_metric(check_name: str, base: str = HTTP_REQ_DURATION) -> str:
    """Name of the per-step duration metric, e.g. ``http_req_duration{product created}``."""
    return f"{base}{{{check_name}}}"


def _split_tag(metric: str) -> tuple[str, Optional[str]]:
    if metric.endswith("}") and "{" in metric:
        base, _, tag = metric[:-1].partition("{")
        return base, tag
    return metric, None


@dataclass(frozen=True)
class Threshold:
    """A post-run predicate over one aggregated metric, e.g. ``p(99)<1500``."""

    metric: str
    expression: str
    aggregation: str
    operator: str
    limit: float
    percentile: Optional[float] = None

    @classmethod
    def parse(cls, metric: str, expression: str) -> "Threshold":
        if not metric:
            raise ConfigurationError("threshold metric name must not be empty")
        match = _EXPRESSION.match(expression)
        if match is None:
            raise ConfigurationError(f"malformed threshold expression {expression!r} for {metric}")

        aggregation = match.group("agg")
        percentile = None
        if match.group("pct") is not None:
            percentile = float(match.group("pct"))
            if not 0.0 <= percentile <= 100.0:
                raise ConfigurationError(f"percentile out of range in {expression!r}")
            aggregation = "p"

        base, _ = _split_tag(metric)
        if base == CHECKS and aggregation not in ("rate", "count"):
            raise ConfigurationError(f"'{CHECKS}' only supports rate and count, got {expression!r}")
        if base == ITERATIONS and aggregation != "count":
            raise ConfigurationError(f"'{ITERATIONS}' only supports count, got {expression!r}")
        if base not in (CHECKS, ITERATIONS) and aggregation == "rate":
            raise ConfigurationError(f"rate is only defined for '{CHECKS}', got {metric}")

        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            operator=match.group("op"),
            limit=float(match.group("limit")),
            percentile=percentile,
        )

    def holds_for(self, value: Optional[float]) -> bool:
        # a metric without samples cannot prove the bound
        if value is None:
            return False
        return _OPERATORS[self.operator](value, self.limit)

    def __str__(self) -> str:
        return f"{self.metric}: {self.expression}"


def parse_thresholds(thresholds: Mapping[str, Iterable[str]]) -> tuple[Threshold, ...]:
    return tuple(
        Threshold.parse(metric, expression)
        for metric, expressions in thresholds.items()
        for expression in expressions
    )


def validate_threshold_metrics(thresholds: Iterable[Threshold], check_names: Iterable[str]) -> None:
    """Reject thresholds over metrics the run never records."""
    known_checks = set(check_names)
    for threshold in thresholds:
        base, tag = _split_tag(threshold.metric)
        if base not in (HTTP_REQ_DURATION, CHECKS, ITERATIONS):
            raise ConfigurationError(
                f"unknown metric {base!r} in threshold {threshold}; "
                f"expected one of {HTTP_REQ_DURATION}, {CHECKS}, {ITERATIONS}"
            )
        if tag is None:
            continue
        if base == ITERATIONS:
            raise ConfigurationError(f"'{ITERATIONS}' cannot be tagged, got {threshold.metric!r}")
        if tag not in known_checks:
            raise ConfigurationError(
                f"unknown check {tag!r} in threshold {threshold}; "
                f"expected one of {', '.join(sorted(known_checks))}"
            )


@dataclass(frozen=True)
class ThresholdOutcome:
    threshold: Threshold
    observed: Optional[float]
    passed: bool


@dataclass(frozen=True)
class RunVerdict:
    overall_passed: bool
    failed_thresholds: tuple[Threshold, ...]
    check_pass_rate: float
    check_pass_rates: Mapping[str, float] = field(default_factory=dict)
    outcomes: tuple[ThresholdOutcome, ...] = ()
    duration_summary: Mapping[str, Mapping[str, float]] = field(default_factory=dict)
    check_count: int = 0
    request_count: int = 0
    iteration_count: int = 0
    duration_s: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "check_pass_rates", MappingProxyType(dict(self.check_pass_rates)))
        object.__setattr__(
            self,
            "duration_summary",
            MappingProxyType({k: MappingProxyType(dict(v)) for k, v in self.duration_summary.items()}),
        )

    @property
    def requests_per_second(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return self.request_count / self.duration_s

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_passed": self.overall_passed,
            "failed_thresholds": [str(t) for t in self.failed_thresholds],
            "check_pass_rate": self.check_pass_rate,
            "check_pass_rates": dict(self.check_pass_rates),
            "thresholds": [
                {
                    "metric": outcome.threshold.metric,
                    "expression": outcome.threshold.expression,
                    "observed": outcome.observed,
                    "passed": outcome.passed,
                }
                for outcome in self.outcomes
            ],
            "durations_ms": {k: dict(v) for k, v in self.duration_summary.items()},
            "checks": self.check_count,
            "requests": self.request_count,
            "iterations": self.iteration_count,
            "duration_s": self.duration_s,
            "requests_per_second": self.requests_per_second,
        }


class MetricsAggregator:
    """Run-wide sink for check results and request durations.

    One instance is shared by every VU. Writers only append under a short
    lock; all aggregation happens in :meth:`finalize` once the writers have
    stopped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._checks: list[CheckResult] = []
        self._durations: list[tuple[str, float, float]] = []
        self._iterations = 0
        self._finalized = False
        self._dropped = 0
        self._window: tuple[float, float] | None = None

    def record(self, result: CheckResult) -> None:
        with self._lock:
            if self._finalized:
                self._dropped += 1
                return
            self._checks.append(result)

    def record_duration(self, metric_name: str, elapsed_ms: float, timestamp: float = 0.0) -> None:
        with self._lock:
            if self._finalized:
                self._dropped += 1
                return
            self._durations.append((metric_name, float(elapsed_ms), timestamp))

    def record_iteration(self) -> None:
        with self._lock:
            if self._finalized:
                return
            self._iterations += 1

    def set_run_window(self, started_at: float, finished_at: float) -> None:
        with self._lock:
            self._window = (started_at, finished_at)

    @property
    def finalized(self) -> bool:
        with self._lock:
            return self._finalized

    @property
    def dropped_samples(self) -> int:
        with self._lock:
            return self._dropped

    def check_counts(self) -> dict[str, int]:
        with self._lock:
            passed = sum(1 for result in self._checks if result.passed)
            return {"passed": passed, "failed": len(self._checks) - passed}

    def checks_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = [result.as_row() for result in self._checks]
        if not rows:
            return pd.DataFrame(columns=CHECK_COLUMNS)
        return pd.DataFrame(rows, columns=CHECK_COLUMNS)

    def durations_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._durations)
        if not rows:
            return pd.DataFrame(columns=DURATION_COLUMNS)
        return pd.DataFrame(rows, columns=DURATION_COLUMNS)

    def finalize(self, thresholds: Iterable[Threshold]) -> RunVerdict:
        """Freeze the samples and judge them against ``thresholds``.

        Must only be called once every VU has stopped. Calling it again with
        the same thresholds yields an equal verdict.
        """
        with self._lock:
            if not self._finalized:
                self._finalized = True
                LOGGER.info(
                    "Finalizing metrics: %d checks, %d duration samples, %d iterations",
                    len(self._checks),
                    len(self._durations),
                    self._iterations,
                )
            iterations = self._iterations
            window = self._window

        checks = self.checks_frame()
        durations = self.durations_frame()

        outcomes = []
        for threshold in thresholds:
            observed = self._observe(threshold, checks, durations, iterations)
            outcomes.append(
                ThresholdOutcome(
                    threshold=threshold,
                    observed=observed,
                    passed=threshold.holds_for(observed),
                )
            )
        failed = tuple(outcome.threshold for outcome in outcomes if not outcome.passed)

        if checks.empty:
            pass_rate = 0.0
            per_check: dict[str, float] = {}
        else:
            passed = checks["passed"].astype(bool)
            pass_rate = float(passed.mean())
            per_check = {
                str(name): float(rate)
                for name, rate in passed.groupby(checks["name"]).mean().items()
            }

        request_count = int((durations["metric"] == HTTP_REQ_DURATION).sum()) if not durations.empty else 0

        return RunVerdict(
            overall_passed=not failed,
            failed_thresholds=failed,
            check_pass_rate=pass_rate,
            check_pass_rates=per_check,
            outcomes=tuple(outcomes),
            duration_summary=_duration_summary(durations),
            check_count=len(checks),
            request_count=request_count,
            iteration_count=iterations,
            duration_s=_window_length(window, checks),
        )

    @staticmethod
    def _observe(
        threshold: Threshold,
        checks: pd.DataFrame,
        durations: pd.DataFrame,
        iterations: int,
    ) -> Optional[float]:
        base, tag = _split_tag(threshold.metric)

        if base == ITERATIONS:
            return float(iterations)

        if base == CHECKS:
            subset = checks if tag is None or checks.empty else checks[checks["name"] == tag]
            if threshold.aggregation == "count":
                return float(len(subset))
            if subset.empty:
                return None
            return float(subset["passed"].astype(bool).mean())

        if durations.empty:
            values = pd.Series(dtype=float)
        else:
            values = durations.loc[durations["metric"] == threshold.metric, "duration_ms"].astype(float)

        return _aggregate(values, threshold.aggregation, threshold.percentile)


def _aggregate(values: pd.Series, aggregation: str, percentile: Optional[float]) -> Optional[float]:
    if aggregation == "count":
        return float(len(values))
    if values.empty:
        return None
    if aggregation == "p":
        return float(values.quantile(percentile / 100.0))
    if aggregation == "avg":
        return float(values.mean())
    if aggregation == "med":
        return float(values.median())
    if aggregation == "min":
        return float(values.min())
    if aggregation == "max":
        return float(values.max())
    raise ConfigurationError(f"unsupported aggregation {aggregation!r}")


def _duration_summary(durations: pd.DataFrame) -> dict[str, dict[str, float]]:
    if durations.empty:
        return {}
    summary: dict[str, dict[str, float]] = {}
    for metric, values in durations.groupby("metric")["duration_ms"]:
        values = values.astype(float)
        stats = {
            "count": float(len(values)),
            "avg": float(values.mean()),
            "min": float(values.min()),
            "med": float(values.median()),
            "max": float(values.max()),
        }
        for pct in SUMMARY_PERCENTILES:
            stats[f"p({pct:g})"] = float(values.quantile(pct / 100.0))
        summary[str(metric)] = stats
    return summary


def _window_length(window: tuple[float, float] | None, checks: pd.DataFrame) -> float:
    if window is not None:
        return max(window[1] - window[0], 0.0)
    if checks.empty:
        return 0.0
    return max(float(checks["timestamp"].max() - checks["timestamp"].min()), 0.0)


__all__ = [
    "CHECKS",
    "HTTP_REQ_DURATION",
    "ITERATIONS",
    "MetricsAggregator",
    "RunVerdict",
    "Threshold",
    "ThresholdOutcome",
    "parse_thresholds",
    "step_metric",
    "validate_threshold_metrics",
]
