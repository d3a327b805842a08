from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

DEFAULT_BASE_URL = "http://localhost:8082"
DEFAULT_PACING_S = 1.0
DEFAULT_REQUEST_TIMEOUT_S = 60.0
DEFAULT_POLL_INTERVAL_S = 1.0
DEFAULT_GRACEFUL_STOP_S = 30.0
RETIREMENT_MODES: tuple[str, ...] = ("iteration", "step")
DEFAULT_RETIREMENT = "iteration"

_NUMBER = r"(\d+(?:\.\d+)?)"
# each unit at most once, largest first
_DURATION = re.compile(rf"(?:{_NUMBER}h)?(?:{_NUMBER}m(?!s))?(?:{_NUMBER}s)?(?:{_NUMBER}ms)?")
_UNIT_SECONDS = (3600.0, 60.0, 1.0, 0.001)


class ConfigurationError(ValueError):
    """Raised when a ramp profile, plan file or threshold is malformed."""


def parse_duration(value: Any) -> float:
    """Convert ``30``, ``"30s"``, ``"5m"`` or ``"1m30s"`` into seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ConfigurationError("duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            match = _DURATION.fullmatch(text)
            if match is None:
                raise ConfigurationError(f"invalid duration {value!r}") from None
            seconds = sum(
                float(amount) * unit
                for amount, unit in zip(match.groups(), _UNIT_SECONDS)
                if amount is not None
            )
    else:
        raise ConfigurationError(f"invalid duration {value!r}")

    if not math.isfinite(seconds):
        raise ConfigurationError(f"duration must be finite, got {value!r}")
    if seconds < 0:
        raise ConfigurationError(f"duration must be >= 0, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    whole = int(seconds)
    if whole != seconds:
        return f"{seconds:g}s"
    minutes, secs = divmod(whole, 60)
    if minutes and secs:
        return f"{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"


@dataclass(frozen=True)
class Stage:
    """One segment of a ramp profile.

    A regular stage ramps linearly from the previous level to ``target`` over
    ``duration`` seconds. A ``step`` stage jumps to ``target`` when it starts
    and holds it.
    """

    duration: float
    target: int
    step: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.target, bool) or not isinstance(self.target, int):
            raise ConfigurationError(f"stage target must be an integer, got {self.target!r}")
        if self.target < 0:
            raise ConfigurationError(f"stage target must be >= 0, got {self.target}")
        if not math.isfinite(self.duration) or self.duration < 0:
            raise ConfigurationError(f"stage duration must be finite and >= 0, got {self.duration}")

    def describe(self) -> str:
        verb = "step to" if self.step else "ramp to"
        return f"{format_duration(self.duration)} {verb} {self.target}"


@dataclass(frozen=True)
class RampProfile:
    """Ordered stages describing the desired VU count over time."""

    name: str
    stages: tuple[Stage, ...]
    start_concurrency: int = 0

    def __post_init__(self) -> None:
        if not self.stages:
            raise ConfigurationError(f"ramp profile {self.name!r} has no stages")
        if self.start_concurrency < 0:
            raise ConfigurationError(
                f"start concurrency must be >= 0, got {self.start_concurrency}"
            )
        # accept any sequence but keep the stored value hashable
        object.__setattr__(self, "stages", tuple(self.stages))

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def peak_concurrency(self) -> int:
        return max([self.start_concurrency, *(stage.target for stage in self.stages)])

    def concurrency_at(self, elapsed: float) -> int:
        """Desired concurrency ``elapsed`` seconds after the run started."""
        if elapsed <= 0:
            return self.start_concurrency

        level = float(self.start_concurrency)
        stage_start = 0.0
        for stage in self.stages:
            stage_end = stage_start + stage.duration
            if elapsed < stage_end:
                if stage.step:
                    return stage.target
                progress = (elapsed - stage_start) / stage.duration
                return math.floor(level + (stage.target - level) * progress + 0.5)
            level = float(stage.target)
            stage_start = stage_end
        return self.stages[-1].target

    def boundaries(self) -> list[float]:
        """Elapsed seconds at which each stage ends."""
        ends: list[float] = []
        total = 0.0
        for stage in self.stages:
            total += stage.duration
            ends.append(total)
        return ends


@dataclass(frozen=True)
class RunConfig:
    """Everything a single run needs, resolved before any VU starts."""

    profile: RampProfile
    thresholds: dict[str, tuple[str, ...]]
    base_url: str = DEFAULT_BASE_URL
    pacing_s: float = DEFAULT_PACING_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    graceful_stop_s: float = DEFAULT_GRACEFUL_STOP_S
    retirement: str = DEFAULT_RETIREMENT

    def __post_init__(self) -> None:
        if self.retirement not in RETIREMENT_MODES:
            raise ConfigurationError(
                f"retirement must be one of {', '.join(RETIREMENT_MODES)}, got {self.retirement!r}"
            )
        for name in ("pacing_s", "request_timeout_s", "poll_interval_s", "graceful_stop_s"):
            if not math.isfinite(getattr(self, name)):
                raise ConfigurationError(f"{name} must be finite, got {getattr(self, name)}")
        if self.pacing_s < 0:
            raise ConfigurationError(f"pacing must be >= 0, got {self.pacing_s}")
        if self.request_timeout_s <= 0:
            raise ConfigurationError(f"request timeout must be > 0, got {self.request_timeout_s}")
        if self.poll_interval_s <= 0:
            raise ConfigurationError(f"poll interval must be > 0, got {self.poll_interval_s}")
        if self.graceful_stop_s < 0:
            raise ConfigurationError(f"graceful stop must be >= 0, got {self.graceful_stop_s}")
        if not self.base_url:
            raise ConfigurationError("base URL must not be empty")
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))


@dataclass
class LoadPlan:
    """A ramp profile plus the thresholds that judge it."""

    profile: RampProfile
    thresholds: dict[str, tuple[str, ...]] = field(default_factory=dict)


def default_thresholds() -> dict[str, tuple[str, ...]]:
    return {"http_req_duration": ("p(99)<1500",)}


def _stages(*pairs: tuple[str, int]) -> tuple[Stage, ...]:
    return tuple(Stage(duration=parse_duration(d), target=t) for d, t in pairs)


def default_scenarios() -> dict[str, RampProfile]:
    """Return the built-in scenarios keyed by name."""

    baseline = RampProfile(
        name="baseline",
        stages=_stages(("5m", 100), ("10m", 100), ("5m", 0)),
    )
    stress = RampProfile(
        name="stress",
        stages=_stages(
            ("2m", 100),
            ("5m", 100),
            ("2m", 200),
            ("5m", 200),
            ("2m", 300),
            ("5m", 300),
            ("2m", 400),
            ("5m", 400),
            ("10m", 0),
        ),
    )
    spike = RampProfile(
        name="spike",
        stages=_stages(
            ("10s", 100),
            ("1m", 100),
            ("10s", 1400),
            ("3m", 1400),
            ("10s", 100),
            ("3m", 100),
            ("10s", 0),
        ),
    )
    return {profile.name: profile for profile in (baseline, stress, spike)}


def scenario_plan(name: str) -> LoadPlan:
    scenarios = default_scenarios()
    try:
        profile = scenarios[name]
    except KeyError:
        raise ConfigurationError(
            f"unknown scenario {name!r}; expected one of {', '.join(sorted(scenarios))}"
        ) from None
    return LoadPlan(profile=profile, thresholds=default_thresholds())


def plan_from_mapping(data: Mapping[str, Any], default_name: str = "custom") -> LoadPlan:
    if not isinstance(data, Mapping):
        raise ConfigurationError("plan must be a mapping")

    raw_stages = data.get("stages")
    if not isinstance(raw_stages, Sequence) or isinstance(raw_stages, (str, bytes)):
        raise ConfigurationError("plan must define a list of stages")

    stages: list[Stage] = []
    for index, raw in enumerate(raw_stages):
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"stage #{index + 1} must be a mapping")
        try:
            duration = raw["duration"]
            target = raw["target"]
        except KeyError as exc:
            raise ConfigurationError(f"stage #{index + 1} is missing {exc.args[0]!r}") from exc
        stages.append(
            Stage(
                duration=parse_duration(duration),
                target=target,
                step=bool(raw.get("step", False)),
            )
        )

    raw_start = data.get("start_concurrency", 0)
    try:
        if isinstance(raw_start, bool):
            raise TypeError(raw_start)
        start_concurrency = int(raw_start)
    except (TypeError, ValueError):
        raise ConfigurationError(f"start_concurrency must be an integer, got {raw_start!r}") from None

    profile = RampProfile(
        name=str(data.get("name") or default_name),
        stages=tuple(stages),
        start_concurrency=start_concurrency,
    )

    raw_thresholds = data.get("thresholds")
    if raw_thresholds is None:
        thresholds = default_thresholds()
    else:
        thresholds = _thresholds_from_mapping(raw_thresholds)
    return LoadPlan(profile=profile, thresholds=thresholds)


def _thresholds_from_mapping(raw: Any) -> dict[str, tuple[str, ...]]:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("thresholds must map metric names to expressions")
    thresholds: dict[str, tuple[str, ...]] = {}
    for metric, expressions in raw.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, Iterable):
            raise ConfigurationError(f"thresholds for {metric!r} must be a list of expressions")
        thresholds[str(metric)] = tuple(str(expr) for expr in expressions)
    return thresholds


def load_plan(path: str | os.PathLike[str] | None, scenario: str = "baseline") -> LoadPlan:
    """Load a YAML plan file, or fall back to a named built-in scenario."""
    if not path:
        return scenario_plan(scenario)

    plan_path = Path(path)
    try:
        with plan_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"cannot read plan file {plan_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"plan file {plan_path} is not valid YAML: {exc}") from exc
    return plan_from_mapping(data, default_name=plan_path.stem)


def parse_threshold_args(values: Iterable[str]) -> dict[str, tuple[str, ...]]:
    """Turn ``metric:expression`` CLI values into a threshold mapping."""
    thresholds: dict[str, list[str]] = {}
    for value in values:
        metric, sep, expression = value.rpartition(":")
        if not sep or not metric.strip() or not expression.strip():
            raise ConfigurationError(
                f"threshold {value!r} must look like 'http_req_duration:p(99)<1500'"
            )
        thresholds.setdefault(metric.strip(), []).append(expression.strip())
    return {metric: tuple(exprs) for metric, exprs in thresholds.items()}


__all__ = [
    "ConfigurationError",
    "LoadPlan",
    "RampProfile",
    "RunConfig",
    "Stage",
    "default_scenarios",
    "default_thresholds",
    "load_plan",
    "parse_duration",
    "parse_threshold_args",
    "plan_from_mapping",
    "scenario_plan",
]
