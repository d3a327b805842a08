from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .config import (
    DEFAULT_BASE_URL,
    DEFAULT_GRACEFUL_STOP_S,
    DEFAULT_PACING_S,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_RETIREMENT,
    RETIREMENT_MODES,
    ConfigurationError,
    LoadPlan,
    RunConfig,
    default_scenarios,
    format_duration,
    load_plan,
    parse_threshold_args,
)
from .metrics import MetricsAggregator, RunVerdict
from .runner import LoadRunner

LOGGER = logging.getLogger("catalog_loadgen")

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Product catalog load generator")
    parser.add_argument(
        "--base-url",
        default=os.environ.get("BASE_URL", DEFAULT_BASE_URL),
        help="Root URL of the product catalog API",
    )
    parser.add_argument(
        "--scenario",
        default=os.environ.get("LOADGEN_SCENARIO", "baseline"),
        choices=sorted(default_scenarios()),
        help="Built-in ramp profile to run when no plan file is given",
    )
    parser.add_argument(
        "--plan-path",
        default=os.environ.get("LOADGEN_PLAN_PATH"),
        help="Optional YAML file describing stages and thresholds",
    )
    parser.add_argument(
        "--threshold",
        action="append",
        default=[],
        metavar="METRIC:EXPR",
        help="Threshold such as 'http_req_duration:p(99)<1500'; replaces the plan's thresholds",
    )
    parser.add_argument(
        "--pacing",
        type=float,
        default=os.environ.get("LOADGEN_PACING", str(DEFAULT_PACING_S)),
        help="Seconds each VU pauses between workflow steps",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=DEFAULT_REQUEST_TIMEOUT_S,
        help="Per-request timeout in seconds",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL_S,
        help="Seconds between scheduler polls",
    )
    parser.add_argument(
        "--graceful-stop",
        type=float,
        default=DEFAULT_GRACEFUL_STOP_S,
        help="Seconds to wait for VUs to finish once the profile ends",
    )
    parser.add_argument(
        "--retirement",
        default=DEFAULT_RETIREMENT,
        choices=RETIREMENT_MODES,
        help="Whether VUs retired by a ramp-down finish their current iteration or stop at the next step",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("LOADGEN_OUTPUT_DIR"),
        help="Directory to store checks.csv, durations.csv and verdict.json",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned stages and thresholds without running them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADGEN_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_run_config(args: argparse.Namespace) -> RunConfig:
    plan: LoadPlan = load_plan(args.plan_path, scenario=args.scenario)
    thresholds = plan.thresholds
    if args.threshold:
        thresholds = parse_threshold_args(args.threshold)
    return RunConfig(
        profile=plan.profile,
        thresholds=thresholds,
        base_url=args.base_url,
        pacing_s=args.pacing,
        request_timeout_s=args.request_timeout,
        poll_interval_s=args.poll_interval,
        graceful_stop_s=args.graceful_stop,
        retirement=args.retirement,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = build_run_config(args)
        runner = LoadRunner(config)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    if args.dry_run:
        _print_plan(config)
        return EXIT_PASS

    try:
        verdict = runner.run()
    except KeyboardInterrupt:
        # VUs were drained by the runner before the interrupt propagated
        LOGGER.warning("Interrupted; reporting the samples collected so far")
        verdict = runner.aggregator.finalize(runner.thresholds)

    _print_summary(verdict)
    if args.output_dir:
        write_artifacts(Path(args.output_dir), runner.aggregator, verdict)
    return EXIT_PASS if verdict.overall_passed else EXIT_THRESHOLD_BREACH


def write_artifacts(output_dir: Path, aggregator: MetricsAggregator, verdict: RunVerdict) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    checks_path = output_dir / "checks.csv"
    durations_path = output_dir / "durations.csv"
    verdict_path = output_dir / "verdict.json"

    aggregator.checks_frame().to_csv(checks_path, index=False)
    aggregator.durations_frame().to_csv(durations_path, index=False)
    with open(verdict_path, "w", encoding="utf-8") as f:
        json.dump(verdict.to_dict(), f, indent=2)
    LOGGER.info("Run artefacts written to %s", output_dir)


def _print_plan(config: RunConfig) -> None:
    profile = config.profile
    print(
        f"Profile: {profile.name} ({format_duration(profile.total_duration)}, "
        f"start={profile.start_concurrency}, peak={profile.peak_concurrency})"
    )
    for index, stage in enumerate(profile.stages, start=1):
        print(f"  {index}. {stage.describe()}")
    print(f"Target: {config.base_url}")
    print("Thresholds:")
    for metric, expressions in config.thresholds.items():
        for expression in expressions:
            print(f"  - {metric}: {expression}")


def _print_summary(verdict: RunVerdict) -> None:
    print("Checks")
    print("-" * 60)
    for name, rate in sorted(verdict.check_pass_rates.items()):
        print(f"  {name:<36}{rate * 100:>10.2f}%")
    print(f"  {'all checks':<36}{verdict.check_pass_rate * 100:>10.2f}%")

    if verdict.duration_summary:
        print("Durations (ms)")
        print("-" * 60)
        for metric, stats in sorted(verdict.duration_summary.items()):
            print(
                f"  {metric}: avg={stats['avg']:.1f} med={stats['med']:.1f} "
                f"p(95)={stats['p(95)']:.1f} p(99)={stats['p(99)']:.1f} max={stats['max']:.1f}"
            )

    print("Thresholds")
    print("-" * 60)
    for outcome in verdict.outcomes:
        observed = "n/a" if outcome.observed is None else f"{outcome.observed:.2f}"
        status = "PASS" if outcome.passed else "FAIL"
        print(f"  {str(outcome.threshold):<36}{observed:>12}{status:>8}")
    print("-" * 60)
    print(
        f"{verdict.request_count} requests, {verdict.iteration_count} iterations, "
        f"{verdict.requests_per_second:.2f} req/s over {verdict.duration_s:.1f}s"
    )
    print(f"Overall: {'PASS' if verdict.overall_passed else 'FAIL'}")


if __name__ == "__main__":
    sys.exit(main())
