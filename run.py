#!/usr/bin/env python3
"""
beatdrift - Scenario runner CLI

Runs scripted onset scenarios through the beat tracker and reports which
ones met their drift/state expectations.

Usage:
  python run.py                       # all scenarios (scenarios/all.json)
  python run.py --suite=validation    # another suite file
  python run.py --scenario=perfect    # scenarios whose name contains "perfect"
  python run.py --verbose             # trace excerpts per scenario
  python run.py --json                # machine-readable results
"""

import argparse
import cProfile
import json
import sys
from pathlib import Path

from config_persistence import get_report_dir, load_config
from logging_utils import log_event, log_to_file, set_log_level
from scenario_runner import ScenarioResult, load_suite, run_suite, suite_path
from trace_reporter import TraceReporter


def _fmt(value, spec: str = ".1f") -> str:
    return "-" if value is None else format(value, spec)


def print_verbose(result: ScenarioResult) -> None:
    final = result.final_state
    print(f"    Onsets: {result.onset_count}")
    if final is not None:
        print(f"    Final state: {final.state.value}")
        print(f"    Grid hits: {final.grid_hits}")
        print(f"    Final period: {final.period:.2f}ms")
        print(f"    Target period: {final.target_period:.2f}ms")

    tracking = [t for t in result.trace if t.state == "TRACKING"]
    print("    First tracking entries:")
    for t in tracking[:5]:
        print(f"      onset={t.onset_count} implied={_fmt(t.implied_period)} "
              f"period={_fmt(t.period_before)}->{_fmt(t.period_after)} drift={_fmt(t.drift, '.2f')} event={t.event}")
    print("    Last tracking entries:")
    for t in tracking[-3:]:
        print(f"      onset={t.onset_count} implied={_fmt(t.implied_period)} "
              f"period={_fmt(t.period_after)} drift={_fmt(t.drift, '.2f')} event={t.event}")
    print("")


def run_cli(args: argparse.Namespace) -> int:
    config = load_config()
    set_log_level(args.log_level or config.log_level)
    if args.log_file:
        log_to_file(args.log_file)

    path = suite_path(args.suite, Path(args.scenario_dir) if args.scenario_dir else None)
    try:
        suite = load_suite(path)
    except (OSError, ValueError) as e:
        print(f"Error loading scenarios: {e}", file=sys.stderr)
        return 1

    scenarios = suite["scenarios"]
    if args.scenario and not any(args.scenario in s.get("name", "") for s in scenarios):
        print(f'No scenarios matching "{args.scenario}"', file=sys.stderr)
        return 1

    if not args.json:
        count = sum(1 for s in scenarios if not args.scenario or args.scenario in s.get("name", ""))
        print(f"\nRunning {count} test scenarios...\n")

    try:
        results = run_suite(
            scenarios,
            args.scenario,
            defaults=config.tracker,
            trace_capacity=config.trace.capacity if config.trace.enabled else 0,
        )
    except ValueError as e:
        print(f"Error running scenarios: {e}", file=sys.stderr)
        return 1

    passed = sum(1 for r in results if r.passed)
    failed = len(results) - passed

    if args.json:
        print(json.dumps({
            "version": suite.get("version"),
            "total": len(results),
            "passed": passed,
            "failed": failed,
            "results": [r.summary() for r in results],
        }, indent=2))
    else:
        for result in results:
            mark = "✓" if result.passed else "✗"
            print(f"  {mark} {result.scenario}")
            if not result.passed:
                if result.error:
                    print(f"    scenarios/{result.scenario}: error: {result.error}")
                for check in result.checks:
                    if not check.passed:
                        print(f"    scenarios/{result.scenario}:{check.after_onset}: error: {check.error}")
            if args.verbose:
                print_verbose(result)

        print(f"\n{'=' * 50}")
        print(f"Results: {passed}/{len(results)} passed")
        if failed > 0:
            print(f"{failed} failed")
        print("")

    if config.report.enabled and (args.report_dir or config.report.report_dir or args.save_report):
        report_dir = Path(args.report_dir) if args.report_dir else get_report_dir(config)
        reporter = TraceReporter(report_dir)
        reporter.save_scenarios(results, suite=args.suite)
        if results and results[-1].trace:
            reporter.save_trace(results[-1].trace, label=results[-1].scenario)
        log_event("INFO", "Report", "Reports written", path=report_dir)

    return 1 if failed > 0 else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run beatdrift tracker scenarios")
    parser.add_argument("--suite", default="all", help="Suite name under scenarios/ (default: all)")
    parser.add_argument("--scenario", default=None, help="Only run scenarios whose name contains this")
    parser.add_argument("--scenario-dir", default=None, help="Directory holding suite JSON files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show trace details")
    parser.add_argument("--json", action="store_true", help="Output JSON results")
    parser.add_argument("--report-dir", default=None, help="Write trace/scenario reports here")
    parser.add_argument("--save-report", action="store_true", help="Write reports to the configured report dir")
    parser.add_argument("--log-level", default=None, help="DEBUG/INFO/WARNING/ERROR (default: from config)")
    parser.add_argument("--log-file", default=None, help="Also write log lines to this file")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run_cli(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run_cli(args)

    log_to_file(None)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
