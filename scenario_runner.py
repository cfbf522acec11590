"""
beatdrift - Scenario Runner
Feeds scripted onset sequences through a fresh tracker and checks the
Updates against per-scenario expectations.

Scenario shape (JSON):
    {
      "name": "perfect_120",
      "description": "...",
      "generator": {"type": "perfect", "bpm": 120, "beats": 32},   # or "onsets": [...]
      "constants": {"cal_beats": 8},                                # optional overrides
      "expectations": [
        {"after_onset": 32, "drift_min": -0.5, "drift_max": 0.5, "state": "TRACKING"}
      ]
    }
"""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from beat_tracker import BeatTracker, BeatUpdate, TrackerSnapshot
from config import TrackerConstants
from logging_utils import log_event
from onset_generators import generate_onsets
from trace_recorder import TraceRecord, TraceRecorder


SCENARIO_DIR = Path(__file__).parent / "scenarios"
SCENARIO_TRACE_CAPACITY = 10000


@dataclass
class CheckResult:
    after_onset: int
    passed: bool
    expected: dict = field(default_factory=dict)
    actual: dict = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class ScenarioResult:
    scenario: str
    passed: bool
    description: str = ""
    checks: list[CheckResult] = field(default_factory=list)
    trace: list[TraceRecord] = field(default_factory=list)
    updates: list[BeatUpdate] = field(default_factory=list)
    final_state: Optional[TrackerSnapshot] = None
    onset_count: int = 0
    error: Optional[str] = None

    def summary(self) -> dict:
        """JSON-friendly view without the bulky trace/update lists."""
        return {
            "scenario": self.scenario,
            "description": self.description,
            "passed": self.passed,
            "onset_count": self.onset_count,
            "error": self.error,
            "checks": [
                {
                    "after_onset": c.after_onset,
                    "passed": c.passed,
                    "expected": c.expected,
                    "actual": c.actual,
                    "error": c.error,
                }
                for c in self.checks
            ],
            "final_state": self.final_state.to_dict() if self.final_state else None,
        }


def _check_expectation(expectation: Mapping[str, Any], update: BeatUpdate) -> CheckResult:
    check = CheckResult(
        after_onset=int(expectation["after_onset"]),
        passed=True,
        expected=dict(expectation),
        actual={"drift": update.drift, "state": update.state, "confidence": update.confidence},
    )

    drift_min = expectation.get("drift_min")
    drift_max = expectation.get("drift_max")
    state = expectation.get("state")
    confidence_min = expectation.get("confidence_min")

    if drift_min is not None and update.drift < drift_min:
        check.passed = False
        check.error = f"drift {update.drift} < expected min {drift_min}"
    if drift_max is not None and update.drift > drift_max:
        check.passed = False
        check.error = f"drift {update.drift} > expected max {drift_max}"
    if state is not None and update.state != state:
        check.passed = False
        check.error = f"state {update.state} != expected {state}"
    if confidence_min is not None and update.confidence < confidence_min:
        check.passed = False
        check.error = f"confidence {update.confidence} < expected min {confidence_min}"
    return check


def run_scenario(
    scenario: Mapping[str, Any],
    constants: Optional[Mapping[str, Any]] = None,
    defaults: Optional[TrackerConstants] = None,
    trace_capacity: int = SCENARIO_TRACE_CAPACITY,
) -> ScenarioResult:
    """Run one scenario on a fresh tracker. Update N is the one produced by onset N.

    Constants layer as defaults < scenario "constants" < caller overrides.
    trace_capacity <= 0 runs without a trace recorder.
    """
    name = scenario.get("name", "unnamed")
    merged: dict[str, Any] = asdict(defaults) if defaults is not None else {}
    for layer in (scenario.get("constants"), constants):
        merged.update({str(key).lower(): value for key, value in (layer or {}).items()})

    trace = TraceRecorder(trace_capacity) if trace_capacity > 0 else None
    tracker = BeatTracker(constants=merged, trace=trace)
    tracker.reset()

    onsets = scenario.get("onsets")
    if scenario.get("generator"):
        onsets = generate_onsets(scenario["generator"])

    if not onsets:
        log_event("WARNING", "Scenario", "No onsets generated", scenario=name)
        return ScenarioResult(scenario=name, passed=False, description=scenario.get("description", ""),
                              error="No onsets generated")

    updates = [tracker.process_onset(t) for t in onsets]

    result = ScenarioResult(
        scenario=name,
        description=scenario.get("description", ""),
        passed=True,
        trace=trace.get_all() if trace is not None else [],
        updates=updates,
        final_state=tracker.get_snapshot(),
        onset_count=len(onsets),
    )

    for expectation in scenario.get("expectations", []):
        index = int(expectation["after_onset"]) - 1
        if 0 <= index < len(updates):
            check = _check_expectation(expectation, updates[index])
        else:
            check = CheckResult(
                after_onset=int(expectation["after_onset"]),
                passed=False,
                expected=dict(expectation),
                error=f"Onset {expectation['after_onset']} not found (only {len(updates)} updates)",
            )
        result.checks.append(check)
        if not check.passed:
            result.passed = False

    tracker.destroy()
    log_event("INFO", "Scenario", "Finished", scenario=name, passed=result.passed, onsets=len(onsets))
    return result


def suite_path(suite: str, scenario_dir: Optional[Path] = None) -> Path:
    return Path(scenario_dir or SCENARIO_DIR) / f"{suite}.json"


def load_suite(path: Path) -> dict:
    """Load a suite file: {"version": ..., "scenarios": [...]}."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict) or not isinstance(data.get("scenarios"), list):
        raise ValueError(f"Suite {path} has no 'scenarios' list")
    return data


def run_suite(
    scenarios: list[Mapping[str, Any]],
    name_filter: Optional[str] = None,
    defaults: Optional[TrackerConstants] = None,
    trace_capacity: int = SCENARIO_TRACE_CAPACITY,
) -> list[ScenarioResult]:
    selected = [s for s in scenarios if not name_filter or name_filter in s.get("name", "")]
    return [run_scenario(s, defaults=defaults, trace_capacity=trace_capacity) for s in selected]
