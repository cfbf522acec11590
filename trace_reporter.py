import csv
import json
import time
from pathlib import Path

from logging_utils import log_event
from trace_recorder import TraceRecord, TraceRecorder


TRACE_FIELDNAMES = [
    "index",
    "timestamp",
    "state",
    "event",
    "onsetCount",
    "beatCount",
    "onGrid",
    "nearestBeat",
    "offset",
    "impliedPeriod",
    "periodBefore",
    "periodAfter",
    "targetPeriodBefore",
    "targetPeriodAfter",
    "currentBpm",
    "targetBpm",
    "drift",
    "confidence",
    "gridHits",
    "gridMisses",
]


class TraceReporter:
    """Writes tracker traces and scenario summaries to JSON and CSV reports."""

    def __init__(self, report_dir: Path):
        self.report_dir = Path(report_dir)
        self.report_dir.mkdir(parents=True, exist_ok=True)
        self.trace_json_path = self.report_dir / "trace_report.json"
        self.trace_csv_path = self.report_dir / "trace_report.csv"
        self.scenario_json_path = self.report_dir / "scenario_report.json"

    def save_trace(self, records, label: str = "") -> bool:
        """Persist a TraceRecorder (or list of TraceRecords). Returns False when writing failed."""
        if isinstance(records, TraceRecorder):
            records = records.get_all()
        rows = [r.to_dict(include_index=True) if isinstance(r, TraceRecord) else dict(r) for r in records]

        payload = {
            "generated_at": time.time(),
            "label": label,
            "record_count": len(rows),
            "records": rows,
        }

        try:
            with open(self.trace_json_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)

            with open(self.trace_csv_path, "w", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=TRACE_FIELDNAMES, extrasaction="ignore")
                writer.writeheader()
                for row in rows:
                    writer.writerow({key: row.get(key, "") for key in TRACE_FIELDNAMES})
        except OSError as e:
            log_event("ERROR", "Report", "Failed to write trace report", error=e)
            return False

        log_event("INFO", "Report", "Trace report written", path=self.trace_json_path, records=len(rows))
        return True

    def save_scenarios(self, results, suite: str = "") -> bool:
        """Persist ScenarioResult summaries for one suite run."""
        summaries = [r.summary() for r in results]
        passed = sum(1 for s in summaries if s["passed"])
        payload = {
            "generated_at": time.time(),
            "suite": suite,
            "total": len(summaries),
            "passed": passed,
            "failed": len(summaries) - passed,
            "results": summaries,
        }

        try:
            with open(self.scenario_json_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
        except OSError as e:
            log_event("ERROR", "Report", "Failed to write scenario report", error=e)
            return False
        return True
