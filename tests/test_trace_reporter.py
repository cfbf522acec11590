import csv
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from scenario_runner import run_scenario
from trace_recorder import TraceEvent, TraceRecord, TraceRecorder
from trace_reporter import TRACE_FIELDNAMES, TraceReporter


class TestTraceReporter(unittest.TestCase):
    def test_save_trace_writes_json_and_csv(self):
        recorder = TraceRecorder()
        recorder.add(TraceRecord(timestamp=0.0, state="CALIBRATING", event=TraceEvent.CALIBRATING, beat_count=1))
        recorder.add(TraceRecord(timestamp=500.0, state="TRACKING", event=TraceEvent.ON_GRID,
                                 on_grid=True, drift=0.0, grid_hits=1))

        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = TraceReporter(Path(tmpdir) / "reports")
            self.assertTrue(reporter.save_trace(recorder, label="unit"))

            with open(reporter.trace_json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            self.assertEqual(payload["label"], "unit")
            self.assertEqual(payload["record_count"], 2)
            self.assertEqual(payload["records"][1]["index"], 1)

            with open(reporter.trace_csv_path, "r", newline="", encoding="utf-8") as f:
                rows = list(csv.DictReader(f))
            self.assertEqual(len(rows), 2)
            self.assertEqual(list(rows[0].keys()), TRACE_FIELDNAMES)
            self.assertEqual(rows[0]["beatCount"], "1")
            self.assertEqual(rows[1]["gridHits"], "1")
            self.assertEqual(rows[0]["drift"], "")

    def test_save_scenarios(self):
        result = run_scenario({
            "name": "perfect",
            "generator": {"type": "perfect", "bpm": 120, "beats": 12},
            "expectations": [{"after_onset": 12, "state": "TRACKING"}],
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = TraceReporter(Path(tmpdir))
            self.assertTrue(reporter.save_scenarios([result], suite="unit"))
            with open(reporter.scenario_json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        self.assertEqual(payload["suite"], "unit")
        self.assertEqual(payload["passed"], 1)
        self.assertEqual(payload["results"][0]["scenario"], "perfect")

    def test_write_failure_returns_false(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = TraceReporter(Path(tmpdir))
            with mock.patch("builtins.open", side_effect=OSError("disk full")):
                self.assertFalse(reporter.save_trace([]))
                self.assertFalse(reporter.save_scenarios([]))


if __name__ == "__main__":
    unittest.main()
