"""
beatdrift - Trace Recorder
Bounded, append-only log of what the tracker decided for each onset.
"""

import csv
import io
import json
from collections import deque
from dataclasses import dataclass, fields, replace
from typing import Optional


class TraceEvent:
    """Categorical tags stored in TraceRecord.event"""
    CALIBRATING = "calibrating"
    CALIBRATION_RETRY = "calibration_retry"
    CALIBRATION_COMPLETE = "calibration_complete"
    RESUME_FROM_WAITING = "resume_from_waiting"
    ON_GRID = "on_grid"
    OFF_GRID = "off_grid"
    DOUBLE_TEMPO_CORRECTION = "double_tempo_correction"
    IGNORED = "ignored"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass(frozen=True)
class TraceRecord:
    """One processed onset. Optional fields stay None when they do not apply to the event."""
    timestamp: float
    state: str
    event: str
    onset_count: int = 0
    index: Optional[int] = None              # Assigned by the recorder on add()
    beat_count: Optional[int] = None         # Calibration onsets collected so far
    calibration_needed: Optional[int] = None
    intervals: Optional[str] = None          # ';'-joined calibration intervals
    base_period: Optional[float] = None
    on_grid: Optional[bool] = None
    nearest_beat: Optional[int] = None
    offset: Optional[float] = None           # Beat fraction, -0.5..+0.5
    implied_period: Optional[float] = None
    period_before: Optional[float] = None
    period_after: Optional[float] = None
    target_period_before: Optional[float] = None
    target_period_after: Optional[float] = None
    current_bpm: Optional[float] = None
    target_bpm: Optional[float] = None
    drift: Optional[float] = None
    confidence: Optional[float] = None       # 0-100
    grid_hits: Optional[int] = None
    grid_misses: Optional[int] = None

    def to_dict(self, include_index: bool = False) -> dict:
        """Wire shape: camelCase keys, fields that do not apply are left out."""
        out = {}
        for f in fields(self):
            if f.name == "index" and not include_index:
                continue
            value = getattr(self, f.name)
            if value is None and f.name not in ("timestamp", "state", "event"):
                continue
            out[_camel(f.name)] = value
        return out


class TraceRecorder:
    """Ring buffer of TraceRecords. Readers get copies and never mutate the log."""

    def __init__(self, capacity: int = 1000):
        self.capacity = max(1, int(capacity))
        self._entries: deque[TraceRecord] = deque(maxlen=self.capacity)
        self._next_index = 0

    def add(self, record: TraceRecord) -> TraceRecord:
        stamped = replace(record, index=self._next_index)
        self._next_index += 1
        self._entries.append(stamped)
        return stamped

    def get_all(self) -> list[TraceRecord]:
        return list(self._entries)

    def get_last(self, n: int = 1) -> list[TraceRecord]:
        if n <= 0:
            return []
        entries = list(self._entries)
        return entries[-n:]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    # ---- Export views (diagnostics only) ----

    def to_rows(self) -> list[dict]:
        return [entry.to_dict() for entry in self._entries]

    def to_csv(self) -> str:
        """CSV with the first record's keys as header; later records are projected onto it."""
        rows = self.to_rows()
        if not rows:
            return ""

        headers = list(rows[0].keys())
        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
        writer.writerow(headers)
        for row in rows:
            writer.writerow([_csv_value(row.get(h)) for h in headers])
        return buf.getvalue().rstrip("\n")

    def to_json(self) -> str:
        return json.dumps([entry.to_dict(include_index=True) for entry in self._entries], indent=2)


def _csv_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return f"{value:.4f}"
    return str(value)
