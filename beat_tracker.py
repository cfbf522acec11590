"""
beatdrift - Beat Tracker
Phase-locked beat grid that follows a performer's onsets and reports how far
the current tempo has drifted from a calibrated reference tempo.

State machine:
    IDLE -> CALIBRATING          reset()/start()
    CALIBRATING -> TRACKING      cal_beats + 1 onsets and a usable base period
    TRACKING/CALIBRATING -> WAITING   silence watchdog only
    WAITING -> CALIBRATING       next onset restarts calibration from that onset
    any -> TRACKING              set_target(bpm)

Every processed onset appends one TraceRecord (when a recorder is attached)
and pushes one BeatUpdate to the registered listeners.
"""

import math
import numbers
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Mapping, Optional, Union

from config import TargetPolicy, TrackerConstants, WatchdogConfig
from logging_utils import log_event
from period_estimator import find_dominant_period, intervals_from_onsets
from silence_watchdog import SilenceWatchdog
from trace_recorder import TraceEvent, TraceRecord, TraceRecorder


# Offset band (beat fraction) where onsets are read as landing between grid lines
HALF_BEAT_BAND = (0.35, 0.65)
DOUBLE_TEMPO_MIN_MISSES = 6        # Misses required before the grid may be halved
DOUBLE_TEMPO_MISS_RATIO = 0.5      # Misses must exceed hits * this
DOUBLE_TEMPO_MIN_CONFIDENCE = 0.3
DOUBLE_TEMPO_CONFIDENCE_PENALTY = 0.2


class TrackerState(str, Enum):
    IDLE = "IDLE"
    CALIBRATING = "CALIBRATING"
    TRACKING = "TRACKING"
    WAITING = "WAITING"


class InvalidTargetError(ValueError):
    """Raised when set_target() gets a tempo that cannot define a beat period."""


def round_to(value: float, decimals: int) -> float:
    """Half-up rounding, so 0.05 steps never flip with banker's rounding."""
    scale = 10 ** decimals
    return math.floor(value * scale + 0.5) / scale


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class BeatUpdate:
    """Snapshot pushed to listeners after every onset and every forced transition."""
    state: str
    current_bpm: Optional[float]    # None until a period exists; 0.1 resolution
    target_bpm: Optional[float]
    drift: float                    # current_bpm - target_bpm, 0.1 resolution
    confidence: int                 # 0-100
    beat_count: int                 # Calibration onsets collected (full once calibrated)
    calibration_needed: int
    grid_hits: int
    grid_misses: int
    onset_count: int
    period: float                   # Raw ms, 0 = undefined
    target_period: float

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "currentBpm": self.current_bpm,
            "targetBpm": self.target_bpm,
            "drift": self.drift,
            "confidence": self.confidence,
            "beatCount": self.beat_count,
            "calibrationNeeded": self.calibration_needed,
            "gridHits": self.grid_hits,
            "gridMisses": self.grid_misses,
            "onsetCount": self.onset_count,
            "period": self.period,
            "targetPeriod": self.target_period,
        }


@dataclass(frozen=True)
class TrackerSnapshot:
    """Immutable copy of the full tracker state, for inspection and tests."""
    state: TrackerState
    period: float
    phase: float
    target_period: float
    confidence: float               # 0-1
    calibrated: bool
    grid_hits: int
    grid_misses: int
    onset_count: int
    cal_onsets: tuple
    recent_periods: tuple
    last_onset_time: float

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        data["cal_onsets"] = list(self.cal_onsets)
        data["recent_periods"] = list(self.recent_periods)
        return data


UpdateListener = Callable[[BeatUpdate], None]


class BeatTracker:
    """
    Owns all tracking state. process_onset() and the silence watchdog both
    go through one re-entrant lock, so only one writer touches the state at
    any instant. Listeners are called after that lock is released, so a
    listener may call back into the tracker or stop the watchdog.

    Timestamps are milliseconds and should be non-decreasing; that is the
    caller's responsibility. The watchdog and set_target() read `clock`, which
    must run on the same timeline as the onset timestamps.
    """

    def __init__(
        self,
        constants: Union[TrackerConstants, Mapping, None] = None,
        trace: Optional[TraceRecorder] = None,
        on_update: Optional[UpdateListener] = None,
        clock: Optional[Callable[[], float]] = None,
        watchdog_config: Optional[WatchdogConfig] = None,
    ):
        if isinstance(constants, TrackerConstants):
            constants.validate()
            self._constants = constants
        else:
            self._constants = TrackerConstants.from_mapping(constants)

        self.trace = trace
        self.clock = clock or _monotonic_ms
        self.watchdog_config = watchdog_config or WatchdogConfig()

        self._lock = threading.RLock()
        self._listeners: list[UpdateListener] = []
        if on_update is not None:
            self._listeners.append(on_update)

        self._watchdog: Optional[SilenceWatchdog] = None
        self._watchdog_lock = threading.Lock()   # Guards creating self._watchdog; never held while joining
        self._destroyed = False

        # Grid
        self._state = TrackerState.IDLE
        self._period = 0.0            # ms between beats, 0 = undefined
        self._phase = 0.0             # timestamp of the last grid alignment
        self._target_period = 0.0     # reference period drift is measured against
        self._confidence = 0.0        # 0-1 lock quality

        # Calibration
        self._cal_onsets: list[float] = []
        self._calibrated = False

        # Statistics
        self._onset_count = 0
        self._grid_hits = 0
        self._grid_misses = 0
        self._recent_periods: deque[float] = deque(maxlen=int(self._constants.period_history))

        # Silence detection
        self._last_onset_time = 0.0

    # ---- Properties ----

    @property
    def constants(self) -> TrackerConstants:
        return self._constants

    @property
    def state(self) -> TrackerState:
        with self._lock:
            return self._state

    @property
    def watchdog_running(self) -> bool:
        return self._watchdog is not None and self._watchdog.running

    # ---- Listeners ----

    def add_listener(self, listener: UpdateListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: UpdateListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ---- Internal helpers ----

    def _beat_count(self) -> int:
        if self._calibrated:
            return int(self._constants.cal_beats) + 1
        return len(self._cal_onsets)

    def _build_update(self) -> BeatUpdate:
        current_bpm = 60000.0 / self._period if self._period > 0 else None
        target_bpm = 60000.0 / self._target_period if self._target_period > 0 else None
        drift = current_bpm - target_bpm if (current_bpm and target_bpm) else 0.0

        return BeatUpdate(
            state=self._state.value,
            current_bpm=round_to(current_bpm, 1) if current_bpm else None,
            target_bpm=round_to(target_bpm, 1) if target_bpm else None,
            drift=round_to(drift, 1),
            confidence=int(round_to(self._confidence * 100, 0)),
            beat_count=self._beat_count(),
            calibration_needed=int(self._constants.cal_beats),
            grid_hits=self._grid_hits,
            grid_misses=self._grid_misses,
            onset_count=self._onset_count,
            period=self._period,
            target_period=self._target_period,
        )

    def _pending_update(self) -> tuple[BeatUpdate, list[UpdateListener]]:
        """Build the Update and copy the listener list. Caller holds self._lock."""
        return self._build_update(), list(self._listeners)

    def _notify(self, pending: tuple[BeatUpdate, list[UpdateListener]]) -> BeatUpdate:
        """Call listeners with self._lock released; they may re-enter the tracker or stop the watchdog."""
        update, listeners = pending
        for listener in listeners:
            listener(update)
        return update

    def _record(self, record: TraceRecord) -> None:
        if self.trace is not None:
            self.trace.add(record)

    def _clear_tracking_state(self) -> None:
        self._period = 0.0
        self._phase = 0.0
        self._target_period = 0.0
        self._confidence = 0.0
        self._cal_onsets = []
        self._calibrated = False
        self._recent_periods.clear()
        self._onset_count = 0
        self._grid_hits = 0
        self._grid_misses = 0

    # ---- Lifecycle ----

    def reset(self) -> BeatUpdate:
        """Drop everything learned so far and start collecting calibration onsets."""
        with self._lock:
            self._clear_tracking_state()
            self._last_onset_time = 0.0
            self._state = TrackerState.CALIBRATING
            log_event("INFO", "Tracker", "Calibration started", cal_beats=self._constants.cal_beats)
            pending = self._pending_update()
        return self._notify(pending)

    def start(self) -> BeatUpdate:
        """reset(), then start the silence watchdog when the watchdog config asks for it."""
        update = self.reset()
        if self.watchdog_config.auto_start:
            self.start_watchdog()
        return update

    def destroy(self) -> None:
        """Stop the watchdog. Counters and grid state are left as they are."""
        self.stop_watchdog()
        self._destroyed = True

    # ---- Onset processing ----

    def process_onset(self, timestamp_ms: float) -> BeatUpdate:
        """Feed one onset timestamp (ms). Returns the Update that was pushed to listeners."""
        timestamp = float(timestamp_ms)
        if not math.isfinite(timestamp):
            log_event("WARNING", "Tracker", "Non-finite onset ignored", timestamp=timestamp_ms)
            with self._lock:
                return self._build_update()

        with self._lock:
            self._last_onset_time = timestamp
            self._onset_count += 1

            if self._state is TrackerState.WAITING:
                self._resume_from_waiting(timestamp)
            elif self._state is TrackerState.CALIBRATING:
                self._calibration_step(timestamp)
            elif self._state is TrackerState.TRACKING and self._period > 0:
                self._grid_step(timestamp)
            else:
                self._record(TraceRecord(
                    timestamp=timestamp,
                    state=self._state.value,
                    event=TraceEvent.IGNORED,
                    onset_count=self._onset_count,
                ))

            pending = self._pending_update()
        return self._notify(pending)

    def _resume_from_waiting(self, timestamp: float) -> None:
        period_before = self._period
        target_before = self._target_period

        # Old period/target stay visible until the new calibration lands
        self._cal_onsets = [timestamp]
        self._calibrated = False
        self._state = TrackerState.CALIBRATING
        log_event("INFO", "Tracker", "Onset after silence, recalibrating", timestamp=timestamp)

        self._record(TraceRecord(
            timestamp=timestamp,
            state=self._state.value,
            event=TraceEvent.RESUME_FROM_WAITING,
            beat_count=len(self._cal_onsets),
            calibration_needed=int(self._constants.cal_beats),
            period_before=period_before,
            period_after=self._period,
            target_period_before=target_before,
            target_period_after=self._target_period,
            confidence=round_to(self._confidence * 100, 0),
            onset_count=self._onset_count,
        ))

    def _calibration_step(self, timestamp: float) -> None:
        C = self._constants
        self._cal_onsets.append(timestamp)

        if len(self._cal_onsets) < C.cal_beats + 1:
            log_event("DEBUG", "Tracker", "Calibration onset",
                      collected=len(self._cal_onsets), needed=C.cal_beats + 1)
            self._record(TraceRecord(
                timestamp=timestamp,
                state=self._state.value,
                event=TraceEvent.CALIBRATING,
                beat_count=len(self._cal_onsets),
                calibration_needed=int(C.cal_beats),
                onset_count=self._onset_count,
            ))
            return

        intervals = intervals_from_onsets(self._cal_onsets)
        base_period = find_dominant_period(intervals, C.min_period_ms, C.max_calibration_interval_ms)
        joined = ";".join(f"{iv:.2f}" for iv in intervals)

        if base_period <= 0:
            # Keep the onsets; the next one retries with the larger set
            log_event("INFO", "Tracker", "No usable calibration interval, retrying",
                      collected=len(self._cal_onsets))
            self._record(TraceRecord(
                timestamp=timestamp,
                state=self._state.value,
                event=TraceEvent.CALIBRATION_RETRY,
                beat_count=len(self._cal_onsets),
                calibration_needed=int(C.cal_beats),
                intervals=joined,
                base_period=0.0,
                onset_count=self._onset_count,
            ))
            return

        self._period = base_period
        self._target_period = base_period
        self._phase = timestamp
        self._confidence = C.calibrated_confidence
        self._recent_periods.clear()
        self._recent_periods.append(base_period)
        self._cal_onsets = []
        self._calibrated = True
        self._state = TrackerState.TRACKING

        log_event("INFO", "Tracker", "Calibration complete",
                  base_period=base_period, bpm=60000.0 / base_period)
        self._record(TraceRecord(
            timestamp=timestamp,
            state=self._state.value,
            event=TraceEvent.CALIBRATION_COMPLETE,
            intervals=joined,
            base_period=base_period,
            period_after=self._period,
            target_period_after=self._target_period,
            current_bpm=60000.0 / self._period,
            target_bpm=60000.0 / self._target_period,
            drift=0.0,
            confidence=round_to(self._confidence * 100, 0),
            onset_count=self._onset_count,
        ))

    def _grid_step(self, timestamp: float) -> None:
        C = self._constants
        period_before = self._period
        target_before = self._target_period

        # Grid position
        time_since_phase = timestamp - self._phase
        beat_fraction = time_since_phase / self._period
        nearest_beat = math.floor(beat_fraction + 0.5)
        offset = beat_fraction - nearest_beat  # -0.5 .. +0.5
        abs_offset = abs(offset)

        implied_period = 0.0
        on_grid = False
        event = TraceEvent.OFF_GRID

        if abs_offset < C.grid_tolerance:
            on_grid = True
            event = TraceEvent.ON_GRID
            self._grid_hits += 1

            if nearest_beat > 0:
                implied_period = time_since_phase / nearest_beat

            if nearest_beat > 0 and C.min_period_ms < implied_period < C.max_period_ms:
                self._period += C.adapt_fast * (implied_period - self._period)

                if C.target_policy is TargetPolicy.SLOW_ADAPT:
                    self._target_period += C.adapt_slow * (self._period - self._target_period)

                # New alignment point: predicted beat moved phase_correction of the way to the onset
                self._phase = timestamp - offset * self._period * (1.0 - C.phase_correction)

                self._recent_periods.append(implied_period)
                self._confidence = min(1.0, self._confidence + C.confidence_hit_step)
            else:
                log_event("DEBUG", "Tracker", "Implied period out of range, grid held",
                          implied=implied_period, nearest_beat=nearest_beat)
        else:
            # Syncopation or noise: never a tempo signal
            self._grid_misses += 1
            self._confidence = max(0.0, self._confidence - C.confidence_miss_step)

        if self._double_tempo_suspected(abs_offset) and self._apply_double_tempo(timestamp):
            event = TraceEvent.DOUBLE_TEMPO_CORRECTION

        current_bpm = 60000.0 / self._period
        target_bpm = 60000.0 / self._target_period
        drift = current_bpm - target_bpm

        log_event("DEBUG", "Tracker", "Onset placed", event=event, nearest_beat=nearest_beat,
                  offset=offset, period=self._period, drift=drift)
        self._record(TraceRecord(
            timestamp=timestamp,
            state=self._state.value,
            event=event,
            on_grid=on_grid,
            nearest_beat=nearest_beat,
            offset=round_to(offset, 3),
            implied_period=round_to(implied_period, 2) if implied_period else None,
            period_before=round_to(period_before, 2),
            period_after=round_to(self._period, 2),
            target_period_before=round_to(target_before, 2),
            target_period_after=round_to(self._target_period, 2),
            current_bpm=round_to(current_bpm, 2),
            target_bpm=round_to(target_bpm, 2),
            drift=round_to(drift, 2),
            confidence=round_to(self._confidence * 100, 0),
            grid_hits=self._grid_hits,
            grid_misses=self._grid_misses,
            onset_count=self._onset_count,
        ))

    def _double_tempo_suspected(self, abs_offset: float) -> bool:
        low, high = HALF_BEAT_BAND
        return (
            low < abs_offset < high
            and self._grid_misses > self._grid_hits * DOUBLE_TEMPO_MISS_RATIO
            and self._grid_misses > DOUBLE_TEMPO_MIN_MISSES
        )

    def _apply_double_tempo(self, timestamp: float) -> bool:
        """Halve the grid once onsets keep landing between grid lines. Returns True if applied."""
        half_period = self._period / 2
        if half_period <= self._constants.min_period_ms:
            log_event("DEBUG", "Tracker", "Double tempo suspected but half period too short",
                      half_period=half_period)
            return False

        old_period = self._period
        self._period = half_period
        self._target_period = self._target_period / 2
        halved = [p / 2 for p in self._recent_periods]
        self._recent_periods.clear()
        self._recent_periods.extend(halved)
        self._phase = timestamp
        self._grid_hits = 0
        self._grid_misses = 0
        self._confidence = max(DOUBLE_TEMPO_MIN_CONFIDENCE,
                               self._confidence - DOUBLE_TEMPO_CONFIDENCE_PENALTY)

        log_event("INFO", "Tracker", "Double tempo correction",
                  period_before=old_period, period_after=self._period)
        return True

    # ---- Operator / watchdog transitions ----

    def set_target(self, bpm: float, now_ms: Optional[float] = None) -> BeatUpdate:
        """Force TRACKING at an operator-supplied reference tempo."""
        if isinstance(bpm, bool) or not isinstance(bpm, numbers.Real):
            raise InvalidTargetError(f"Target BPM must be a number, got {bpm!r}")
        bpm = float(bpm)
        if not math.isfinite(bpm) or bpm <= 0:
            raise InvalidTargetError(f"Target BPM must be positive and finite, got {bpm}")
        period = 60000.0 / bpm
        if not math.isfinite(period) or period <= 0:
            raise InvalidTargetError(f"Target BPM {bpm} does not define a beat period")

        with self._lock:
            now = float(self.clock()) if now_ms is None else float(now_ms)
            self._target_period = period
            self._period = period
            self._phase = now
            self._confidence = self._constants.retarget_confidence
            self._recent_periods.clear()
            self._recent_periods.append(period)
            # Counts as a full calibration, nothing left to collect
            self._cal_onsets = []
            self._calibrated = True
            self._state = TrackerState.TRACKING
            log_event("INFO", "Tracker", "Target set", bpm=bpm, period=period)
            pending = self._pending_update()
        return self._notify(pending)

    def enter_waiting(self) -> BeatUpdate:
        """Forced transition used by the silence watchdog. Counters and period survive."""
        with self._lock:
            pending = self._enter_waiting_locked()
        return self._notify(pending)

    def _enter_waiting_locked(self) -> tuple[BeatUpdate, list[UpdateListener]]:
        self._state = TrackerState.WAITING
        self._confidence = 0.0
        log_event("INFO", "Tracker", "Silence, waiting for onsets",
                  last_onset=self._last_onset_time)
        return self._pending_update()

    def check_silence(self, now_ms: float) -> bool:
        """Enter WAITING when the gap since the last onset exceeds the silence timeout."""
        with self._lock:
            if self._state not in (TrackerState.TRACKING, TrackerState.CALIBRATING):
                return False
            if self._last_onset_time <= 0:
                return False
            if now_ms - self._last_onset_time <= self._constants.silence_timeout_ms:
                return False
            pending = self._enter_waiting_locked()
        self._notify(pending)
        return True

    # ---- Watchdog lifecycle ----

    def start_watchdog(self, clock: Optional[Callable[[], float]] = None) -> None:
        """Start (or restart) the silence watchdog. Safe to call repeatedly."""
        if self._destroyed:
            raise RuntimeError("BeatTracker has been destroyed")
        with self._watchdog_lock:
            if self._watchdog is None:
                self._watchdog = SilenceWatchdog(
                    self,
                    poll_interval_ms=self.watchdog_config.poll_interval_ms,
                    clock=clock or self.clock,
                )
            elif clock is not None:
                self._watchdog.clock = clock
            watchdog = self._watchdog
        watchdog.start()

    def stop_watchdog(self) -> None:
        """Stop the silence watchdog; tracker state is untouched. Safe to call repeatedly."""
        # No tracker lock is held here; the worker may be inside check_silence while we join
        if self._watchdog is not None:
            self._watchdog.stop()

    # ---- Inspection ----

    def get_snapshot(self) -> TrackerSnapshot:
        with self._lock:
            return TrackerSnapshot(
                state=self._state,
                period=self._period,
                phase=self._phase,
                target_period=self._target_period,
                confidence=self._confidence,
                calibrated=self._calibrated,
                grid_hits=self._grid_hits,
                grid_misses=self._grid_misses,
                onset_count=self._onset_count,
                cal_onsets=tuple(self._cal_onsets),
                recent_periods=tuple(self._recent_periods),
                last_onset_time=self._last_onset_time,
            )

    def get_update(self) -> BeatUpdate:
        """Current Update without pushing it to listeners."""
        with self._lock:
            return self._build_update()
