# beatdrift Configuration
# All default values and tuning constants

from dataclasses import dataclass, field, fields, is_dataclass, replace
from enum import IntEnum
from typing import Any, Mapping

from logging_utils import log_event


CURRENT_CONFIG_VERSION = 1


class TargetPolicy(IntEnum):
    """How the reference (target) period behaves while tracking"""
    FIXED = 1        # Target only changes on calibration, retarget, double-tempo correction
    SLOW_ADAPT = 2   # Target creeps toward the tracked period on every valid on-grid hit


@dataclass(frozen=True)
class TrackerConstants:
    """Beat tracker tuning. Immutable; build variants with from_mapping() or replace()."""
    cal_beats: int = 8                      # Intervals required for calibration (cal_beats + 1 onsets)
    adapt_fast: float = 0.08                # Period adaptation rate (IIR coefficient)
    adapt_slow: float = 0.005               # Target adaptation rate, only used with SLOW_ADAPT
    target_policy: TargetPolicy = TargetPolicy.FIXED
    grid_tolerance: float = 0.35            # Beat fraction that still counts as "on-grid"
    silence_timeout_ms: float = 4000.0      # Gap before the watchdog forces WAITING
    period_history: int = 12                # Capacity of the recent implied-period buffer
    min_period_ms: float = 200.0            # ~300 BPM
    max_period_ms: float = 1500.0           # ~40 BPM
    max_calibration_interval_ms: float = 2000.0  # Longest raw interval the estimator accepts
    phase_correction: float = 0.3           # Fraction of the raw offset kept when re-anchoring phase
    confidence_hit_step: float = 0.05       # Confidence gain per valid on-grid hit
    confidence_miss_step: float = 0.02      # Confidence loss per off-grid hit
    calibrated_confidence: float = 0.5      # Confidence right after calibration completes
    retarget_confidence: float = 0.7        # Confidence right after an explicit retarget

    @classmethod
    def from_mapping(cls, overrides: Mapping[str, Any] | None) -> "TrackerConstants":
        """Build constants from overrides keyed by field name or CLASSIC_NAME spelling."""
        if not overrides:
            return cls()
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in overrides.items():
            name = str(key).lower()
            if name not in known:
                raise ValueError(f"Unknown tracker constant: {key}")
            values[name] = value
        if "target_policy" in values:
            values["target_policy"] = _coerce_policy(values["target_policy"])
        constants = cls(**values)
        constants.validate()
        return constants

    def validate(self) -> None:
        """Raise ValueError when a constant cannot drive the tracker."""
        if int(self.cal_beats) < 1:
            raise ValueError(f"cal_beats must be >= 1, got {self.cal_beats}")
        if int(self.period_history) < 1:
            raise ValueError(f"period_history must be >= 1, got {self.period_history}")
        if not 0.0 < self.adapt_fast <= 1.0:
            raise ValueError(f"adapt_fast must be in (0, 1], got {self.adapt_fast}")
        if not 0.0 <= self.adapt_slow <= 1.0:
            raise ValueError(f"adapt_slow must be in [0, 1], got {self.adapt_slow}")
        if not 0.0 < self.grid_tolerance <= 0.5:
            raise ValueError(f"grid_tolerance must be in (0, 0.5], got {self.grid_tolerance}")
        if self.silence_timeout_ms <= 0:
            raise ValueError(f"silence_timeout_ms must be > 0, got {self.silence_timeout_ms}")
        if not 0.0 < self.min_period_ms < self.max_period_ms:
            raise ValueError(
                f"period bounds must satisfy 0 < min < max, got {self.min_period_ms}..{self.max_period_ms}"
            )
        if self.max_calibration_interval_ms <= self.min_period_ms:
            raise ValueError("max_calibration_interval_ms must exceed min_period_ms")
        for name in ("phase_correction", "confidence_hit_step", "confidence_miss_step",
                     "calibrated_confidence", "retarget_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")


@dataclass
class WatchdogConfig:
    """Silence watchdog polling"""
    poll_interval_ms: float = 500.0   # How often elapsed time since the last onset is checked
    auto_start: bool = False          # Start the watchdog when the tracker starts


@dataclass
class TraceConfig:
    """Per-onset trace buffer"""
    enabled: bool = True
    capacity: int = 1000              # Oldest records are evicted past this many


@dataclass
class ReportConfig:
    """Local trace/scenario report files"""
    enabled: bool = True
    report_dir: str | None = None     # None = <config dir>/reports


@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version for persisted configs
    tracker: TrackerConstants = field(default_factory=TrackerConstants)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    trace: TraceConfig = field(default_factory=TraceConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)


def _coerce_policy(value) -> TargetPolicy:
    if isinstance(value, TargetPolicy):
        return value
    if isinstance(value, str):
        try:
            return TargetPolicy[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown target policy: {value}") from None
    return TargetPolicy(int(value))


def apply_dict_to_dataclass(target, data):
    """Apply values from a dict to a dataclass instance recursively and return it.
    Unknown keys are ignored; IntEnum fields are coerced when possible.
    Mutable dataclasses are updated in place; frozen ones are rebuilt with replace()."""
    if not isinstance(data, dict):
        return target

    frozen = target.__dataclass_params__.frozen
    changes: dict[str, Any] = {}

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            value = apply_dict_to_dataclass(current, value)
        elif isinstance(current, IntEnum) and value is not None:
            try:
                value = _coerce_policy(value) if isinstance(current, TargetPolicy) else current.__class__(value)
            except (ValueError, KeyError):
                log_event("WARNING", "Config", "Could not convert value, keeping default",
                          key=key, type=current.__class__.__name__)
                continue

        changes[key] = value

    if frozen:
        return replace(target, **changes)
    for key, value in changes.items():
        setattr(target, key, value)
    return target


def _clamp(value, low: float, high: float, default: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        value = default
    return max(low, min(high, value))


def migrate_config(config: Config, loaded_version) -> Config:
    """Upgrade older config structures to the current schema.
    Restores defaults for fields persisted as null, clamps ranges and bumps version."""
    try:
        version = int(loaded_version) if loaded_version is not None else 0
    except (TypeError, ValueError):
        version = 0

    defaults = TrackerConstants()
    tracker = config.tracker
    if not isinstance(tracker, TrackerConstants):
        tracker = defaults

    if version < 1:
        # Pre-versioned files stored nulls for constants that were never tuned
        restored = {
            f.name: getattr(defaults, f.name)
            for f in fields(TrackerConstants)
            if getattr(tracker, f.name) is None
        }
        if restored:
            tracker = replace(tracker, **restored)

    tracker = replace(
        tracker,
        grid_tolerance=_clamp(tracker.grid_tolerance, 0.01, 0.5, defaults.grid_tolerance),
        confidence_hit_step=_clamp(tracker.confidence_hit_step, 0.0, 1.0, defaults.confidence_hit_step),
        confidence_miss_step=_clamp(tracker.confidence_miss_step, 0.0, 1.0, defaults.confidence_miss_step),
    )
    config.tracker = tracker

    if getattr(config.watchdog, 'poll_interval_ms', None) is None:
        config.watchdog.poll_interval_ms = 500.0
    if getattr(config.trace, 'capacity', None) is None:
        config.trace.capacity = 1000
    config.trace.capacity = max(1, int(config.trace.capacity))
    if getattr(config, 'log_level', None) is None:
        config.log_level = "INFO"

    config.version = CURRENT_CONFIG_VERSION
    return config


# Default config instance
DEFAULT_CONFIG = Config()
