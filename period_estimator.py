"""
beatdrift - Dominant Period Estimator
Picks one base beat period out of the raw inter-onset intervals collected
during calibration.

Drummers skip beats and play subdivisions, so raw intervals cluster at
integer multiples of the true period. The estimator takes the median of the
shortest intervals as a trial base and keeps it when most intervals sit
near 1x-4x of it; otherwise it falls back to the plain median.
"""

from typing import Sequence

import numpy as np


BASE_CANDIDATE_FRACTION = 0.6   # Lower share of sorted intervals treated as base-period candidates
MULTIPLE_TOLERANCE = 0.15       # Max fractional error from an integer ratio
MAX_MULTIPLE = 4
MIN_FIT_RATIO = 0.5             # Share of intervals that must fit the multiple-of-base model


def intervals_from_onsets(onsets: Sequence[float]) -> list[float]:
    """Consecutive differences of an ordered onset list."""
    if len(onsets) < 2:
        return []
    return np.diff(np.asarray(onsets, dtype=np.float64)).tolist()


def _count_multiples(valid: np.ndarray, base: float) -> int:
    ratios = valid / base
    nearest = np.floor(ratios + 0.5)
    fits = (np.abs(ratios - nearest) < MULTIPLE_TOLERANCE) & (nearest >= 1) & (nearest <= MAX_MULTIPLE)
    return int(np.count_nonzero(fits))


def find_dominant_period(
    intervals: Sequence[float],
    min_period_ms: float = 200.0,
    max_interval_ms: float = 2000.0,
) -> float:
    """Return the best-fit base period in ms, or 0.0 when no interval is usable."""
    if len(intervals) == 0:
        return 0.0

    values = np.sort(np.asarray(intervals, dtype=np.float64))
    valid = values[(values > min_period_ms) & (values < max_interval_ms)]
    if valid.size == 0:
        return 0.0

    n_candidates = max(1, int(np.ceil(valid.size * BASE_CANDIDATE_FRACTION)))
    candidates = valid[:n_candidates]
    trial_base = float(candidates[candidates.size // 2])

    if _count_multiples(valid, trial_base) >= valid.size * MIN_FIT_RATIO:
        return trial_base

    return float(valid[valid.size // 2])
