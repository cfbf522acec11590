"""
beatdrift - Synthetic onset generators
Deterministic onset timestamp sequences (ms) for exercising the tracker
without audio: steady tempo, tempo ramps, jitter, dropped beats and
sectioned songs.
"""

from typing import Iterable, Optional

import numpy as np


DEFAULT_JITTER_SEED = 12345


def _period_ms(bpm: float) -> float:
    if bpm <= 0:
        raise ValueError(f"bpm must be > 0, got {bpm}")
    return 60000.0 / bpm


def generate_perfect_tempo(bpm: float, beats: int, start_time: float = 0.0) -> list[float]:
    """Isochronous onsets."""
    period = _period_ms(bpm)
    return (start_time + np.arange(max(0, int(beats))) * period).tolist()


def _ramp(start_bpm: float, end_bpm: float, beats: int, start_time: float, exponent: float) -> list[float]:
    beats = int(beats)
    if beats <= 0:
        return []
    if beats == 1:
        return [float(start_time)]
    if start_bpm <= 0 or end_bpm <= 0:
        raise ValueError("ramp tempos must be > 0")

    progress = np.arange(1, beats) / (beats - 1)
    bpms = start_bpm + (end_bpm - start_bpm) * progress ** exponent
    times = start_time + np.cumsum(60000.0 / bpms)
    return [float(start_time)] + times.tolist()


def generate_linear_drift(start_bpm: float, end_bpm: float, beats: int, start_time: float = 0.0) -> list[float]:
    """Tempo changes linearly from start_bpm to end_bpm across the sequence."""
    return _ramp(start_bpm, end_bpm, beats, start_time, exponent=1.0)


def generate_exponential_drift(start_bpm: float, end_bpm: float, beats: int, start_time: float = 0.0) -> list[float]:
    """Quadratic ramp: the tempo change accelerates toward the end."""
    return _ramp(start_bpm, end_bpm, beats, start_time, exponent=2.0)


def generate_with_jitter(bpm: float, beats: int, jitter_ms: float, start_time: float = 0.0,
                         seed: Optional[int] = DEFAULT_JITTER_SEED) -> list[float]:
    """Perfect tempo plus uniform timing noise in [-jitter_ms, +jitter_ms]. Seeded for reproducibility."""
    base = np.asarray(generate_perfect_tempo(bpm, beats, start_time))
    rng = np.random.default_rng(seed)
    noise = rng.uniform(-1.0, 1.0, size=base.size) * float(jitter_ms)
    return (base + noise).tolist()


def generate_with_missed_beats(bpm: float, beats: int, miss_indices: Iterable[int],
                               start_time: float = 0.0) -> list[float]:
    """Perfect tempo with the given beat indices dropped."""
    missing = set(int(i) for i in miss_indices)
    onsets = generate_perfect_tempo(bpm, beats, start_time)
    return [t for i, t in enumerate(onsets) if i not in missing]


def generate_sections(parts: list[tuple[float, int]], start_time: float = 0.0) -> list[float]:
    """Concatenate steady sections; each section's first beat lands one of its periods after the previous onset."""
    onsets: list[float] = []
    for bpm, beats in parts:
        first = float(start_time) if not onsets else onsets[-1] + _period_ms(bpm)
        onsets.extend(generate_perfect_tempo(bpm, beats, first))
    return onsets


def generate_section_change(bpm1: float, beats1: int, bpm2: float, beats2: int,
                            start_time: float = 0.0) -> list[float]:
    """Two steady sections; the tempo jumps between them."""
    return generate_sections([(bpm1, beats1), (bpm2, beats2)], start_time)


def generate_two_tempo(calibration_bpm: float, calibration_beats: int, play_bpm: float,
                       play_beats: int, start_time: float = 0.0) -> list[float]:
    """Calibrate at one tempo, then play at another."""
    return generate_section_change(calibration_bpm, calibration_beats, play_bpm, play_beats, start_time)


def generate_three_section(bpm1: float, beats1: int, bpm2: float, beats2: int, bpm3: float, beats3: int,
                           start_time: float = 0.0) -> list[float]:
    return generate_sections([(bpm1, beats1), (bpm2, beats2), (bpm3, beats3)], start_time)


def generate_onsets(generator: dict) -> list[float]:
    """Build onsets from a scenario generator block, dispatching on its 'type'."""
    kind = generator.get("type")
    start = float(generator.get("start_time", 0.0))

    if kind == "perfect":
        return generate_perfect_tempo(generator["bpm"], generator["beats"], start)
    if kind == "linear_drift":
        return generate_linear_drift(generator["start_bpm"], generator["end_bpm"], generator["beats"], start)
    if kind == "exponential_drift":
        return generate_exponential_drift(generator["start_bpm"], generator["end_bpm"], generator["beats"], start)
    if kind == "jitter":
        return generate_with_jitter(generator["bpm"], generator["beats"], generator["jitter_ms"], start,
                                    seed=generator.get("seed", DEFAULT_JITTER_SEED))
    if kind == "missed_beats":
        return generate_with_missed_beats(generator["bpm"], generator["beats"],
                                          generator.get("miss_indices", []), start)
    if kind == "two_tempo":
        return generate_two_tempo(generator["calibration_bpm"], generator["calibration_beats"],
                                  generator["play_bpm"], generator["play_beats"], start)
    if kind == "section_change":
        return generate_section_change(generator["section1_bpm"], generator["section1_beats"],
                                       generator["section2_bpm"], generator["section2_beats"], start)
    if kind == "three_section":
        return generate_three_section(generator["section1_bpm"], generator["section1_beats"],
                                      generator["section2_bpm"], generator["section2_beats"],
                                      generator["section3_bpm"], generator["section3_beats"], start)

    raise ValueError(f"Unknown generator type: {kind}")
