import unittest

import numpy as np

from onset_generators import (
    generate_exponential_drift,
    generate_linear_drift,
    generate_onsets,
    generate_perfect_tempo,
    generate_section_change,
    generate_three_section,
    generate_two_tempo,
    generate_with_jitter,
    generate_with_missed_beats,
)


class TestOnsetGenerators(unittest.TestCase):
    def test_perfect_tempo(self):
        self.assertEqual(generate_perfect_tempo(120, 4), [0.0, 500.0, 1000.0, 1500.0])
        self.assertEqual(generate_perfect_tempo(60, 2, start_time=250.0), [250.0, 1250.0])
        self.assertEqual(generate_perfect_tempo(120, 0), [])

    def test_invalid_bpm(self):
        with self.assertRaises(ValueError):
            generate_perfect_tempo(0, 4)

    def test_linear_drift_ends_at_end_tempo(self):
        onsets = generate_linear_drift(120, 130, 64)
        self.assertEqual(len(onsets), 64)
        self.assertEqual(onsets[0], 0.0)
        intervals = np.diff(onsets)
        self.assertTrue(np.all(np.diff(intervals) < 0))
        self.assertAlmostEqual(intervals[-1], 60000.0 / 130, places=6)

    def test_exponential_drift_accelerates_late(self):
        linear = np.diff(generate_linear_drift(100, 110, 64))
        expo = np.diff(generate_exponential_drift(100, 110, 64))
        self.assertAlmostEqual(expo[-1], linear[-1], places=6)
        # Quadratic ramp stays closer to the start tempo mid-song
        self.assertGreater(expo[31], linear[31])

    def test_ramp_short_sequences(self):
        self.assertEqual(generate_linear_drift(120, 130, 0), [])
        self.assertEqual(generate_linear_drift(120, 130, 1, start_time=10.0), [10.0])

    def test_jitter_is_seeded_and_bounded(self):
        a = generate_with_jitter(120, 40, 10, seed=1)
        b = generate_with_jitter(120, 40, 10, seed=1)
        c = generate_with_jitter(120, 40, 10, seed=2)
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)
        deviations = np.asarray(a) - np.asarray(generate_perfect_tempo(120, 40))
        self.assertTrue(np.all(np.abs(deviations) <= 10.0))

    def test_missed_beats(self):
        onsets = generate_with_missed_beats(100, 8, [3, 7])
        self.assertEqual(onsets, [0.0, 600.0, 1200.0, 2400.0, 3000.0, 3600.0])

    def test_section_change_continues_from_last_onset(self):
        onsets = generate_section_change(120, 4, 60, 2)
        self.assertEqual(onsets, [0.0, 500.0, 1000.0, 1500.0, 2500.0, 3500.0])

    def test_two_tempo_matches_section_change(self):
        self.assertEqual(generate_two_tempo(120, 8, 126, 32), generate_section_change(120, 8, 126, 32))

    def test_three_section(self):
        onsets = generate_three_section(120, 2, 60, 2, 120, 2)
        self.assertEqual(onsets, [0.0, 500.0, 1500.0, 2500.0, 3000.0, 3500.0])


class TestGenerateOnsets(unittest.TestCase):
    def test_dispatch(self):
        self.assertEqual(generate_onsets({"type": "perfect", "bpm": 120, "beats": 3}), [0.0, 500.0, 1000.0])
        self.assertEqual(
            generate_onsets({"type": "missed_beats", "bpm": 100, "beats": 4, "miss_indices": [1]}),
            [0.0, 1200.0, 1800.0],
        )
        self.assertEqual(
            generate_onsets({"type": "two_tempo", "calibration_bpm": 120, "calibration_beats": 2,
                             "play_bpm": 60, "play_beats": 1}),
            [0.0, 500.0, 1500.0],
        )
        self.assertEqual(
            generate_onsets({"type": "section_change", "section1_bpm": 60, "section1_beats": 1,
                             "section2_bpm": 120, "section2_beats": 2, "start_time": 100}),
            [100.0, 600.0, 1100.0],
        )

    def test_jitter_default_seed_is_stable(self):
        spec = {"type": "jitter", "bpm": 120, "beats": 16, "jitter_ms": 5}
        self.assertEqual(generate_onsets(spec), generate_onsets(spec))

    def test_unknown_type(self):
        with self.assertRaises(ValueError):
            generate_onsets({"type": "polka"})


if __name__ == "__main__":
    unittest.main()
