import threading
import time
import unittest

from beat_tracker import BeatTracker, TrackerState
from config import WatchdogConfig
from onset_generators import generate_perfect_tempo
from silence_watchdog import SilenceWatchdog
from trace_recorder import TraceEvent, TraceRecorder


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _tracking(clock, **kwargs):
    trace = TraceRecorder()
    tracker = BeatTracker(trace=trace, clock=clock, **kwargs)
    tracker.reset()
    for t in generate_perfect_tempo(120, 16):
        tracker.process_onset(t)
    return tracker, trace


class TestCheckSilence(unittest.TestCase):
    def test_silence_forces_waiting(self):
        clock = FakeClock()
        tracker, _ = _tracking(clock)
        last = tracker.get_snapshot().last_onset_time

        self.assertFalse(tracker.check_silence(last + 4000.0))
        self.assertIs(tracker.state, TrackerState.TRACKING)

        self.assertTrue(tracker.check_silence(last + 4001.0))
        snap = tracker.get_snapshot()
        self.assertIs(snap.state, TrackerState.WAITING)
        self.assertEqual(snap.confidence, 0.0)
        self.assertEqual(snap.period, 500.0)
        self.assertEqual(snap.grid_hits, 7)

    def test_waiting_emits_update(self):
        received = []
        clock = FakeClock()
        tracker, _ = _tracking(clock, on_update=received.append)
        received.clear()
        tracker.check_silence(20000.0)
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].state, "WAITING")
        self.assertEqual(received[0].confidence, 0)

    def test_silence_during_calibration(self):
        tracker = BeatTracker()
        tracker.reset()
        tracker.process_onset(1000.0)
        tracker.process_onset(1500.0)
        self.assertTrue(tracker.check_silence(6000.0))
        self.assertIs(tracker.state, TrackerState.WAITING)

    def test_never_fires_without_onsets(self):
        tracker = BeatTracker()
        self.assertFalse(tracker.check_silence(1e9))
        self.assertIs(tracker.state, TrackerState.IDLE)

        tracker.reset()
        self.assertFalse(tracker.check_silence(1e9))
        self.assertIs(tracker.state, TrackerState.CALIBRATING)

    def test_fires_once(self):
        tracker, _ = _tracking(FakeClock())
        self.assertTrue(tracker.check_silence(1e6))
        self.assertFalse(tracker.check_silence(2e6))

    def test_custom_timeout(self):
        tracker, _ = _tracking(FakeClock(), constants={"silence_timeout_ms": 1000.0})
        last = tracker.get_snapshot().last_onset_time
        self.assertTrue(tracker.check_silence(last + 1500.0))


class TestResumeFromWaiting(unittest.TestCase):
    def test_next_onset_restarts_calibration(self):
        tracker, trace = _tracking(FakeClock())
        tracker.check_silence(1e6)

        update = tracker.process_onset(20000.0)
        snap = tracker.get_snapshot()
        self.assertEqual(update.state, "CALIBRATING")
        self.assertEqual(update.beat_count, 1)
        self.assertIs(snap.state, TrackerState.CALIBRATING)
        self.assertEqual(snap.cal_onsets, (20000.0,))
        self.assertEqual(trace.get_last()[0].event, TraceEvent.RESUME_FROM_WAITING)

    def test_recalibrates_at_new_tempo(self):
        tracker, _ = _tracking(FakeClock())
        tracker.check_silence(1e6)

        updates = [tracker.process_onset(t) for t in generate_perfect_tempo(100, 9, start_time=20000.0)]
        self.assertEqual(updates[7].state, "CALIBRATING")
        self.assertEqual(updates[8].state, "TRACKING")
        self.assertEqual(updates[8].current_bpm, 100.0)
        self.assertEqual(updates[8].target_bpm, 100.0)
        self.assertEqual(updates[8].drift, 0.0)


class TestSilenceWatchdog(unittest.TestCase):
    def test_invalid_interval(self):
        with self.assertRaises(ValueError):
            SilenceWatchdog(BeatTracker(), poll_interval_ms=0)

    def test_tick_uses_clock(self):
        clock = FakeClock()
        tracker, _ = _tracking(clock)
        watchdog = SilenceWatchdog(tracker, clock=clock)

        clock.now = tracker.get_snapshot().last_onset_time + 100.0
        self.assertFalse(watchdog.tick())
        clock.now += 5000.0
        self.assertTrue(watchdog.tick())
        self.assertEqual(watchdog.fired_count, 1)
        self.assertIs(tracker.state, TrackerState.WAITING)

    def test_stop_without_start_is_noop(self):
        watchdog = SilenceWatchdog(BeatTracker())
        watchdog.stop()
        self.assertFalse(watchdog.running)

    def test_background_thread_fires(self):
        clock = FakeClock()
        tracker, _ = _tracking(clock)
        fired = threading.Event()
        tracker.add_listener(lambda u: fired.set() if u.state == "WAITING" else None)

        watchdog = SilenceWatchdog(tracker, poll_interval_ms=10.0, clock=clock)
        watchdog.start()
        try:
            self.assertTrue(watchdog.running)
            clock.now = 1e6
            self.assertTrue(fired.wait(2.0))
        finally:
            watchdog.stop()
        self.assertFalse(watchdog.running)
        self.assertIs(tracker.state, TrackerState.WAITING)

    def test_restart_replaces_thread(self):
        watchdog = SilenceWatchdog(BeatTracker(), poll_interval_ms=10.0, clock=FakeClock())
        watchdog.start()
        first = watchdog._thread
        watchdog.start()
        second = watchdog._thread
        try:
            self.assertIsNot(first, second)
            self.assertFalse(first.is_alive())
            self.assertTrue(watchdog.running)
        finally:
            watchdog.stop()


class TestTrackerWatchdogLifecycle(unittest.TestCase):
    def test_start_and_stop_are_idempotent(self):
        tracker = BeatTracker(clock=FakeClock(), watchdog_config=WatchdogConfig(poll_interval_ms=10.0))
        tracker.start_watchdog()
        tracker.start_watchdog()
        self.assertTrue(tracker.watchdog_running)
        tracker.stop_watchdog()
        tracker.stop_watchdog()
        self.assertFalse(tracker.watchdog_running)

    def test_stop_leaves_state(self):
        clock = FakeClock()
        tracker, _ = _tracking(clock, watchdog_config=WatchdogConfig(poll_interval_ms=10.0))
        tracker.start_watchdog()
        tracker.stop_watchdog()
        clock.now = 1e6
        time.sleep(0.05)
        self.assertIs(tracker.state, TrackerState.TRACKING)
        self.assertEqual(tracker.get_snapshot().grid_hits, 7)

    def test_start_auto_starts_watchdog(self):
        tracker = BeatTracker(clock=FakeClock(),
                              watchdog_config=WatchdogConfig(poll_interval_ms=10.0, auto_start=True))
        try:
            update = tracker.start()
            self.assertEqual(update.state, "CALIBRATING")
            self.assertTrue(tracker.watchdog_running)
        finally:
            tracker.destroy()
        self.assertFalse(tracker.watchdog_running)

    def test_start_without_auto_start(self):
        tracker = BeatTracker(clock=FakeClock())
        tracker.start()
        self.assertFalse(tracker.watchdog_running)

    def test_destroyed_tracker_refuses_watchdog(self):
        tracker = BeatTracker(clock=FakeClock())
        tracker.destroy()
        with self.assertRaises(RuntimeError):
            tracker.start_watchdog()

    def test_listener_can_stop_watchdog_during_onset(self):
        tracker = BeatTracker(clock=FakeClock(), watchdog_config=WatchdogConfig(poll_interval_ms=5.0))
        tracker.reset()

        def stop_from_listener(update):
            time.sleep(0.05)   # Worker polls check_silence several times meanwhile
            tracker.stop_watchdog()

        tracker.add_listener(stop_from_listener)
        tracker.start_watchdog()
        done = threading.Event()

        def feed():
            tracker.process_onset(1000.0)
            done.set()

        threading.Thread(target=feed, daemon=True).start()
        self.assertTrue(done.wait(2.0))
        self.assertFalse(tracker.watchdog_running)

    def test_listener_can_destroy_during_set_target(self):
        tracker = BeatTracker(clock=FakeClock(), watchdog_config=WatchdogConfig(poll_interval_ms=5.0))
        tracker.reset()
        tracker.process_onset(1000.0)

        def destroy_from_listener(update):
            time.sleep(0.05)
            tracker.destroy()

        tracker.add_listener(destroy_from_listener)
        tracker.start_watchdog()
        done = threading.Event()

        def retarget():
            tracker.set_target(120.0, now_ms=1000.0)
            done.set()

        threading.Thread(target=retarget, daemon=True).start()
        self.assertTrue(done.wait(2.0))
        self.assertFalse(tracker.watchdog_running)
        self.assertIs(tracker.state, TrackerState.TRACKING)

    def test_listener_on_worker_thread_can_stop_watchdog(self):
        clock = FakeClock()
        tracker, _ = _tracking(clock, watchdog_config=WatchdogConfig(poll_interval_ms=5.0))
        stopped = threading.Event()

        def stop_on_waiting(update):
            if update.state == "WAITING":
                tracker.stop_watchdog()
                stopped.set()

        tracker.add_listener(stop_on_waiting)
        tracker.start_watchdog()
        clock.now = 20000.0
        self.assertTrue(stopped.wait(2.0))
        self.assertFalse(tracker.watchdog_running)
        self.assertIs(tracker.state, TrackerState.WAITING)

    def test_concurrent_starts_leave_one_worker(self):
        tracker = BeatTracker(clock=FakeClock(), watchdog_config=WatchdogConfig(poll_interval_ms=5.0))
        before = {t for t in threading.enumerate() if t.name == "SilenceWatchdog"}
        barrier = threading.Barrier(4)

        def start():
            barrier.wait()
            tracker.start_watchdog()

        starters = [threading.Thread(target=start, daemon=True) for _ in range(4)]
        for starter in starters:
            starter.start()
        for starter in starters:
            starter.join(2.0)

        def new_workers():
            return [t for t in threading.enumerate()
                    if t.name == "SilenceWatchdog" and t not in before and t.is_alive()]

        self.assertEqual(len(new_workers()), 1)
        tracker.stop_watchdog()
        self.assertEqual(new_workers(), [])


if __name__ == "__main__":
    unittest.main()
