"""
Tests for the dispatcher state machine and firing.

All timing runs on ManualTimers, so minutes pass instantly.
"""

import pytest
from datetime import datetime, timedelta

from tagnotify.dispatcher import Dispatcher, DispatcherState
from tagnotify.scheduler import OccurrenceStore

from test_store import make_occurrence

START = datetime(2025, 1, 1, 12, 0)


@pytest.fixture
def store():
    return OccurrenceStore()


@pytest.fixture
def dispatcher(store, recorder, manual_timers):
    return Dispatcher(store, recorder, manual_timers, interval=30, clock=manual_timers.clock)


@pytest.mark.unit
class TestStates:
    def test_lifecycle(self, dispatcher, manual_timers):
        assert dispatcher.state == DispatcherState.IDLE
        dispatcher.start()
        assert dispatcher.state == DispatcherState.RUNNING
        assert manual_timers.pending == 1
        dispatcher.pause()
        assert dispatcher.state == DispatcherState.PAUSED
        dispatcher.resume()
        assert dispatcher.state == DispatcherState.RUNNING
        dispatcher.stop()
        assert dispatcher.state == DispatcherState.STOPPED
        assert manual_timers.pending == 0

    def test_start_twice_keeps_one_timer(self, dispatcher, manual_timers):
        dispatcher.start()
        dispatcher.start()
        assert manual_timers.pending == 1

    def test_stop_is_terminal(self, dispatcher, store, recorder, manual_timers):
        dispatcher.start()
        dispatcher.stop()
        store.replace_all([make_occurrence("late", 1)])
        dispatcher.start()
        manual_timers.advance(300)
        assert dispatcher.state == DispatcherState.STOPPED
        assert recorder.calls == []


@pytest.mark.unit
class TestFiring:
    def test_start_fires_overdue_immediately(self, dispatcher, store, recorder):
        store.replace_all([make_occurrence("overdue", -5), make_occurrence("later", 5)])
        dispatcher.start()
        assert recorder.messages == ["overdue is due"]
        assert store.get("overdue").fired

    def test_fires_within_one_interval(self, dispatcher, store, recorder, manual_timers):
        store.replace_all([make_occurrence("soon", 1)])
        dispatcher.start()
        manual_timers.advance(45)
        assert recorder.messages == []
        manual_timers.advance(30)
        assert recorder.messages == ["soon is due"]

    def test_exactly_once(self, dispatcher, store, recorder, manual_timers):
        store.replace_all([make_occurrence("a", 1), make_occurrence("b", 2)])
        dispatcher.start()
        manual_timers.advance(600)
        assert sorted(recorder.messages) == ["a is due", "b is due"]

    def test_every_channel_delivered(self, dispatcher, store, recorder):
        occ = make_occurrence("a", -1)
        occ.channels = ["in-app", "system"]
        store.replace_all([occ])
        dispatcher.check_due(START)
        assert [c for c, _ in recorder.calls] == ["in-app", "system"]

    def test_channel_failure_isolated(self, dispatcher, store, recorder):
        occ = make_occurrence("a", -1)
        occ.channels = ["system", "in-app"]
        store.replace_all([occ, make_occurrence("b", -1)])
        recorder.fail("system")

        assert dispatcher.check_due(START) == 2
        assert [c for c, _ in recorder.calls] == ["in-app", "in-app"]
        assert store.get("a").fired and store.get("b").fired

    def test_unexpected_error_isolated(self, dispatcher, store, recorder):
        occ = make_occurrence("a", -1)
        occ.channels = ["in-app", "system"]
        store.replace_all([occ])
        recorder.fail("in-app", RuntimeError("boom"))

        assert dispatcher.fire(occ) == ["system"]

    def test_fire_now(self, dispatcher, store, recorder):
        store.replace_all([make_occurrence("future", 120)])
        fired = dispatcher.fire_now("future")
        assert fired.id == "future" and fired.fired
        assert recorder.messages == ["future is due"]

    def test_fire_now_unknown(self, dispatcher):
        with pytest.raises(KeyError):
            dispatcher.fire_now("missing")


@pytest.mark.unit
class TestPause:
    def test_due_during_pause_fires_once_on_resume(
        self, dispatcher, store, recorder, manual_timers
    ):
        store.replace_all([make_occurrence("meeting", 2)])
        dispatcher.start()
        dispatcher.pause()

        manual_timers.advance(10 * 60)
        assert recorder.calls == []

        dispatcher.resume()
        assert recorder.messages == ["meeting is due"]

        manual_timers.advance(10 * 60)
        assert recorder.messages == ["meeting is due"]

    def test_start_paused_skips_first_check(self, store, recorder, manual_timers):
        store.replace_all([make_occurrence("overdue", -5)])
        dispatcher = Dispatcher(
            store, recorder, manual_timers, clock=manual_timers.clock, paused=True
        )
        dispatcher.start()
        assert dispatcher.state == DispatcherState.PAUSED
        assert recorder.calls == []
        dispatcher.resume()
        assert recorder.messages == ["overdue is due"]

    def test_resume_before_start_does_not_fire(self, dispatcher, store, recorder):
        store.replace_all([make_occurrence("overdue", -5)])
        dispatcher.pause()
        dispatcher.resume()
        assert recorder.calls == []

    def test_clock_follows_timers(self, manual_timers):
        manual_timers.advance(90)
        assert manual_timers.clock() == START + timedelta(seconds=90)
