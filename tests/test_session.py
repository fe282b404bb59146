import pytest

from callleads.events import CallEvent
from callleads.scheduler import ManualScheduler
from callleads.session import FinalCommit, IllegalTransition, Phase, SessionBuffer

PHONE = "+15125551234"


def _event(outcome, ts, duration=None):
    return CallEvent(outcome=outcome, timestamp_ms=ts, direction="inbound",
                     duration_seconds=duration, phone_number=PHONE)


def _commit(ts=0):
    return FinalCommit(phone=PHONE, direction="inbound", outcome="ended", timestamp_ms=ts)


@pytest.fixture
def sched():
    return ManualScheduler(start_ms=0)


@pytest.fixture
def expired():
    return []


@pytest.fixture
def buf(sched, expired):
    return SessionBuffer(PHONE, sched, auto_finalize_ms=8000, idle_expiry_ms=60_000,
                         on_expire=expired.append)


class TestEventLog:
    def test_add_event_tracks_last_event(self, buf):
        assert buf.add_event(_event("ringing", 0))
        assert buf.add_event(_event("answered", 2000))
        assert buf.last_event_type == "answered"
        assert buf.last_event_ts == 2000
        assert [e.outcome for e in buf.events] == ["ringing", "answered"]

    def test_exact_repeat_is_rejected(self, buf):
        buf.add_event(_event("ringing", 0))
        assert not buf.add_event(_event("ringing", 0))
        assert len(buf.events) == 1

    def test_same_type_different_duration_is_kept(self, buf):
        buf.add_event(_event("ended", 0))
        assert buf.add_event(_event("ended", 0, duration=12))

    def test_update_last_event_with_duration(self, buf):
        buf.add_event(_event("ended", 100))
        buf.update_last_event_with_duration(42, 300)
        assert buf.events[-1].duration_seconds == 42
        assert buf.events[-1].timestamp_ms == 300
        assert buf.last_event_ts == 300

    def test_update_on_empty_buffer_is_noop(self, buf):
        buf.update_last_event_with_duration(42, 300)
        assert buf.events == []

    def test_absorb_replays_in_order_and_carries_saved_marker(self, sched, buf):
        other = SessionBuffer("__no_number__", sched)
        other.add_event(_event("ringing", 0))
        other.add_event(_event("answered", 1000))
        other.mark_saved("answered", 1000)

        buf.absorb(other)
        assert [e.outcome for e in buf.events] == ["ringing", "answered"]
        assert buf.last_saved_outcome == "answered"
        assert buf.last_saved_ts == 1000


class TestLifecycle:
    def test_open_finalized_corrected(self, buf):
        assert buf.phase is Phase.OPEN
        buf.mark_finalized(_commit())
        assert buf.finalized
        assert not buf.correction_applied
        buf.mark_corrected()
        assert buf.correction_applied

    def test_cannot_finalize_twice(self, buf):
        buf.mark_finalized(_commit())
        with pytest.raises(IllegalTransition):
            buf.mark_finalized(_commit())

    def test_cannot_correct_open_session(self, buf):
        with pytest.raises(IllegalTransition):
            buf.mark_corrected()

    def test_cannot_correct_twice(self, buf):
        buf.mark_finalized(_commit())
        buf.mark_corrected()
        with pytest.raises(IllegalTransition):
            buf.mark_corrected()


class TestTimers:
    def test_auto_finalize_fires_once(self, sched, buf):
        fired = []
        buf.schedule_auto_finalize(lambda: fired.append(sched.now_ms()))
        assert buf.auto_finalize_pending
        sched.advance(20_000)
        assert fired == [8000]
        assert not buf.auto_finalize_pending

    def test_rescheduling_replaces_deadline(self, sched, buf):
        fired = []
        buf.schedule_auto_finalize(lambda: fired.append(sched.now_ms()))
        sched.advance(5000)
        buf.schedule_auto_finalize(lambda: fired.append(sched.now_ms()))
        sched.advance(20_000)
        assert fired == [13_000]

    def test_finalizing_cancels_auto_finalize(self, sched, buf):
        fired = []
        buf.schedule_auto_finalize(lambda: fired.append(1))
        buf.mark_finalized(_commit())
        sched.advance(20_000)
        assert fired == []

    def test_idle_expiry_resets_on_each_event(self, sched, buf, expired):
        buf.add_event(_event("ringing", 0))
        sched.advance(50_000)
        buf.add_event(_event("answered", 50_000))
        sched.advance(50_000)
        assert expired == []
        sched.advance(10_000)
        assert expired == [buf]
        assert buf.disposed

    def test_disposed_buffer_schedules_nothing(self, sched, buf):
        buf.dispose()
        buf.schedule_auto_finalize(lambda: None)
        assert not buf.auto_finalize_pending
        assert sched.pending == 0

    def test_dispose_is_idempotent(self, sched, buf):
        buf.add_event(_event("ringing", 0))
        buf.schedule_auto_finalize(lambda: None)
        buf.dispose()
        buf.dispose()
        assert sched.pending == 0
