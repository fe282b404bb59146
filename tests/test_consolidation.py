import itertools

from callleads.consolidation import consolidate, latest_duration, pick_final_values
from callleads.events import CallEvent


def _event(outcome, ts, duration=None):
    return CallEvent(outcome=outcome, timestamp_ms=ts, direction="inbound",
                     duration_seconds=duration, phone_number="+15125551234")


def _shape(timeline):
    return [(e.outcome, e.timestamp_ms, e.duration_seconds) for e in timeline]


def test_empty_input():
    assert consolidate([]) == []


def test_sorts_by_timestamp():
    timeline = consolidate([_event("ended", 3000), _event("ringing", 0), _event("answered", 1000)])
    assert [e.outcome for e in timeline] == ["ringing", "answered", "ended"]


def test_near_duplicates_collapse():
    timeline = consolidate([_event("ringing", 0), _event("ringing", 30)])
    assert _shape(timeline) == [("ringing", 0, None)]


def test_same_type_past_gap_is_kept():
    timeline = consolidate([_event("ringing", 0), _event("ringing", 51)])
    assert len(timeline) == 2


def test_duration_copy_replaces_bare_event():
    timeline = consolidate([_event("ended", 5000), _event("ended", 5200, duration=42)])
    assert _shape(timeline) == [("ended", 5200, 42)]


def test_result_does_not_depend_on_arrival_order():
    events = [
        _event("ringing", 0),
        _event("answered", 1000),
        _event("ended", 5000),
        _event("ended", 5000, duration=42),
        _event("ended", 5020),
    ]
    expected = _shape(consolidate(events))
    for perm in itertools.permutations(events):
        assert _shape(consolidate(list(perm))) == expected


def test_input_is_not_modified():
    events = [_event("ended", 10), _event("ringing", 0)]
    timeline = consolidate(events)
    timeline[0].outcome = "changed"
    assert [e.outcome for e in events] == ["ended", "ringing"]


def test_latest_duration():
    timeline = [_event("answered", 0, duration=3), _event("ended", 10, duration=7), _event("x", 20)]
    assert latest_duration(timeline).duration_seconds == 7
    assert latest_duration([_event("ended", 0)]) is None


class TestPickFinalValues:
    def test_explicit_duration_wins(self):
        timeline = [_event("ended", 100, duration=5)]
        assert pick_final_values(timeline, 900, explicit_duration=42) == (42, 900)

    def test_latest_duration_carrier(self):
        timeline = [_event("answered", 100), _event("ended", 500, duration=12)]
        assert pick_final_values(timeline, 900) == (12, 500)

    def test_no_duration_uses_last_entry_time(self):
        timeline = [_event("ringing", 0), _event("ended", 5000)]
        assert pick_final_values(timeline, 9999) == (None, 5000)

    def test_empty_timeline(self):
        assert pick_final_values([], 1234) == (None, 1234)
