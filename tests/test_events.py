import logging

from callleads.events import parse_event

NOW = 1_700_000_000_000


def test_parses_full_event():
    event = parse_event(
        {
            "phoneNumber": " +15125551234 ",
            "outcome": "Ended",
            "direction": "INBOUND",
            "timestamp": NOW - 500,
            "durationInSeconds": 42,
        },
        NOW,
    )
    assert event.phone_number == "+15125551234"
    assert event.outcome == "ended"
    assert event.direction == "inbound"
    assert event.timestamp_ms == NOW - 500
    assert event.duration_seconds == 42
    assert event.has_duration


def test_missing_outcome_is_dropped(caplog):
    with caplog.at_level(logging.WARNING):
        assert parse_event({"direction": "inbound"}, NOW) is None
    assert "missing outcome/direction" in caplog.text


def test_missing_direction_is_dropped():
    assert parse_event({"outcome": "ringing", "phoneNumber": "+1"}, NOW) is None


def test_non_map_event_is_dropped(caplog):
    with caplog.at_level(logging.WARNING):
        assert parse_event(["ringing"], NOW) is None
        assert parse_event("ringing", NOW) is None
    assert "non-map" in caplog.text


def test_missing_timestamp_uses_now():
    event = parse_event({"outcome": "ringing", "direction": "inbound"}, NOW)
    assert event.timestamp_ms == NOW


def test_boolean_timestamp_is_not_a_timestamp():
    event = parse_event({"outcome": "ringing", "direction": "inbound", "timestamp": True}, NOW)
    assert event.timestamp_ms == NOW


def test_negative_duration_is_discarded(caplog):
    with caplog.at_level(logging.WARNING):
        event = parse_event(
            {"outcome": "ended", "direction": "inbound", "durationInSeconds": -3}, NOW
        )
    assert event is not None
    assert event.duration_seconds is None
    assert "durationInSeconds" in caplog.text


def test_empty_phone_is_unknown():
    event = parse_event({"outcome": "ringing", "direction": "inbound", "phoneNumber": "  "}, NOW)
    assert event.phone_number is None
