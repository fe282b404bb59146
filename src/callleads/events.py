"""Inbound call event parsing.

The native layer delivers one map per call-lifecycle signal:

    {"phoneNumber": "+15125551234", "outcome": "ringing", "direction": "inbound",
     "timestamp": 1739990000000, "durationInSeconds": 42}

Only ``outcome`` and ``direction`` are required.  ``durationInSeconds`` is only
present on events sourced from the device call log and is treated as the
authoritative duration for the call.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)


@dataclass
class CallEvent:
    outcome: str
    timestamp_ms: int
    direction: str
    duration_seconds: int | None = None
    phone_number: str | None = None

    @property
    def has_duration(self) -> bool:
        return self.duration_seconds is not None

    def copy(self) -> "CallEvent":
        return replace(self)


def _clean_str(value) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _is_int(value) -> bool:
    # bool is an int subclass; a JSON true is not a timestamp
    return isinstance(value, int) and not isinstance(value, bool)


def parse_event(raw, now_ms: int) -> CallEvent | None:
    """Validate one inbound event map.

    Returns None (and logs why) for anything that cannot be processed:
    non-mapping payloads and events missing outcome or direction.
    """
    if not isinstance(raw, Mapping):
        logger.warning("Dropping non-map call event: %r", raw)
        return None

    outcome = _clean_str(raw.get("outcome"))
    direction = _clean_str(raw.get("direction"))
    if outcome is None or direction is None:
        logger.warning("Ignoring invalid call event (missing outcome/direction): %r", dict(raw))
        return None

    timestamp = raw.get("timestamp")
    if not _is_int(timestamp):
        timestamp = now_ms

    duration = raw.get("durationInSeconds")
    if duration is not None and (not _is_int(duration) or duration < 0):
        logger.warning("Discarding invalid durationInSeconds=%r for %s event", duration, outcome)
        duration = None

    return CallEvent(
        outcome=outcome.lower(),
        timestamp_ms=timestamp,
        direction=direction.lower(),
        duration_seconds=duration,
        phone_number=_clean_str(raw.get("phoneNumber")),
    )
