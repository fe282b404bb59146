"""Collapse a session's raw event log into its canonical timeline.

Native layers re-deliver the same signal, deliver it late, or follow a live
signal with a call-log copy that carries the real duration.  consolidate()
reduces that noise to one entry per distinct step of the call; the engine
reads the commit values (duration, timestamp, direction) off the result.
"""

from callleads.events import CallEvent

# Same-type events closer than this are one signal, not two attempts
DEFAULT_GAP_MS = 50


def _sort_key(event: CallEvent):
    # Tie-breakers keep the result independent of arrival order; the
    # duration-less copy sorts first so the richer one replaces it.
    return (
        event.timestamp_ms,
        event.outcome,
        event.duration_seconds is not None,
        event.duration_seconds or 0,
        event.direction,
        event.phone_number or "",
    )


def consolidate(events: list[CallEvent], gap_ms: int = DEFAULT_GAP_MS) -> list[CallEvent]:
    """Sorted, de-duplicated copy of events. The input list is not modified."""
    out: list[CallEvent] = []
    for event in sorted(events, key=_sort_key):
        if not out:
            out.append(event.copy())
            continue
        last = out[-1]
        if last.outcome != event.outcome:
            out.append(event.copy())
        elif last.duration_seconds is None and event.duration_seconds is not None:
            out[-1] = event.copy()
        elif event.timestamp_ms > last.timestamp_ms + gap_ms:
            out.append(event.copy())
        # else: near-duplicate, dropped
    return out


def latest_duration(timeline: list[CallEvent]) -> CallEvent | None:
    """Most recent entry that carries a duration."""
    for event in reversed(timeline):
        if event.duration_seconds is not None:
            return event
    return None


def pick_final_values(
    timeline: list[CallEvent],
    timestamp_ms: int,
    explicit_duration: int | None = None,
) -> tuple[int | None, int]:
    """Choose (duration, timestamp) for a terminal commit.

    An explicit duration on the terminal event itself wins, stamped with that
    event's time.  Otherwise the latest duration-bearing entry is used, and
    failing that the last entry's timestamp with no duration.
    """
    if explicit_duration is not None:
        return explicit_duration, timestamp_ms
    carrier = latest_duration(timeline)
    if carrier is not None:
        return carrier.duration_seconds, carrier.timestamp_ms
    if timeline:
        return None, timeline[-1].timestamp_ms
    return None, timestamp_ms
