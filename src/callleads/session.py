import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from callleads.events import CallEvent
from callleads.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_AUTO_FINALIZE_MS = 8000
DEFAULT_IDLE_EXPIRY_MS = 60_000


class Phase(Enum):
    OPEN = "open"
    FINALIZED = "finalized"
    CORRECTED = "corrected"  # finalized, authoritative correction already applied

    @property
    def is_finalized(self) -> bool:
        return self is not Phase.OPEN


TRANSITIONS = {
    Phase.OPEN: {Phase.FINALIZED},
    Phase.FINALIZED: {Phase.CORRECTED},
    Phase.CORRECTED: set(),
}


class IllegalTransition(Exception):
    pass


@dataclass(frozen=True)
class FinalCommit:
    """What was (or will be) written for the call when the session finalized."""

    phone: str | None
    direction: str
    outcome: str
    timestamp_ms: int
    duration_seconds: int | None = None


class SessionBuffer:
    """Mutable state for one call identity.

    Holds the raw event log plus the markers the engine dedupes against, and
    two independent timers: an idle-expiry safety net and the auto-finalize
    deadline.
    """

    def __init__(
        self,
        key: str,
        scheduler: Scheduler,
        *,
        auto_finalize_ms: int = DEFAULT_AUTO_FINALIZE_MS,
        idle_expiry_ms: int = DEFAULT_IDLE_EXPIRY_MS,
        on_expire: Callable[["SessionBuffer"], None] | None = None,
    ):
        self.key = key
        self.scheduler = scheduler
        self.auto_finalize_ms = auto_finalize_ms
        self.idle_expiry_ms = idle_expiry_ms
        self._on_expire = on_expire

        self.events: list[CallEvent] = []
        self.last_event_ts: int | None = None
        self.last_event_type: str | None = None

        # Last persisted intermediate outcome, to skip rapid repeat writes
        self.last_saved_outcome: str | None = None
        self.last_saved_ts: int | None = None

        self.phase = Phase.OPEN
        self.commit: FinalCommit | None = None
        self.disposed = False

        self._expiry_timer: TimerHandle | None = None
        self._auto_finalize_timer: TimerHandle | None = None

    def __repr__(self) -> str:
        return f"SessionBuffer(key={self.key!r}, phase={self.phase.value}, events={len(self.events)})"

    @property
    def finalized(self) -> bool:
        return self.phase.is_finalized

    @property
    def correction_applied(self) -> bool:
        return self.phase is Phase.CORRECTED

    @property
    def auto_finalize_pending(self) -> bool:
        return self._auto_finalize_timer is not None

    def _transition(self, new_phase: Phase):
        if new_phase not in TRANSITIONS[self.phase]:
            raise IllegalTransition(
                f"session {self.key}: {self.phase.value} -> {new_phase.value} not allowed"
            )
        self.phase = new_phase

    # --- Event log ---

    def add_event(self, event: CallEvent) -> bool:
        """Append an event. Returns False for an exact repeat of the last one."""
        if self.events:
            last = self.events[-1]
            if (
                last.outcome == event.outcome
                and last.timestamp_ms == event.timestamp_ms
                and last.duration_seconds == event.duration_seconds
            ):
                return False
        self.events.append(event)
        self.last_event_ts = event.timestamp_ms
        self.last_event_type = event.outcome
        self._reset_expiry()
        return True

    def update_last_event_with_duration(self, duration_seconds: int, timestamp_ms: int) -> None:
        if not self.events:
            return
        last = self.events[-1]
        last.duration_seconds = duration_seconds
        last.timestamp_ms = timestamp_ms
        self.last_event_ts = timestamp_ms

    def mark_saved(self, outcome: str, timestamp_ms: int) -> None:
        self.last_saved_outcome = outcome
        self.last_saved_ts = timestamp_ms

    def absorb(self, other: "SessionBuffer") -> None:
        """Replay another buffer's events into this one, in their original order."""
        for event in other.events:
            self.add_event(event)
        if self.last_saved_outcome is None and other.last_saved_outcome is not None:
            self.mark_saved(other.last_saved_outcome, other.last_saved_ts)

    # --- Lifecycle ---

    def mark_finalized(self, commit: FinalCommit) -> None:
        self._transition(Phase.FINALIZED)
        self.commit = commit
        self.cancel_auto_finalize()

    def mark_corrected(self) -> None:
        self._transition(Phase.CORRECTED)

    def schedule_auto_finalize(self, callback: Callable[[], None]) -> None:
        self.cancel_auto_finalize()
        if self.disposed:
            return

        def fire():
            self._auto_finalize_timer = None
            callback()

        self._auto_finalize_timer = self.scheduler.call_later(self.auto_finalize_ms, fire)

    def cancel_auto_finalize(self) -> None:
        if self._auto_finalize_timer is not None:
            self._auto_finalize_timer.cancel()
            self._auto_finalize_timer = None

    def _reset_expiry(self) -> None:
        if self._expiry_timer is not None:
            self._expiry_timer.cancel()
        if self.disposed:
            self._expiry_timer = None
            return
        self._expiry_timer = self.scheduler.call_later(self.idle_expiry_ms, self._expire)

    def _expire(self) -> None:
        self._expiry_timer = None
        logger.info("Session %s idle for %dms, expiring", self.key, self.idle_expiry_ms)
        self.dispose()
        if self._on_expire is not None:
            self._on_expire(self)

    def dispose(self) -> None:
        self.disposed = True
        if self._expiry_timer is not None:
            self._expiry_timer.cancel()
            self._expiry_timer = None
        self.cancel_auto_finalize()
