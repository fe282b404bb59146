import logging

from callleads.scheduler import Scheduler
from callleads.session import (
    DEFAULT_AUTO_FINALIZE_MS,
    DEFAULT_IDLE_EXPIRY_MS,
    SessionBuffer,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTLED_RETENTION_MS = 60_000


class SessionRegistry:
    """Call identity -> live SessionBuffer, at most one per identity.

    Finalized buffers that leave the registry are kept for a while as
    *settled* sessions so late duplicates and call-log durations can still be
    reconciled against what was committed.

    The registry is only touched from the event loop thread and never awaits
    between lookup and insert, so find_or_create is atomic.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        auto_finalize_ms: int = DEFAULT_AUTO_FINALIZE_MS,
        idle_expiry_ms: int = DEFAULT_IDLE_EXPIRY_MS,
        settled_retention_ms: int = DEFAULT_SETTLED_RETENTION_MS,
    ):
        self.scheduler = scheduler
        self.auto_finalize_ms = auto_finalize_ms
        self.idle_expiry_ms = idle_expiry_ms
        self.settled_retention_ms = settled_retention_ms
        self._sessions: dict[str, SessionBuffer] = {}
        self._settled: dict[str, tuple[int, SessionBuffer]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def keys(self) -> list[str]:
        return list(self._sessions)

    def get(self, key: str) -> SessionBuffer | None:
        return self._sessions.get(key)

    def find_or_create(self, key: str) -> SessionBuffer:
        buf = self._sessions.get(key)
        if buf is not None:
            return buf
        buf = SessionBuffer(
            key,
            self.scheduler,
            auto_finalize_ms=self.auto_finalize_ms,
            idle_expiry_ms=self.idle_expiry_ms,
            on_expire=self._expired,
        )
        self._sessions[key] = buf
        # a new call supersedes whatever settled before it
        self._settled.pop(key, None)
        logger.info("Session created for %s", key)
        return buf

    def migrate(self, old_key: str, new_key: str) -> SessionBuffer | None:
        """Move old_key's events into new_key's buffer. No-op if old_key is absent."""
        old = self._sessions.pop(old_key, None)
        if old is None:
            return None
        target = self.find_or_create(new_key)
        target.absorb(old)
        old.dispose()
        logger.info("Migrated session %s -> %s (%d events)", old_key, new_key, len(old.events))
        return target

    def remove(self, key: str) -> SessionBuffer | None:
        buf = self._sessions.pop(key, None)
        if buf is None:
            return None
        buf.dispose()
        if buf.finalized:
            self._settled[key] = (self.scheduler.now_ms(), buf)
            self.scheduler.call_later(self.settled_retention_ms, lambda: self._forget_settled(key, buf))
        return buf

    def discard(self, buf: SessionBuffer) -> bool:
        """Remove buf only if it is still the live buffer for its key."""
        if self._sessions.get(buf.key) is not buf:
            return False
        self.remove(buf.key)
        return True

    def settled(self, key: str) -> SessionBuffer | None:
        entry = self._settled.get(key)
        if entry is None:
            return None
        settled_at, buf = entry
        if self.scheduler.now_ms() - settled_at > self.settled_retention_ms:
            del self._settled[key]
            return None
        return buf

    def _forget_settled(self, key: str, buf: SessionBuffer) -> None:
        entry = self._settled.get(key)
        if entry is not None and entry[1] is buf:
            del self._settled[key]

    @property
    def settled_count(self) -> int:
        return len(self._settled)

    def clear(self) -> None:
        for buf in self._sessions.values():
            buf.dispose()
        self._sessions.clear()
        self._settled.clear()

    def _expired(self, buf: SessionBuffer) -> None:
        if self._sessions.get(buf.key) is not buf:
            return
        if not buf.finalized:
            logger.warning(
                "Session %s expired before finalizing, dropping %d events",
                buf.key,
                len(buf.events),
            )
        self.remove(buf.key)
