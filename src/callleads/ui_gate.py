import asyncio
import logging
from enum import Enum
from typing import Protocol

from callleads.background import BackgroundTasks
from callleads.models import Lead
from callleads.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_RETRY_MS = 300
DEFAULT_SETTLE_MS = 250


class DisplaySurface(Protocol):
    """Where the call screen is shown.

    open_lead() shows the full-screen lead editor and returns once the user
    dismisses it.
    """

    def is_ready(self) -> bool: ...

    async def open_lead(self, lead: Lead) -> None: ...


class GateResult(Enum):
    OPENED = "opened"
    BUSY = "busy"
    DEFERRED = "deferred"


class UIOpenGate:
    """Single-flight guard for the auto-opened call screen.

    Only one screen may be up at a time.  If the surface is not attached yet
    the request is retried after a short delay.  After the screen closes the
    latch stays held for a settle period so a near-simultaneous second signal
    for the same call does not reopen it.
    """

    def __init__(
        self,
        surface: DisplaySurface,
        scheduler: Scheduler,
        tasks: BackgroundTasks,
        *,
        retry_delay_ms: int = DEFAULT_RETRY_MS,
        settle_delay_ms: int = DEFAULT_SETTLE_MS,
    ):
        self.surface = surface
        self.scheduler = scheduler
        self.tasks = tasks
        self.retry_delay_ms = retry_delay_ms
        self.settle_delay_ms = settle_delay_ms
        self._open = False
        # one pending retry; a newer deferred lead replaces an older one
        self._retry_handle: TimerHandle | None = None

    @property
    def is_open(self) -> bool:
        return self._open

    def request_open(self, lead: Lead) -> GateResult:
        if self._open:
            logger.warning("Call screen already open, skipping lead %s", lead.id)
            return GateResult.BUSY

        if not self.surface.is_ready():
            logger.warning("Display surface not ready, retrying lead %s in %dms", lead.id, self.retry_delay_ms)
            self.cancel_retry()
            self._retry_handle = self.scheduler.call_later(self.retry_delay_ms, lambda: self._retry(lead))
            return GateResult.DEFERRED

        self.cancel_retry()
        self._open = True
        logger.info("Opening call screen for %s (leadId=%s)", lead.phone_number, lead.id)
        self.tasks.spawn(self._show(lead), label=f"open lead {lead.id}")
        return GateResult.OPENED

    def _retry(self, lead: Lead) -> None:
        self._retry_handle = None
        self.request_open(lead)

    async def _show(self, lead: Lead) -> None:
        try:
            await self.surface.open_lead(lead)
        except asyncio.CancelledError:
            self._release_later()
            raise
        except Exception as e:
            logger.error("Call screen for lead %s failed: %s", lead.id, e)
        self._release_later()

    def _release_later(self) -> None:
        self.scheduler.call_later(self.settle_delay_ms, self._release)

    def _release(self) -> None:
        self._open = False

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
