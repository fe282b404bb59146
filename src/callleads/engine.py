import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from callleads.background import BackgroundTasks
from callleads.config import EngineConfig
from callleads.consolidation import consolidate, latest_duration, pick_final_values
from callleads.events import CallEvent, parse_event
from callleads.lead_store import LeadStore
from callleads.models import Lead
from callleads.outcomes import (
    UI_TRIGGER_OUTCOMES,
    UNKNOWN_IDENTITY,
    classify,
    identity_for,
    is_real_identity,
)
from callleads.registry import SessionRegistry
from callleads.scheduler import AsyncioScheduler, Scheduler
from callleads.session import FinalCommit, SessionBuffer
from callleads.ui_gate import GateResult, UIOpenGate

logger = logging.getLogger(__name__)


class EventStatus(Enum):
    DROPPED = "dropped"
    DEDUPLICATED = "deduplicated"
    INTERMEDIATE = "intermediate"
    FINALIZED = "finalized"
    CORRECTED = "corrected"
    IGNORED = "ignored"


class CommitStatus(Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CommitResult:
    kind: str  # call_event | final | correction
    phone: str | None
    outcome: str
    timestamp_ms: int
    duration_seconds: int | None
    status: CommitStatus
    lead_id: str | None = None
    error: str = ""


class ReconciliationEngine:
    """Turns the native call-event stream into one committed record per call.

    submit() handles one inbound event to completion without awaiting:
    session bookkeeping happens inline, storage writes and UI opens are
    spawned as background tasks.  Each write carries the phone and timestamp
    chosen when it was spawned, so it stays correct even after the session
    has been finalized, migrated or removed.

    Per event:
    1. Validate; drop events without outcome/direction
    2. Migrate an open unknown-number session once a real number shows up
    3. Find or create the session (or reconcile against a settled one)
    4. Same outcome within the dedupe window: patch duration, maybe correct, stop
    5. Append; a call-log duration finalizes (or corrects) immediately
    6. Otherwise intermediate -> write + UI + rearm timeout, terminal -> finalize
    """

    def __init__(
        self,
        store: LeadStore,
        *,
        gate: UIOpenGate | None = None,
        scheduler: Scheduler | None = None,
        tasks: BackgroundTasks | None = None,
        config: EngineConfig | None = None,
        registry: SessionRegistry | None = None,
    ):
        self.store = store
        self.gate = gate
        self.config = config or EngineConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self.tasks = tasks if tasks is not None else BackgroundTasks()
        self.registry = registry if registry is not None else SessionRegistry(
            self.scheduler,
            auto_finalize_ms=self.config.auto_finalize_ms,
            idle_expiry_ms=self.config.idle_expiry_ms,
            settled_retention_ms=self.config.settled_retention_ms,
        )
        # Phone whose call currently owns the auto-opened screen
        self._ui_phone: str | None = None

    @property
    def ui_phone(self) -> str | None:
        return self._ui_phone

    # --- Inbound ---

    def submit(self, raw) -> EventStatus:
        logger.debug("Raw call event: %r", raw)
        event = parse_event(raw, self.scheduler.now_ms())
        if event is None:
            return EventStatus.DROPPED
        try:
            return self._process(event)
        except Exception as e:
            logger.error("Call event processing failed for %r: %s", raw, e)
            return EventStatus.DROPPED

    async def run(self, source) -> int:
        """Consume an async iterable of raw events until it ends."""
        count = 0
        try:
            async for raw in source:
                self.submit(raw)
                count += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Call event stream error: %s", e)
        logger.info("Call event stream done after %d events", count)
        return count

    async def close(self) -> list:
        """Dispose all sessions and wait for outstanding writes."""
        self.registry.clear()
        if self.gate is not None:
            self.gate.cancel_retry()
        return await self.tasks.drain()

    async def open_lead_by_phone(self, phone: str) -> GateResult | None:
        """Native request to show a lead, outside of any call session."""
        phone = (phone or "").strip()
        if not phone:
            logger.warning("open_lead_by_phone called with empty phone")
            return None
        try:
            lead = await self.store.find_or_create_lead(phone)
        except Exception as e:
            logger.error("find_or_create_lead failed for %s: %s", phone, e)
            return None
        if lead is None:
            return None
        return self._open_ui(lead)

    # --- Routing ---

    def _process(self, event: CallEvent) -> EventStatus:
        phone = event.phone_number
        migrated = self._adopt_unknown_session(phone) if phone else False

        key = identity_for(phone)
        buf = self.registry.get(key)

        if buf is None:
            settled = self.registry.settled(key)
            if settled is not None and (event.has_duration or self._is_duplicate(settled, event)):
                return self._reconcile_settled(settled, event)
            buf = self.registry.find_or_create(key)

        if self._is_duplicate(buf, event):
            if migrated and self._first_numbered_signal(buf, event):
                # the unknown-number copy was never persisted
                return self._handle_intermediate(buf, event)
            return self._handle_duplicate(buf, event)

        if buf.finalized and not event.has_duration:
            if classify(event.outcome).is_terminal:
                logger.info("Late %s for finalized session %s ignored", event.outcome, key)
                return EventStatus.IGNORED
            # a new call on this number while the previous one settles
            self.registry.remove(key)
            buf = self.registry.find_or_create(key)

        buf.add_event(event)

        if event.has_duration:
            if buf.finalized:
                return self._apply_correction(buf, event)
            return self._finalize_from_call_log(buf, event)

        if classify(event.outcome).is_terminal:
            return self._handle_terminal(buf, event)
        return self._handle_intermediate(buf, event)

    def _is_duplicate(self, buf: SessionBuffer, event: CallEvent) -> bool:
        return (
            buf.last_event_type == event.outcome
            and abs(event.timestamp_ms - (buf.last_event_ts or 0)) < self.config.dedupe_window_ms
        )

    def _adopt_unknown_session(self, phone: str) -> bool:
        unknown = self.registry.get(UNKNOWN_IDENTITY)
        if unknown is None or unknown.finalized:
            return False
        existing = self.registry.get(phone)
        if existing is not None and existing.finalized:
            self.registry.remove(phone)
        rearm = unknown.auto_finalize_pending
        target = self.registry.migrate(UNKNOWN_IDENTITY, phone)
        if rearm and target is not None and not target.finalized:
            self._arm_auto_finalize(target)
        return target is not None

    def _first_numbered_signal(self, buf: SessionBuffer, event: CallEvent) -> bool:
        return (
            not event.has_duration
            and not buf.finalized
            and not classify(event.outcome).is_terminal
            and buf.last_saved_outcome != event.outcome
        )

    def _reconcile_settled(self, settled: SessionBuffer, event: CallEvent) -> EventStatus:
        if self._is_duplicate(settled, event):
            return self._handle_duplicate(settled, event)
        return self._apply_correction(settled, event)

    def _handle_duplicate(self, buf: SessionBuffer, event: CallEvent) -> EventStatus:
        logger.warning("Deduplicated %s event for %s", event.outcome, buf.key)
        if not event.has_duration:
            return EventStatus.DEDUPLICATED
        buf.update_last_event_with_duration(event.duration_seconds, event.timestamp_ms)
        if buf.finalized and self._apply_correction(buf, event) is EventStatus.CORRECTED:
            return EventStatus.CORRECTED
        return EventStatus.DEDUPLICATED

    # --- Intermediate ---

    def _handle_intermediate(self, buf: SessionBuffer, event: CallEvent) -> EventStatus:
        phone = event.phone_number or (buf.key if is_real_identity(buf.key) else None)

        if (
            buf.last_saved_outcome == event.outcome
            and abs(event.timestamp_ms - (buf.last_saved_ts or 0)) < self.config.dedupe_window_ms
        ):
            logger.debug("Skipping duplicate %s write for %s", event.outcome, buf.key)
        elif phone is None:
            logger.debug("No number yet for session %s, not persisting %s", buf.key, event.outcome)
        else:
            open_ui = self._claim_ui(phone, event.outcome)
            self.tasks.spawn(
                self._commit_call_event(buf, phone, event.copy(), open_ui),
                label=f"call event {event.outcome} {phone}",
            )

        self._arm_auto_finalize(buf)
        return EventStatus.INTERMEDIATE

    def _claim_ui(self, phone: str, outcome: str) -> bool:
        if outcome not in UI_TRIGGER_OUTCOMES:
            return False
        if self._ui_phone == phone:
            logger.info("Call screen already driven by %s, not reopening", phone)
            return False
        self._ui_phone = phone
        return True

    def _release_ui(self, phone: str | None) -> None:
        if phone is not None and self._ui_phone == phone:
            self._ui_phone = None

    def _arm_auto_finalize(self, buf: SessionBuffer) -> None:
        buf.schedule_auto_finalize(lambda: self._auto_finalize(buf))

    # --- Finalization ---

    def _handle_terminal(self, buf: SessionBuffer, event: CallEvent) -> EventStatus:
        return self._finalize(buf, event.outcome, event.timestamp_ms, None, self.config.terminal_grace_ms)

    def _finalize_from_call_log(self, buf: SessionBuffer, event: CallEvent) -> EventStatus:
        outcome = event.outcome if classify(event.outcome).is_terminal else "ended"
        logger.info(
            "Authoritative duration %ds for %s, finalizing from call log",
            event.duration_seconds,
            buf.key,
        )
        return self._finalize(
            buf, outcome, event.timestamp_ms, event.duration_seconds, self.config.call_log_grace_ms
        )

    def _finalize(
        self,
        buf: SessionBuffer,
        outcome: str,
        timestamp_ms: int,
        explicit_duration: int | None,
        grace_ms: int,
    ) -> EventStatus:
        timeline = consolidate(buf.events, self.config.consolidation_gap_ms)
        duration, chosen_ts = pick_final_values(timeline, timestamp_ms, explicit_duration)
        last = timeline[-1] if timeline else None
        commit = FinalCommit(
            phone=self._resolve_phone(buf, timeline),
            direction=last.direction if last else "unknown",
            outcome=outcome,
            timestamp_ms=chosen_ts,
            duration_seconds=duration,
        )
        self._release_ui(commit.phone)
        buf.mark_finalized(commit)
        # keep the buffer briefly so a trailing duplicate still finds it
        self.scheduler.call_later(grace_ms, lambda: self.registry.discard(buf))
        self.tasks.spawn(self._commit_final(commit), label=f"finalize {buf.key}")
        return EventStatus.FINALIZED

    def _auto_finalize(self, buf: SessionBuffer) -> None:
        if self.registry.get(buf.key) is not buf or buf.finalized:
            return
        timeline = consolidate(buf.events, self.config.consolidation_gap_ms)
        last = timeline[-1] if timeline else None
        carrier = latest_duration(timeline)
        commit = FinalCommit(
            phone=self._resolve_phone(buf, timeline),
            direction=last.direction if last else "unknown",
            outcome=last.outcome if last else "ended",
            timestamp_ms=last.timestamp_ms if last else self.scheduler.now_ms(),
            duration_seconds=carrier.duration_seconds if carrier else None,
        )
        logger.info(
            "Auto-finalize for %s: no terminal event within %dms (outcome=%s duration=%s)",
            buf.key,
            self.config.auto_finalize_ms,
            commit.outcome,
            commit.duration_seconds,
        )
        self._release_ui(commit.phone)
        buf.mark_finalized(commit)
        self.registry.remove(buf.key)
        self.tasks.spawn(self._commit_final(commit), label=f"auto-finalize {buf.key}")

    def _resolve_phone(self, buf: SessionBuffer, timeline: list[CallEvent]) -> str | None:
        if is_real_identity(buf.key):
            return buf.key
        for event in reversed(timeline):
            if event.phone_number:
                return event.phone_number
        return None

    def _apply_correction(self, buf: SessionBuffer, event: CallEvent) -> EventStatus:
        """One-time patch of an already committed call with the call-log duration."""
        if buf.correction_applied:
            logger.info("Authoritative update already applied for %s, ignoring", buf.key)
            return EventStatus.IGNORED
        commit = buf.commit
        if event.duration_seconds == (commit.duration_seconds or 0):
            logger.info("Call-log duration for %s matches committed value, no correction", buf.key)
            return EventStatus.IGNORED
        buf.mark_corrected()
        # talk time means the call was picked up, whatever the live signal said
        outcome = "ended" if event.duration_seconds > 0 else commit.outcome
        self.tasks.spawn(
            self._commit_correction(commit, event.duration_seconds, outcome),
            label=f"correction {buf.key}",
        )
        return EventStatus.CORRECTED

    # --- Storage writes ---

    async def _commit_call_event(
        self, buf: SessionBuffer, phone: str, event: CallEvent, open_ui: bool
    ) -> CommitResult:
        def result(status, lead_id=None, error=""):
            return CommitResult(
                kind="call_event",
                phone=phone,
                outcome=event.outcome,
                timestamp_ms=event.timestamp_ms,
                duration_seconds=event.duration_seconds,
                status=status,
                lead_id=lead_id,
                error=error,
            )

        try:
            lead = await self.store.add_call_event(
                phone=phone,
                direction=event.direction,
                outcome=event.outcome,
                timestamp_ms=event.timestamp_ms,
                duration_in_seconds=event.duration_seconds,
            )
        except Exception as e:
            logger.error("add_call_event failed for %s (%s): %s", phone, event.outcome, e)
            return result(CommitStatus.FAILED, error=str(e))
        if lead is None:
            logger.error("add_call_event returned no lead for %s (%s)", phone, event.outcome)
            return result(CommitStatus.FAILED, error="no lead returned")

        buf.mark_saved(event.outcome, event.timestamp_ms)
        if open_ui:
            logger.info("New call from %s, opening lead %s", phone, lead.id)
            self._open_ui(lead)
        return result(CommitStatus.OK, lead_id=lead.id)

    async def _commit_final(self, commit: FinalCommit) -> CommitResult:
        def result(status, lead_id=None, error=""):
            return CommitResult(
                kind="final",
                phone=commit.phone,
                outcome=commit.outcome,
                timestamp_ms=commit.timestamp_ms,
                duration_seconds=commit.duration_seconds,
                status=status,
                lead_id=lead_id,
                error=error,
            )

        if not commit.phone:
            logger.warning("Finalized call has no phone number, nothing to save (outcome=%s)", commit.outcome)
            return result(CommitStatus.SKIPPED, error="no phone number")

        logger.info(
            "Finalizing call for %s outcome=%s duration=%s ts=%d",
            commit.phone,
            commit.outcome,
            commit.duration_seconds,
            commit.timestamp_ms,
        )
        try:
            lead = await self.store.add_final_call_event(
                phone=commit.phone,
                direction=commit.direction,
                outcome=commit.outcome,
                timestamp_ms=commit.timestamp_ms,
                duration_in_seconds=commit.duration_seconds,
            )
        except Exception as e:
            logger.error("add_final_call_event failed for %s: %s", commit.phone, e)
            return result(CommitStatus.FAILED, error=str(e))
        if lead is None:
            logger.error("add_final_call_event returned no lead for %s", commit.phone)
            return result(CommitStatus.FAILED, error="no lead returned")

        if lead.needs_manual_review:
            self._open_ui(lead)
        return result(CommitStatus.OK, lead_id=lead.id)

    async def _commit_correction(self, commit: FinalCommit, duration: int, outcome: str) -> CommitResult:
        def result(status, error=""):
            return CommitResult(
                kind="correction",
                phone=commit.phone,
                outcome=outcome,
                timestamp_ms=commit.timestamp_ms,
                duration_seconds=duration,
                status=status,
                error=error,
            )

        if not commit.phone:
            logger.warning("Correction for call without phone number skipped")
            return result(CommitStatus.SKIPPED, error="no phone number")

        try:
            updated = await self.store.update_call_from_call_log(
                phone=commit.phone,
                direction=commit.direction,
                timestamp_ms=commit.timestamp_ms,
                duration_in_seconds=duration,
                final_outcome=outcome,
            )
        except Exception as e:
            logger.error("update_call_from_call_log failed for %s: %s", commit.phone, e)
            return result(CommitStatus.FAILED, error=str(e))
        if not updated:
            logger.error("Authoritative update for %s matched no call record", commit.phone)
            return result(CommitStatus.FAILED, error="no matching call")

        logger.info("Applied authoritative update for %s duration=%ds", commit.phone, duration)
        return result(CommitStatus.OK)

    def _open_ui(self, lead: Lead) -> GateResult | None:
        if self.gate is None:
            logger.debug("No display surface attached, not opening lead %s", lead.id)
            return None
        return self.gate.request_open(lead)
