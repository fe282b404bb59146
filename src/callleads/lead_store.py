"""Lead storage collaborator.

LeadStore is the contract the reconciliation engine writes through.  The
engine guarantees one add_final_call_event per physical call; stores only need
each operation to be idempotent on its own.

InMemoryLeadStore is the reference implementation of those semantics, used by
the replay tool's dry-run mode and in tests.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Protocol

from callleads.models import (
    DEFAULT_TENANT,
    CallHistoryEntry,
    Lead,
    lead_id_from_phone,
    normalize_phone,
)
from callleads.outcomes import NO_TALK_OUTCOMES

logger = logging.getLogger(__name__)

# add_call_event: repeat of the last entry within this window is not appended
INTERMEDIATE_DUPE_MS = 2000
# add_final_call_event: same outcome/direction within this window replaces the last entry
FINAL_MERGE_MS = 5000
# add_final_call_event: a duration-less last entry within this window is replaced
FINAL_DURATION_MERGE_MS = 30_000
# update_call_from_call_log: how far a history entry may be from the call-log time
CALL_LOG_MATCH_MS = 60_000


class LeadStore(Protocol):
    async def find_or_create_lead(self, phone: str, final_outcome: str | None = None) -> Lead | None: ...

    async def add_call_event(
        self,
        *,
        phone: str,
        direction: str,
        outcome: str,
        timestamp_ms: int,
        duration_in_seconds: int | None = None,
    ) -> Lead | None: ...

    async def add_final_call_event(
        self,
        *,
        phone: str,
        direction: str,
        outcome: str,
        timestamp_ms: int,
        duration_in_seconds: int | None = None,
    ) -> Lead | None: ...

    async def update_call_from_call_log(
        self,
        *,
        phone: str,
        direction: str,
        timestamp_ms: int,
        duration_in_seconds: int,
        final_outcome: str,
    ) -> bool: ...


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class InMemoryLeadStore:
    def __init__(self, *, tenant_id: str = DEFAULT_TENANT, clock: Callable[[], int] | None = None):
        self.tenant_id = tenant_id
        self._clock = clock or _wall_clock_ms
        self._leads: dict[str, Lead] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.writes = 0

    def get(self, phone: str) -> Lead | None:
        digits = normalize_phone(phone)
        if not digits:
            return None
        return self._leads.get(lead_id_from_phone(digits))

    def all(self) -> list[Lead]:
        return list(self._leads.values())

    def _save(self, lead: Lead) -> Lead:
        existing = self._leads.get(lead.id)
        if existing is not None and existing.to_dict() == lead.to_dict():
            logger.debug("No changes for lead %s, skip write", lead.id)
            return existing
        self._leads[lead.id] = lead
        self.writes += 1
        return lead

    async def find_or_create_lead(self, phone: str, final_outcome: str | None = None) -> Lead:
        digits = normalize_phone(phone)
        if not digits:
            raise ValueError(f"cannot create lead without a phone number: {phone!r}")

        # serialize per number so concurrent callers cannot create two leads
        lock = self._locks.setdefault(digits, asyncio.Lock())
        async with lock:
            lead_id = lead_id_from_phone(digits)
            now = self._clock()
            lead = self._leads.get(lead_id)
            if lead is None:
                lead = Lead(
                    id=lead_id,
                    phone_number=digits,
                    tenant_id=self.tenant_id,
                    last_call_outcome=final_outcome or "none",
                    last_interaction_ms=now,
                    last_updated_ms=now,
                )
                logger.info("Created lead %s for %s", lead_id, digits)
                return self._save(lead)
            if final_outcome and lead.last_call_outcome != final_outcome:
                lead = self._save(replace(lead, last_call_outcome=final_outcome, last_updated_ms=now))
            return lead

    async def add_call_event(
        self,
        *,
        phone: str,
        direction: str,
        outcome: str,
        timestamp_ms: int,
        duration_in_seconds: int | None = None,
    ) -> Lead:
        lead = await self.find_or_create_lead(phone)
        entry = CallHistoryEntry(
            direction=direction,
            outcome=outcome,
            timestamp_ms=timestamp_ms,
            duration_in_seconds=duration_in_seconds,
        )
        history = list(lead.call_history)
        if history:
            last = history[-1]
            if (
                last.outcome == entry.outcome
                and last.direction == entry.direction
                and last.duration_in_seconds == entry.duration_in_seconds
                and abs(entry.timestamp_ms - last.timestamp_ms) < INTERMEDIATE_DUPE_MS
            ):
                return self._save(replace(lead, last_updated_ms=self._clock()))

        history.append(entry)
        return self._save(replace(lead, call_history=history, last_updated_ms=self._clock()))

    async def add_final_call_event(
        self,
        *,
        phone: str,
        direction: str,
        outcome: str,
        timestamp_ms: int,
        duration_in_seconds: int | None = None,
    ) -> Lead:
        lead = await self.find_or_create_lead(phone, final_outcome=outcome)
        needs_review = lead.needs_manual_review or outcome in NO_TALK_OUTCOMES

        entry = CallHistoryEntry(
            direction=direction,
            outcome=outcome,
            timestamp_ms=timestamp_ms,
            duration_in_seconds=duration_in_seconds,
        )
        history = list(lead.call_history)
        if history:
            last = history[-1]
            dt = abs(timestamp_ms - last.timestamp_ms)
            merge = (
                last.outcome == entry.outcome and last.direction == entry.direction and dt < FINAL_MERGE_MS
            ) or (
                last.duration_in_seconds is None
                and entry.duration_in_seconds is not None
                and dt < FINAL_DURATION_MERGE_MS
            )
            if merge:
                history[-1] = entry
            else:
                history.append(entry)
        else:
            history.append(entry)

        now = self._clock()
        return self._save(replace(
            lead,
            call_history=history,
            last_call_outcome=outcome,
            last_interaction_ms=now,
            last_updated_ms=now,
            needs_manual_review=needs_review,
        ))

    async def update_call_from_call_log(
        self,
        *,
        phone: str,
        direction: str,
        timestamp_ms: int,
        duration_in_seconds: int,
        final_outcome: str,
    ) -> bool:
        """Patch the history entry nearest to timestamp_ms. Never creates anything."""
        lead = self.get(phone)
        if lead is None:
            logger.warning("Call-log update for unknown lead %s, skipping", phone)
            return False

        best_idx = None
        best_dt = None
        for idx, entry in enumerate(lead.call_history):
            dt = abs(entry.timestamp_ms - timestamp_ms)
            if dt <= CALL_LOG_MATCH_MS and (best_dt is None or dt < best_dt):
                best_idx, best_dt = idx, dt
        if best_idx is None:
            logger.warning("No call near %d for %s, skipping call-log update", timestamp_ms, phone)
            return False

        history = list(lead.call_history)
        history[best_idx] = replace(
            history[best_idx],
            direction=direction,
            outcome=final_outcome,
            duration_in_seconds=duration_in_seconds,
        )
        self._save(replace(lead, call_history=history, last_updated_ms=self._clock()))
        return True
