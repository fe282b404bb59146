import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime

from callleads.outcomes import INTERMEDIATE_OUTCOMES

DEFAULT_TENANT = "default_tenant"


def normalize_phone(raw: str | None) -> str:
    """Digits-only canonical form of a phone number."""
    if not raw:
        return ""
    return re.sub(r"\D", "", raw)


def lead_id_from_phone(digits: str) -> str:
    """Deterministic lead id, shared with the native upload worker."""
    digest = hashlib.sha1(digits.encode("utf-8")).hexdigest()
    return f"phone_{digest[:12]}"


def parse_ts_ms(value) -> int:
    """Epoch ms from int, numeric string or ISO-8601 string; 0 when unparseable."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        try:
            return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return 0
    return 0


def _parse_duration(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


@dataclass
class CallHistoryEntry:
    direction: str
    outcome: str
    timestamp_ms: int
    duration_in_seconds: int | None = None
    note: str = ""

    @property
    def is_intermediate(self) -> bool:
        return self.outcome.lower() in INTERMEDIATE_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "direction": self.direction,
            "outcome": self.outcome,
            "timestamp": self.timestamp_ms,
            "note": self.note,
            "durationInSeconds": self.duration_in_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CallHistoryEntry":
        return cls(
            direction=str(data.get("direction") or "unknown"),
            outcome=str(data.get("outcome") or "unknown"),
            timestamp_ms=parse_ts_ms(data.get("timestamp")),
            duration_in_seconds=_parse_duration(data.get("durationInSeconds")),
            note=str(data.get("note") or ""),
        )


@dataclass
class Lead:
    id: str
    phone_number: str
    tenant_id: str = DEFAULT_TENANT
    name: str = ""
    status: str = "new"
    last_call_outcome: str = "none"
    last_interaction_ms: int = 0
    last_updated_ms: int = 0
    needs_manual_review: bool = False
    call_history: list[CallHistoryEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phoneNumber": self.phone_number,
            "tenantId": self.tenant_id,
            "name": self.name,
            "status": self.status,
            "lastCallOutcome": self.last_call_outcome,
            "lastInteraction": self.last_interaction_ms,
            "lastUpdated": self.last_updated_ms,
            "needsManualReview": self.needs_manual_review,
            "callHistory": [e.to_dict() for e in self.call_history],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Lead":
        history = data.get("callHistory") or []
        return cls(
            id=str(data.get("id") or ""),
            phone_number=str(data.get("phoneNumber") or ""),
            tenant_id=str(data.get("tenantId") or DEFAULT_TENANT),
            name=str(data.get("name") or ""),
            status=str(data.get("status") or "new"),
            last_call_outcome=str(data.get("lastCallOutcome") or "none"),
            last_interaction_ms=parse_ts_ms(data.get("lastInteraction")),
            last_updated_ms=parse_ts_ms(data.get("lastUpdated")),
            needs_manual_review=bool(data.get("needsManualReview", False)),
            call_history=[CallHistoryEntry.from_dict(e) for e in history if isinstance(e, dict)],
        )
