from enum import Enum

INTERMEDIATE_OUTCOMES = {"ringing", "started", "outgoing_start", "answered"}
TERMINAL_OUTCOMES = {"ended", "missed", "rejected"}

# Intermediate outcomes that should bring the lead screen up
UI_TRIGGER_OUTCOMES = {"ringing", "answered"}

# Outcomes that never carry talk time
NO_TALK_OUTCOMES = {"missed", "rejected"}

# Session key used while the caller's number is not known yet
UNKNOWN_IDENTITY = "__no_number__"


class OutcomeKind(Enum):
    INTERMEDIATE = "intermediate"
    TERMINAL = "terminal"

    @property
    def is_terminal(self) -> bool:
        return self is OutcomeKind.TERMINAL


def classify(outcome: str) -> OutcomeKind:
    """Map an outcome label to intermediate/terminal.

    Unrecognized labels are intermediate so that new native outcomes still
    keep the session alive instead of disappearing.
    """
    label = (outcome or "").strip().lower()
    if label in TERMINAL_OUTCOMES:
        return OutcomeKind.TERMINAL
    return OutcomeKind.INTERMEDIATE


def is_known_outcome(outcome: str) -> bool:
    label = (outcome or "").strip().lower()
    return label in INTERMEDIATE_OUTCOMES or label in TERMINAL_OUTCOMES


def identity_for(phone_number: str | None) -> str:
    """Session key for a call: the number when known, else the unknown sentinel."""
    if phone_number:
        return phone_number
    return UNKNOWN_IDENTITY


def is_real_identity(key: str | None) -> bool:
    return bool(key) and key != UNKNOWN_IDENTITY
