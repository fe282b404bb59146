"""Configuration: engine timing windows and startup validation.

Timing windows default to the values the native call layer was tuned for and
can be overridden per deployment with CALLLEADS_<FIELD> env vars, e.g.
CALLLEADS_AUTO_FINALIZE_MS=10000.
"""

import os
import sys
import logging
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "LEAD_SERVICE_URL",
]

OPTIONAL_VARS = [
    "LEAD_SERVICE_API_KEY",
    "LEAD_TENANT_ID",
    "LOG_LEVEL",
]

ENV_PREFIX = "CALLLEADS_"


@dataclass(frozen=True)
class EngineConfig:
    dedupe_window_ms: int = 800
    auto_finalize_ms: int = 8000
    idle_expiry_ms: int = 60_000
    terminal_grace_ms: int = 600
    call_log_grace_ms: int = 400
    ui_settle_ms: int = 250
    ui_retry_ms: int = 300
    consolidation_gap_ms: int = 50
    settled_retention_ms: int = 60_000

    @classmethod
    def from_env(cls, environ=None) -> "EngineConfig":
        """Build a config, overriding defaults from CALLLEADS_* variables."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            var = ENV_PREFIX + f.name.upper()
            raw = environ.get(var)
            if raw is None or raw.strip() == "":
                continue
            try:
                value = int(raw.strip())
            except ValueError:
                raise ValueError(f"{var} must be an integer number of milliseconds, got {raw!r}") from None
            if value < 0:
                raise ValueError(f"{var} must be >= 0, got {value}")
            overrides[f.name] = value
        return cls(**overrides)


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env or the process environment.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)
