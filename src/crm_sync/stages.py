"""crm_sync.stages

Fixed lookup tables translating Airtable free-text labels into the CRM's
canonical enum values.

Lookups are exact and case-sensitive.  Labels missing from STAGE_MAP
resolve to DEFAULT_STAGE; callers that care whether that happened use
is_known_stage_label() to count the fallback.
"""

from __future__ import annotations

from typing import Any

from crm_sync.normalize import trim

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_STAGE = "new"

STAGE_VALUES = (
    "new",
    "connection_requested",
    "connected",
    "messaged",
    "replied",
    "meeting_booked",
    "meeting_held",
    "disqualified",
    "in_queue",
    "lead_lost",
)

STAGE_MAP: dict[str, str] = {
    "NEW":            "new",
    "NEW LEAD":       "new",
    "CONNECT SENT":   "connection_requested",
    "CONNECTED":      "connected",
    "MESSAGED":       "messaged",
    "MSG SENT":       "messaged",
    "REPLIED":        "replied",
    "MEETING BOOKED": "meeting_booked",
    "MEETING HELD":   "meeting_held",
    "DISQUALIFIED":   "disqualified",
    "IN QUEUE":       "in_queue",
    "LEAD LOST":      "lead_lost",
}

EMPLOYMENT_TYPE_MAP: dict[str, str] = {
    "FULL_TIME": "full-time",
    "PART_TIME": "part-time",
    "CONTRACT":  "contract",
    "TEMPORARY": "temporary",
}

DEFAULT_JOB_STATUS = "active"


# ---------------------------------------------------------------------------
# Stage mapping
# ---------------------------------------------------------------------------

def map_stage(raw_label: Any) -> str:
    """Return the canonical stage for an Airtable Stage label ('new' if unmapped)."""
    if not isinstance(raw_label, str):
        return DEFAULT_STAGE
    return STAGE_MAP.get(raw_label, DEFAULT_STAGE)


def is_known_stage_label(raw_label: Any) -> bool:
    """True if raw_label is present in STAGE_MAP (blank counts as known)."""
    if raw_label is None or raw_label == "":
        return True
    return isinstance(raw_label, str) and raw_label in STAGE_MAP


# ---------------------------------------------------------------------------
# Employment type mapping
# ---------------------------------------------------------------------------

def map_employment_type(raw: Any) -> str | None:
    """FULL_TIME → full-time etc.; unknown labels are lower-cased; blank → None."""
    if not isinstance(raw, str):
        return None
    if raw in EMPLOYMENT_TYPE_MAP:
        return EMPLOYMENT_TYPE_MAP[raw]
    v = trim(raw)
    return v.lower() if v else None
