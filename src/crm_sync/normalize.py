"""Normalization functions for Airtable field values.

Scalar helpers accept whatever Airtable hands back for a cell (str, list,
bool, number, nested label object or None) and return the appropriate
type or None.  None of them raise on malformed input.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

TEXT_LIMIT = 500

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y %H:%M", "%b %d, %Y")
_TRUTHY_LABELS = frozenset({"yes", "active", "true"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: coerce_text  (cell value → str | None)
# ---------------------------------------------------------------------------

def coerce_text(value: Any) -> str | None:
    """Flatten an Airtable cell into text.

    Lists (multi-selects, lookups) are joined with ", ".  Label objects
    ({"label": ...} or {"value": ...}) contribute their label/value.
    NUL characters are dropped since Postgres text cannot hold them.
    """
    if value is None:
        return None
    if isinstance(value, list):
        parts = [coerce_text(v) for v in value]
        joined = ", ".join(p for p in parts if p)
        return trim(joined)
    if isinstance(value, dict):
        for key in ("label", "value", "name", "text"):
            if value.get(key) is not None:
                return coerce_text(value[key])
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return trim(str(value).replace("\x00", ""))


def text_or_empty(value: Any) -> str:
    """coerce_text with "" in place of None."""
    return coerce_text(value) or ""


def truncate(value: str | None, limit: int = TEXT_LIMIT) -> str | None:
    """Keep only the first ``limit`` characters."""
    if value is None:
        return None
    return value[:limit]


# ---------------------------------------------------------------------------
# Rule 3: parse_timestamp / parse_date
# ---------------------------------------------------------------------------

def parse_timestamp(value: Any) -> datetime | None:
    """Parse an Airtable date/time cell into an aware UTC datetime.

    Accepts ISO-8601 (with or without a trailing 'Z'), date-only strings,
    and a handful of display formats.  Returns None on failure.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, date):
        ts = datetime(value.year, value.month, value.day)
    else:
        v = coerce_text(value)
        if v is None:
            return None
        ts = _parse_timestamp_text(v)
        if ts is None:
            return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    try:
        return ts.astimezone(timezone.utc)
    except OverflowError:
        # offset pushes the instant outside datetime's range
        return None


def _parse_timestamp_text(v: str) -> datetime | None:
    iso = v[:-1] + "+00:00" if v.endswith("Z") else v
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    return None


def parse_date(value: Any) -> date | None:
    """Return the date portion of a parsed timestamp, or None."""
    ts = parse_timestamp(value)
    return ts.date() if ts is not None else None


# ---------------------------------------------------------------------------
# Rule 4: join_lead_score
# ---------------------------------------------------------------------------

def join_lead_score(value: Any) -> str | None:
    """Arrays are joined with ", "; anything else is coerced to str."""
    if value is None:
        return None
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    s = str(value)
    return s if s != "" else None


# ---------------------------------------------------------------------------
# Rule 5: is_truthy_flag  (automation checkboxes / single selects)
# ---------------------------------------------------------------------------

def is_truthy_flag(value: Any) -> bool:
    """True for checkbox True, "Yes"/"Active" labels, or a labelled object."""
    if value is True:
        return True
    if isinstance(value, dict):
        return bool(value.get("label"))
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_LABELS
    return False


# ---------------------------------------------------------------------------
# SQL literal rendering
# ---------------------------------------------------------------------------

def escape_sql_text(value: str) -> str:
    """Double single quotes for embedding inside a '...' literal."""
    return value.replace("'", "''")


def sql_literal(value: Any) -> str:
    """Render a Python value as a Postgres literal.

    None → NULL, bool → true/false, numbers verbatim, datetimes/dates as
    quoted ISO strings, everything else as an escaped quoted string.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, datetime):
        return f"'{value.isoformat()}'"
    if isinstance(value, date):
        return f"'{value.isoformat()}'"
    return f"'{escape_sql_text(str(value))}'"


def comment_text(value: str | None) -> str:
    """Single-line form of a value for use after '--'."""
    if not value:
        return ""
    return re.sub(r"[\r\n]+", " ", value)
