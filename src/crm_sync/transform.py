"""crm_sync.transform

Field normalizer: maps an Airtable record onto the canonical entity shape
for its type.

Source field names drifted across the base's history, so several fields
are read through an alias list (first non-blank wins).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from crm_sync.models import (
    COMPANY,
    JOB,
    PERSON,
    CanonicalEntity,
    Company,
    ExternalRecord,
    Job,
    Person,
)
from crm_sync.normalize import (
    TEXT_LIMIT,
    coerce_text,
    is_truthy_flag,
    join_lead_score,
    parse_date,
    parse_timestamp,
    text_or_empty,
    truncate,
)
from crm_sync.stages import DEFAULT_JOB_STATUS, map_employment_type, map_stage

# ---------------------------------------------------------------------------
# Field aliases
# ---------------------------------------------------------------------------

LINKEDIN_FIELDS = ("LinkedIn URL", "LinkedIn")
CREATED_FIELDS = ("Created Time", "Created")
COMPANY_NAME_FIELDS = ("Company Name", "Name")
JOB_LOCATION_FIELDS = ("Location", "Job Location")
JOB_DESCRIPTION_FIELDS = ("Description", "Job Description")
EMAIL_FIELDS = ("Email", "Email Address")
WEBHOOK_FIELDS = ("Webhook URL", "Automation URL")


def _first(fields: dict[str, Any], names: tuple[str, ...]) -> Any:
    """Return the first non-blank value among names, else None."""
    for name in names:
        value = fields.get(name)
        if value is None or value == "" or value == []:
            continue
        return value
    return None


def _first_link(value: Any) -> str | None:
    """First record id of a linked-record cell (["recXXX", ...])."""
    if isinstance(value, list) and value:
        return coerce_text(value[0])
    if isinstance(value, str) and value.startswith("rec"):
        return value.strip()
    return None


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------

def is_automated(fields: dict[str, Any]) -> bool:
    """True if any of the automation indicators on a record is set."""
    if is_truthy_flag(fields.get("Automation")):
        return True
    if is_truthy_flag(fields.get("Automation Active")):
        return True
    webhook = coerce_text(_first(fields, WEBHOOK_FIELDS))
    if webhook and "webhook" in webhook.lower():
        return True
    return coerce_text(fields.get("Automation Status")) == "Automated"


def automation_started_at(fields: dict[str, Any], now: datetime) -> datetime | None:
    """Automation Date if present and parseable, else now; None if not automated."""
    if not is_automated(fields):
        return None
    return parse_timestamp(fields.get("Automation Date")) or now


# ---------------------------------------------------------------------------
# Per-entity transforms
# ---------------------------------------------------------------------------

def normalize_person(record: ExternalRecord, now: datetime) -> Person:
    f = record.fields
    raw_stage = f.get("Stage")
    return Person(
        external_id=record.external_id,
        name=text_or_empty(f.get("Name")),
        company_role=text_or_empty(f.get("Company Role")),
        employee_location=text_or_empty(f.get("Employee Location")),
        linkedin_url=coerce_text(_first(f, LINKEDIN_FIELDS)),
        email=coerce_text(_first(f, EMAIL_FIELDS)),
        stage=map_stage(raw_stage),
        confidence_level=coerce_text(f.get("Confidence Level")),
        lead_source=text_or_empty(f.get("Lead Source")),
        automation_started_at=automation_started_at(f, now),
        linkedin_request_message=text_or_empty(f.get("LinkedIn Request Message")),
        linkedin_follow_up_message=text_or_empty(f.get("LinkedIn Follow Up Message")),
        linkedin_connected_message=text_or_empty(f.get("LinkedIn Connected Message")),
        company_external_id=_first_link(f.get("Company")),
        created_at=parse_timestamp(_first(f, CREATED_FIELDS)),
        source_stage=coerce_text(raw_stage),
    )


def normalize_company(record: ExternalRecord, now: datetime) -> Company:
    f = record.fields
    return Company(
        external_id=record.external_id,
        name=text_or_empty(_first(f, COMPANY_NAME_FIELDS)),
        website=coerce_text(f.get("Website")),
        linkedin_url=coerce_text(_first(f, LINKEDIN_FIELDS)),
        head_office=text_or_empty(f.get("Head Office")),
        industry=text_or_empty(f.get("Industry")),
        company_size=text_or_empty(f.get("Company Size")),
        priority=coerce_text(f.get("Priority")),
        automation_active=is_automated(f),
        lead_score=join_lead_score(f.get("Lead Score")),
        created_at=parse_timestamp(_first(f, CREATED_FIELDS)),
    )


def normalize_job(record: ExternalRecord, now: datetime) -> Job:
    f = record.fields
    company_name = _first(f, ("Company Name",))
    return Job(
        external_id=record.external_id,
        title=text_or_empty(f.get("Job Title")),
        company_name=text_or_empty(company_name),
        location=text_or_empty(_first(f, JOB_LOCATION_FIELDS)),
        description=truncate(text_or_empty(_first(f, JOB_DESCRIPTION_FIELDS)), TEXT_LIMIT),
        requirements=truncate(text_or_empty(f.get("Requirements")), TEXT_LIMIT),
        salary=coerce_text(f.get("Salary")),
        status=coerce_text(f.get("Status")) or DEFAULT_JOB_STATUS,
        job_url=coerce_text(f.get("Job URL")),
        employment_type=map_employment_type(f.get("Employment Type")),
        date_posted=parse_date(_first(f, ("Date Posted", "Posted Date"))),
        company_external_id=_first_link(f.get("Company")),
        created_at=parse_timestamp(_first(f, CREATED_FIELDS)),
    )


_NORMALIZERS: dict[str, Callable[[ExternalRecord, datetime], CanonicalEntity]] = {
    PERSON:  normalize_person,
    COMPANY: normalize_company,
    JOB:     normalize_job,
}


def normalize(
    record: ExternalRecord,
    entity_type: str,
    now: datetime | None = None,
) -> CanonicalEntity:
    """Normalize one record into the canonical entity for entity_type.

    now stands in for the automation start time when the record is
    automated but carries no Automation Date; it defaults to the current
    UTC time.
    """
    try:
        normalizer = _NORMALIZERS[entity_type]
    except KeyError:
        raise ValueError(f"unknown entity type: {entity_type!r}") from None
    return normalizer(record, now or datetime.now(timezone.utc))

