"""crm_sync.models

Record shapes passed between pipeline stages.

  ExternalRecord     — one Airtable row, as fetched
  Person/Company/Job — canonical entities, ready to be planned
  MatchKeySet        — identity keys derived from an entity
  PlannedStatement   — one generated SQL statement
  ReconciliationPlan — the ordered statements for one run
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Union

# ---------------------------------------------------------------------------
# Entity types
# ---------------------------------------------------------------------------

PERSON = "person"
COMPANY = "company"
JOB = "job"

# Fixed processing/output order
ENTITY_ORDER = (PERSON, COMPANY, JOB)

TARGET_TABLES: dict[str, str] = {
    PERSON:  "people",
    COMPANY: "companies",
    JOB:     "jobs",
}

DEFAULT_SOURCE_TABLES: dict[str, str] = {
    PERSON:  "People",
    COMPANY: "Company",
    JOB:     "Jobs",
}

# Statement kinds, in emission order
UPDATE = "update"
INSERT = "insert"
REFRESH = "refresh"
LINK = "link"
DELETE = "delete"

STATEMENT_KINDS = (UPDATE, INSERT, REFRESH, LINK, DELETE)

KIND_PLURALS: dict[str, str] = {
    UPDATE:  "updates",
    INSERT:  "inserts",
    REFRESH: "refreshes",
    LINK:    "links",
    DELETE:  "deletes",
}


# ---------------------------------------------------------------------------
# Source record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExternalRecord:
    external_id: str
    fields: dict[str, Any]

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "ExternalRecord":
        """Build from an Airtable API record ({"id": ..., "fields": {...}})."""
        return cls(
            external_id=str(payload["id"]),
            fields=dict(payload.get("fields") or {}),
        )


# ---------------------------------------------------------------------------
# Canonical entities
# ---------------------------------------------------------------------------

@dataclass
class Person:
    external_id: str
    name: str = ""
    company_role: str = ""
    employee_location: str = ""
    linkedin_url: str | None = None
    email: str | None = None
    stage: str = "new"
    confidence_level: str | None = None
    lead_source: str = ""
    automation_started_at: datetime | None = None
    linkedin_request_message: str = ""
    linkedin_follow_up_message: str = ""
    linkedin_connected_message: str = ""
    company_external_id: str | None = None
    created_at: datetime | None = None
    # Raw Airtable Stage label, kept for review comments only
    source_stage: str | None = field(default=None, compare=False)

    entity_type = PERSON

    @property
    def display_name(self) -> str:
        return self.name


@dataclass
class Company:
    external_id: str
    name: str = ""
    website: str | None = None
    linkedin_url: str | None = None
    head_office: str = ""
    industry: str = ""
    company_size: str = ""
    priority: str | None = None
    automation_active: bool = False
    lead_score: str | None = None
    created_at: datetime | None = None

    entity_type = COMPANY

    @property
    def display_name(self) -> str:
        return self.name


@dataclass
class Job:
    external_id: str
    title: str = ""
    company_name: str = ""
    location: str = ""
    description: str = ""
    requirements: str = ""
    salary: str | None = None
    status: str = "active"
    job_url: str | None = None
    employment_type: str | None = None
    date_posted: date | None = None
    company_external_id: str | None = None
    created_at: datetime | None = None

    entity_type = JOB

    @property
    def display_name(self) -> str:
        if self.company_name:
            return f"{self.title} at {self.company_name}"
        return self.title


CanonicalEntity = Union[Person, Company, Job]


# ---------------------------------------------------------------------------
# Match keys
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchKeySet:
    """Identity keys used to find an existing row.

    Values are trimmed but keep their case; both sides are lower-cased in
    SQL.  name is always present (title for jobs); the rest are None when
    the source field was blank.
    """

    name: str
    linkedin_url: str | None = None
    email: str | None = None
    company_name: str | None = None


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlannedStatement:
    kind: str
    entity_type: str
    label: str
    sql_text: str


@dataclass
class ReconciliationPlan:
    generated_at: datetime
    statements: list[PlannedStatement] = field(default_factory=list)
    record_counts: dict[str, int] = field(default_factory=dict)
    skipped_cleanups: dict[str, str] = field(default_factory=dict)

    def of_kind(self, kind: str) -> list[PlannedStatement]:
        return [s for s in self.statements if s.kind == kind]

    def count(self, kind: str, entity_type: str | None = None) -> int:
        return sum(
            1 for s in self.statements
            if s.kind == kind and (entity_type is None or s.entity_type == entity_type)
        )
