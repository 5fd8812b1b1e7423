"""crm_sync.planner

Reconciliation and cleanup planning.

For every canonical entity two guarded statements are generated:

  UPDATE  — links ONE existing, not-yet-linked row that matches any key:
              WHERE id = (SELECT id ... WHERE <keys> AND airtable_id IS NULL
                          ORDER BY created_at, id LIMIT 1)
                AND NOT EXISTS (row already carrying this airtable_id)
  INSERT  — INSERT ... SELECT ... WHERE NOT EXISTS
              (row with this airtable_id OR any row matching <keys>)

Run in order, the pair is idempotent: after a first execution the row is
linked, so on every later run the UPDATE finds no unlinked match and the
INSERT's existence check succeeds.

A REFRESH statement then re-applies the fields Airtable owns
(_REFRESH_COLUMNS, plus automation_started_at for people) to the row
already carrying the airtable_id.  It is guarded by IS DISTINCT FROM,
so it touches a row only when the source value actually changed.

After all updates and inserts, link statements resolve Person/Job →
Company through companies.airtable_id, and cleanup statements delete
linked rows whose airtable_id is no longer in the source.  Rows with
airtable_id IS NULL (created by hand) are never deleted.

Output order:
  updates (person, company, job) → inserts (person, company, job)
  → refreshes (person, company, job) → links (person, job)
  → deletes (person, company, job)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import datetime, timezone
from typing import Any, Iterable

from crm_sync.matching import build_keys, match_predicate
from crm_sync.models import (
    COMPANY,
    DELETE,
    ENTITY_ORDER,
    INSERT,
    JOB,
    LINK,
    PERSON,
    REFRESH,
    TARGET_TABLES,
    UPDATE,
    CanonicalEntity,
    Job,
    Person,
    PlannedStatement,
    ReconciliationPlan,
)
from crm_sync.normalize import comment_text, sql_literal

log = logging.getLogger(__name__)

# Entity attributes that are not columns on the target table
_NON_COLUMNS = frozenset({
    "external_id", "company_external_id", "created_at", "source_stage",
})

# Columns only set on insert (not overwritten when linking an existing row)
_INSERT_DEFAULTS: dict[str, dict[str, Any]] = {
    PERSON:  {"is_favourite": False},
    COMPANY: {"is_favourite": False},
    JOB:     {},
}

# Source-owned columns re-applied to rows that are already linked
_REFRESH_COLUMNS: dict[str, tuple[str, ...]] = {
    PERSON:  ("stage",),
    COMPANY: ("automation_active",),
    JOB:     ("status",),
}

# Which entity types carry a company link
LINKED_TO_COMPANY = (PERSON, JOB)

_LABEL_NOUN = {PERSON: "person", COMPANY: "company", JOB: "job"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PlanningError(ValueError):
    """Raised when entities cannot be planned (e.g. unknown entity type)."""


# ---------------------------------------------------------------------------
# Column helpers
# ---------------------------------------------------------------------------

def entity_columns(entity: CanonicalEntity) -> dict[str, Any]:
    """Return column → value for the entity's persisted fields, in field order."""
    return {
        f.name: getattr(entity, f.name)
        for f in dataclass_fields(entity)
        if f.name not in _NON_COLUMNS
    }


def _identity_text(entity: CanonicalEntity) -> str:
    if isinstance(entity, Job):
        return entity.title
    return entity.name


def is_plannable(entity: CanonicalEntity) -> bool:
    """An entity needs a non-blank name (title for jobs) to be matched safely."""
    return bool(_identity_text(entity).strip())


def _label(kind: str, entity: CanonicalEntity) -> str:
    noun = _LABEL_NOUN[entity.entity_type]
    label = f"{kind.capitalize()} {noun}: {comment_text(entity.display_name)}"
    source_stage = getattr(entity, "source_stage", None)
    if source_stage is not None:
        label += f" (Stage: {comment_text(source_stage)} -> {entity.stage})"
    return label


# ---------------------------------------------------------------------------
# Per-entity statements
# ---------------------------------------------------------------------------

def plan_update(entity: CanonicalEntity) -> PlannedStatement:
    table = TARGET_TABLES[entity.entity_type]
    predicate = match_predicate(build_keys(entity), entity.entity_type)
    ext_id = sql_literal(entity.external_id)

    assignments = [f"airtable_id = {ext_id}"]
    for column, value in entity_columns(entity).items():
        assignments.append(f"{column} = {sql_literal(value)}")
    if entity.created_at is not None:
        assignments.append(f"created_at = {sql_literal(entity.created_at)}")
    assignments.append("updated_at = NOW()")
    set_clause = ",\n    ".join(assignments)

    sql_text = (
        f"UPDATE {table} SET\n"
        f"    {set_clause}\n"
        f"WHERE id = (\n"
        f"    SELECT id FROM {table}\n"
        f"    WHERE {predicate}\n"
        f"      AND airtable_id IS NULL\n"
        f"    ORDER BY created_at ASC, id ASC\n"
        f"    LIMIT 1\n"
        f")\n"
        f"  AND NOT EXISTS (SELECT 1 FROM {table} WHERE airtable_id = {ext_id});"
    )
    return PlannedStatement(UPDATE, entity.entity_type, _label(UPDATE, entity), sql_text)


def plan_insert(entity: CanonicalEntity) -> PlannedStatement:
    table = TARGET_TABLES[entity.entity_type]
    predicate = match_predicate(build_keys(entity), entity.entity_type)
    ext_id = sql_literal(entity.external_id)

    columns: dict[str, str] = {"airtable_id": ext_id}
    for column, value in entity_columns(entity).items():
        columns[column] = sql_literal(value)
    for column, value in _INSERT_DEFAULTS[entity.entity_type].items():
        columns[column] = sql_literal(value)
    columns["created_at"] = (
        sql_literal(entity.created_at) if entity.created_at is not None else "NOW()"
    )
    columns["updated_at"] = "NOW()"

    sql_text = (
        f"INSERT INTO {table} ({', '.join(columns)})\n"
        f"SELECT {', '.join(columns.values())}\n"
        f"WHERE NOT EXISTS (\n"
        f"    SELECT 1 FROM {table}\n"
        f"    WHERE airtable_id = {ext_id}\n"
        f"       OR {predicate}\n"
        f");"
    )
    return PlannedStatement(INSERT, entity.entity_type, _label(INSERT, entity), sql_text)


def plan_entity(entity: CanonicalEntity) -> tuple[PlannedStatement, PlannedStatement]:
    """Return the (update, insert) pair for one entity."""
    return plan_update(entity), plan_insert(entity)


def plan_refresh(entity: CanonicalEntity) -> PlannedStatement:
    """Bring the linked row's source-owned fields up to date.

    automation_started_at keeps the original start once set; it is only
    filled when empty, or cleared when the record is no longer automated.
    """
    table = TARGET_TABLES[entity.entity_type]
    ext_id = sql_literal(entity.external_id)

    assignments: list[str] = []
    changed: list[str] = []
    for column in _REFRESH_COLUMNS[entity.entity_type]:
        value = sql_literal(getattr(entity, column))
        assignments.append(f"{column} = {value}")
        changed.append(f"{column} IS DISTINCT FROM {value}")
    if isinstance(entity, Person):
        if entity.automation_started_at is None:
            assignments.append("automation_started_at = NULL")
            changed.append("automation_started_at IS NOT NULL")
        else:
            started = sql_literal(entity.automation_started_at)
            assignments.append(
                f"automation_started_at = COALESCE(automation_started_at, {started})"
            )
            changed.append("automation_started_at IS NULL")
    assignments.append("updated_at = NOW()")
    set_clause = ",\n    ".join(assignments)
    guard = " OR ".join(changed)

    sql_text = (
        f"UPDATE {table} SET\n"
        f"    {set_clause}\n"
        f"WHERE airtable_id = {ext_id}\n"
        f"  AND ({guard});"
    )
    return PlannedStatement(REFRESH, entity.entity_type, _label(REFRESH, entity), sql_text)


# ---------------------------------------------------------------------------
# Company links
# ---------------------------------------------------------------------------

def plan_company_links(
    entities: Iterable[CanonicalEntity],
    entity_type: str,
) -> PlannedStatement | None:
    """Set company_id from the linked Company record id, or None if no links."""
    if entity_type not in LINKED_TO_COMPANY:
        raise PlanningError(f"{entity_type} rows do not reference companies")
    pairs = [
        (e.external_id, e.company_external_id)
        for e in entities
        if getattr(e, "company_external_id", None)
    ]
    if not pairs:
        return None

    table = TARGET_TABLES[entity_type]
    values = ",\n    ".join(
        f"({sql_literal(ext_id)}, {sql_literal(company_ext_id)})"
        for ext_id, company_ext_id in pairs
    )
    sql_text = (
        f"UPDATE {table} AS t SET\n"
        f"    company_id = c.id,\n"
        f"    updated_at = NOW()\n"
        f"FROM (VALUES\n"
        f"    {values}\n"
        f") AS v(airtable_id, company_airtable_id)\n"
        f"JOIN companies c ON c.airtable_id = v.company_airtable_id\n"
        f"WHERE t.airtable_id = v.airtable_id\n"
        f"  AND t.company_id IS DISTINCT FROM c.id;"
    )
    label = f"Link {TARGET_TABLES[entity_type]} to companies ({len(pairs)} records)"
    return PlannedStatement(LINK, entity_type, label, sql_text)


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

def plan_cleanup(
    entities: Iterable[CanonicalEntity],
    entity_type: str,
    extra_ids: Iterable[str] = (),
) -> PlannedStatement:
    """Delete linked rows whose airtable_id is absent from the current fetch.

    extra_ids are ids fetched but not planned (e.g. rejected records);
    they are still present at the source and must not be deleted.
    """
    ids = sorted({e.external_id for e in entities} | set(extra_ids))
    if not ids:
        raise PlanningError(f"refusing to plan cleanup for {entity_type}: empty id set")
    table = TARGET_TABLES[entity_type]
    id_list = ", ".join(sql_literal(i) for i in ids)
    sql_text = (
        f"DELETE FROM {table}\n"
        f"WHERE airtable_id IS NOT NULL\n"
        f"  AND airtable_id NOT IN ({id_list});"
    )
    label = f"Remove {table} not in Airtable"
    return PlannedStatement(DELETE, entity_type, label, sql_text)


# ---------------------------------------------------------------------------
# Whole plan
# ---------------------------------------------------------------------------

@dataclass
class PlanInput:
    """Normalized entities for one entity type plus fetch status."""

    entities: list[CanonicalEntity] = field(default_factory=list)
    fetched_ids: list[str] = field(default_factory=list)
    fetch_complete: bool = True


def build_plan(
    inputs: dict[str, PlanInput],
    generated_at: datetime | None = None,
) -> ReconciliationPlan:
    """Build the ordered plan for all entity types present in inputs.

    Entities failing is_plannable() must already have been filtered out by
    the caller (their ids belong in fetched_ids so cleanup keeps them).
    """
    unknown = set(inputs) - set(ENTITY_ORDER)
    if unknown:
        raise PlanningError(f"unknown entity types: {sorted(unknown)}")

    plan = ReconciliationPlan(generated_at=generated_at or datetime.now(timezone.utc))
    ordered = [t for t in ENTITY_ORDER if t in inputs]

    for entity_type in ordered:
        plan.record_counts[entity_type] = len(inputs[entity_type].fetched_ids)

    updates: list[PlannedStatement] = []
    inserts: list[PlannedStatement] = []
    refreshes: list[PlannedStatement] = []
    for entity_type in ordered:
        for entity in inputs[entity_type].entities:
            if entity.entity_type != entity_type:
                raise PlanningError(
                    f"{entity.external_id}: {entity.entity_type} entity under {entity_type}"
                )
            update, insert = plan_entity(entity)
            updates.append(update)
            inserts.append(insert)
            refreshes.append(plan_refresh(entity))
    plan.statements.extend(updates)
    plan.statements.extend(inserts)
    plan.statements.extend(refreshes)

    for entity_type in ordered:
        if entity_type in LINKED_TO_COMPANY:
            link = plan_company_links(inputs[entity_type].entities, entity_type)
            if link is not None:
                plan.statements.append(link)

    for entity_type in ordered:
        item = inputs[entity_type]
        reason = None
        if not item.fetch_complete:
            reason = "source fetch incomplete"
        elif not item.fetched_ids and not item.entities:
            reason = "source returned no records"
        if reason:
            log.warning("Skipping cleanup of %s: %s", TARGET_TABLES[entity_type], reason)
            plan.skipped_cleanups[entity_type] = reason
            continue
        plan.statements.append(
            plan_cleanup(item.entities, entity_type, extra_ids=item.fetched_ids)
        )

    return plan
