"""crm_sync.apply

Database-side operations on a plan:

  apply_plan       — execute every planned statement on an open connection
  preview_matches  — read-only analysis of how each entity would reconcile

Transaction control stays with the caller: neither function commits or
rolls back.
"""

from __future__ import annotations

import logging
from typing import Iterable

import psycopg

from crm_sync.matching import build_keys, match_predicate_params
from crm_sync.models import (
    ENTITY_ORDER,
    TARGET_TABLES,
    CanonicalEntity,
    ReconciliationPlan,
)
from crm_sync.shared import RunCounters

log = logging.getLogger(__name__)

# Preview outcomes
ALREADY_LINKED = "already_linked"
WOULD_LINK = "would_link"
AMBIGUOUS = "ambiguous"
CONFLICT = "conflict"
WOULD_INSERT = "would_insert"

PREVIEW_OUTCOMES = (ALREADY_LINKED, WOULD_LINK, AMBIGUOUS, CONFLICT, WOULD_INSERT)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def apply_plan(
    conn: psycopg.Connection,
    plan: ReconciliationPlan,
    counters: RunCounters,
) -> int:
    """Execute plan statements in order; return the total rows affected.

    Statements carry inline literals and are sent without parameters, so
    '%' in source text is passed through untouched.  Any database error
    propagates; the caller is expected to roll back.
    """
    total = 0
    with conn.cursor() as cur:
        for stmt in plan.statements:
            cur.execute(stmt.sql_text)
            n = cur.rowcount if cur.rowcount and cur.rowcount > 0 else 0
            counters.add_rows_affected(stmt.kind, stmt.entity_type, n)
            total += n
            log.debug("%s: %d row(s)", stmt.label, n)
    return total


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

def classify_entity(cur: psycopg.Cursor, entity: CanonicalEntity) -> str:
    """Return the preview outcome for one entity.

    already_linked  a row carries this airtable_id
    would_link      exactly one unlinked row matches
    ambiguous       several unlinked rows match (the oldest would be linked)
    conflict        only rows linked to other records match; nothing happens
    would_insert    no row matches
    """
    table = TARGET_TABLES[entity.entity_type]

    cur.execute(
        f"SELECT 1 FROM {table} WHERE airtable_id = %s LIMIT 1",
        (entity.external_id,),
    )
    if cur.fetchone() is not None:
        return ALREADY_LINKED

    predicate, params = match_predicate_params(build_keys(entity), entity.entity_type)
    cur.execute(
        f"SELECT COUNT(*) FILTER (WHERE airtable_id IS NULL), COUNT(*) "
        f"FROM {table} WHERE {predicate}",
        params,
    )
    unlinked, matched = cur.fetchone()
    if unlinked == 1:
        return WOULD_LINK
    if unlinked > 1:
        return AMBIGUOUS
    if matched:
        return CONFLICT
    return WOULD_INSERT


def preview_matches(
    conn: psycopg.Connection,
    entities_by_type: dict[str, Iterable[CanonicalEntity]],
    counters: RunCounters,
) -> dict[str, dict[str, int]]:
    """Classify every entity against the current table contents.

    Returns entity_type → outcome → count (every outcome present, zero
    included).  Ambiguous and conflicting entities are also recorded as
    counter warnings.
    """
    summary: dict[str, dict[str, int]] = {}
    with conn.cursor() as cur:
        for entity_type in ENTITY_ORDER:
            if entity_type not in entities_by_type:
                continue
            per_type = {outcome: 0 for outcome in PREVIEW_OUTCOMES}
            for entity in entities_by_type[entity_type]:
                outcome = classify_entity(cur, entity)
                per_type[outcome] += 1
                counters.add_match_outcome(entity_type, outcome)
                if outcome in (AMBIGUOUS, CONFLICT):
                    counters.warnings.append(
                        f"{outcome}: {entity_type} {entity.external_id} "
                        f"({entity.display_name})"
                    )
            summary[entity_type] = per_type
    return summary
