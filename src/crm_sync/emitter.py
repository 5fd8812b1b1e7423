"""crm_sync.emitter

Serializes a ReconciliationPlan into a reviewable SQL script.

The script is never executed by the generator itself; writing it to disk
and running it are the caller's job.
"""

from __future__ import annotations

from crm_sync.models import (
    DELETE,
    ENTITY_ORDER,
    INSERT,
    KIND_PLURALS,
    LINK,
    REFRESH,
    STATEMENT_KINDS,
    TARGET_TABLES,
    UPDATE,
    ReconciliationPlan,
)

DEFAULT_TITLE = "AIRTABLE TO SUPABASE RECONCILIATION SYNC"

_SECTION_SUFFIX = {
    UPDATE:  "UPDATE QUERIES (link existing unlinked rows)",
    INSERT:  "INSERT QUERIES (for truly new records)",
    REFRESH: "REFRESH QUERIES (source-owned fields on linked rows)",
    LINK:    "COMPANY LINK QUERIES",
    DELETE:  "CLEANUP QUERIES (remove records not in Airtable)",
}


def summary_line(plan: ReconciliationPlan) -> str:
    parts = [
        f"{TARGET_TABLES[t]}={plan.record_counts[t]}"
        for t in ENTITY_ORDER
        if t in plan.record_counts
    ]
    return "-- SUMMARY: " + " ".join(parts)


def header_lines(plan: ReconciliationPlan, title: str = DEFAULT_TITLE) -> list[str]:
    lines = [
        f"-- {title}",
        f"-- Generated: {plan.generated_at.isoformat()}",
        summary_line(plan),
        "-- PLANNED: " + " ".join(
            f"{KIND_PLURALS[kind]}={plan.count(kind)}" for kind in STATEMENT_KINDS
        ),
    ]
    for entity_type in ENTITY_ORDER:
        reason = plan.skipped_cleanups.get(entity_type)
        if reason:
            lines.append(f"-- CLEANUP SKIPPED for {TARGET_TABLES[entity_type]}: {reason}")
    return lines


def emit(plan: ReconciliationPlan, title: str = DEFAULT_TITLE) -> str:
    """Return the full script: the header, then one section per statement kind."""
    blocks: list[str] = ["\n".join(header_lines(plan, title))]

    for kind in STATEMENT_KINDS:
        for entity_type in ENTITY_ORDER:
            statements = [
                s for s in plan.statements
                if s.kind == kind and s.entity_type == entity_type
            ]
            if not statements:
                continue
            blocks.append(f"-- {TARGET_TABLES[entity_type].upper()} {_SECTION_SUFFIX[kind]}")
            for stmt in statements:
                blocks.append(f"-- {stmt.label}\n{stmt.sql_text}")

    return "\n\n".join(blocks) + "\n"
