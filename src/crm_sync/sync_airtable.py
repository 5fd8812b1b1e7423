"""crm_sync.sync_airtable

CLI entrypoint for the Airtable → Postgres reconciliation sync.

Modes (--mode):
  plan     — fetch, normalize and plan; write the reviewable SQL script (default)
  apply    — as plan, then execute the script against --db-dsn in one transaction
  preview  — as plan, then report how each record would match existing rows

Credentials are read from the environment (names set by --token-env and
--base-env), never from CLI arguments.

Usage (plan):
    AIRTABLE_TOKEN=... AIRTABLE_BASE_ID=app... \\
    python -m crm_sync.sync_airtable \\
        --mode plan \\
        --output-path artifacts/sql/airtable_sync.sql

Usage (apply, dry run):
    python -m crm_sync.sync_airtable \\
        --mode apply \\
        --db-dsn "$DB_DSN" \\
        --dry-run
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg
import yaml

from crm_sync.airtable_source import FetchResult, SourceFetchError, fetch_tables
from crm_sync.apply import PREVIEW_OUTCOMES, apply_plan, preview_matches
from crm_sync.config import ConfigError, SyncConfig, load_overrides
from crm_sync.emitter import emit
from crm_sync.models import (
    ENTITY_ORDER,
    JOB,
    KIND_PLURALS,
    PERSON,
    STATEMENT_KINDS,
    TARGET_TABLES,
    ReconciliationPlan,
)
from crm_sync.planner import PlanInput, PlanningError, build_plan, is_plannable
from crm_sync.shared import RejectWriter, RunCounters, write_run_report
from crm_sync.stages import is_known_stage_label
from crm_sync.transform import normalize

log = logging.getLogger(__name__)

MODES = ("plan", "apply", "preview")


# ---------------------------------------------------------------------------
# Pipeline helpers
# ---------------------------------------------------------------------------

def load_config(
    token_env: str,
    base_env: str,
    config_file: str | None,
) -> SyncConfig:
    """Build SyncConfig from env plus the optional YAML file.

    Raises:
        ConfigError: On missing env vars, an unreadable file or bad values.
    """
    config = SyncConfig.from_env(token_env=token_env, base_env=base_env)
    if config_file:
        try:
            load_overrides(config, Path(config_file))
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {config_file}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"config file is not valid YAML: {exc}") from exc
    return config


def build_plan_inputs(
    results: dict[str, FetchResult],
    counters: RunCounters,
    rejects: RejectWriter,
    now: datetime,
) -> dict[str, PlanInput]:
    """Normalize fetched records and split off those that cannot be planned.

    Rejected records keep their ids in fetched_ids so cleanup never deletes
    a row whose source record still exists.
    """
    inputs: dict[str, PlanInput] = {}
    for entity_type in ENTITY_ORDER:
        if entity_type not in results:
            continue
        result = results[entity_type]
        counters.records_fetched[entity_type] = len(result.records)
        counters.pages_fetched[entity_type] = result.pages
        if not result.complete:
            log.warning("%s fetch incomplete; cleanup will be skipped", result.table_name)
            counters.incomplete_fetches.append(entity_type)
            counters.warnings.append(
                f"{result.table_name}: fetch incomplete after {result.pages} page(s): "
                f"{result.error}"
            )

        item = PlanInput(fetched_ids=result.ids, fetch_complete=result.complete)
        for record in result.records:
            entity = normalize(record, entity_type, now)
            if entity_type == PERSON and not is_known_stage_label(record.fields.get("Stage")):
                counters.unmapped_stage_labels += 1
                counters.warnings.append(
                    f"unmapped stage {record.fields.get('Stage')!r} on {record.external_id}; "
                    "using 'new'"
                )
            if not is_plannable(entity):
                counters.records_rejected[entity_type] += 1
                rejects.write(
                    {
                        "entity_type": entity_type,
                        "source_table": result.table_name,
                        "airtable_id": record.external_id,
                        "fields": json.dumps(record.fields, default=str, sort_keys=True),
                    },
                    "missing_title" if entity_type == JOB else "missing_name",
                )
                continue
            counters.records_normalized[entity_type] += 1
            item.entities.append(entity)
        inputs[entity_type] = item
    return inputs


def _record_plan_counts(plan: ReconciliationPlan, counters: RunCounters) -> None:
    for kind in STATEMENT_KINDS:
        counters.statements_planned[kind] = plan.count(kind)
    for entity_type, reason in plan.skipped_cleanups.items():
        counters.cleanups_skipped.append(entity_type)
        counters.warnings.append(
            f"cleanup skipped for {TARGET_TABLES[entity_type]}: {reason}"
        )


def write_sql(path: Path, sql_text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(sql_text, encoding="utf-8")
    return path


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="plan",
    type=click.Choice(MODES),
    show_default=True,
    help="plan: write SQL only; apply: execute it; preview: report match outcomes",
)
@click.option("--db-dsn", default=None, help="[apply|preview] PostgreSQL DSN")
@click.option(
    "--output-path",
    default=None,
    type=click.Path(),
    help="SQL script path (default: ./artifacts/sql/airtable_sync_{run_id}.sql)",
)
@click.option("--config-file", default=None, type=click.Path(), help="YAML settings overrides")
@click.option("--token-env", default="AIRTABLE_TOKEN", show_default=True, help="Env var name holding the Airtable token")
@click.option("--base-env", default="AIRTABLE_BASE_ID", show_default=True, help="Env var name holding the Airtable base id")
@click.option(
    "--allow-partial",
    is_flag=True,
    default=False,
    help="Proceed when a table fetch was incomplete (cleanup is still skipped)",
)
@click.option("--dry-run", is_flag=True, default=False, help="[apply] Roll back instead of committing")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/airtable_sync_rejects.csv",
    type=click.Path(),
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    output_path: str | None,
    config_file: str | None,
    token_env: str,
    base_env: str,
    allow_partial: bool,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Reconcile Airtable People/Company/Jobs into the CRM database."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    started_at = now.isoformat()
    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    sql_path = Path(output_path or f"./artifacts/sql/airtable_sync_{run_id}.sql")

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode in ("apply", "preview") and not db_dsn:
        _fatal(run_id, f"--db-dsn is required for --mode {mode}")

    try:
        config = load_config(token_env, base_env, config_file)
    except ConfigError as exc:
        _fatal(run_id, str(exc))

    # Fetch phase
    try:
        results = fetch_tables(config)
    except SourceFetchError as exc:
        _fatal(run_id, f"source fetch failed: {exc}")

    for entity_type in ENTITY_ORDER:
        result = results[entity_type]
        state = "complete" if result.complete else "INCOMPLETE"
        click.echo(
            f"[{run_id}] Fetched {len(result.records)} {TARGET_TABLES[entity_type]} "
            f"records from '{result.table_name}' ({result.pages} page(s), {state})"
        )

    # Plan phase
    try:
        inputs = build_plan_inputs(results, counters, rejects, now)
        plan = build_plan(inputs, generated_at=now)
    except PlanningError as exc:
        _fatal(run_id, f"planning failed: {exc}")
    finally:
        rejects.close()
    _record_plan_counts(plan, counters)

    write_sql(sql_path, emit(plan))
    click.echo(
        f"[{run_id}] Wrote {len(plan.statements)} statements to {sql_path} ("
        + " ".join(f"{KIND_PLURALS[kind]}={plan.count(kind)}" for kind in STATEMENT_KINDS)
        + ")"
    )
    for entity_type, reason in plan.skipped_cleanups.items():
        click.echo(f"[{run_id}] WARNING: cleanup skipped for {TARGET_TABLES[entity_type]}: {reason}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} record(s) rejected → {rejects_path}")

    paths = {"sql_path": str(sql_path), "rejects_path": rejects_path}

    if counters.incomplete_fetches and not allow_partial:
        report_path = write_run_report(run_id, started_at, mode, dry_run, paths, counters)
        click.echo(f"[{run_id}] Run report: {report_path}")
        _fatal(
            run_id,
            f"incomplete fetch for {', '.join(counters.incomplete_fetches)}; "
            "re-run or pass --allow-partial",
        )

    # DB phase
    if mode == "apply":
        _run_apply(run_id, db_dsn, plan, counters, dry_run)  # type: ignore[arg-type]
    elif mode == "preview":
        _run_preview(run_id, db_dsn, inputs, counters)  # type: ignore[arg-type]

    report_path = write_run_report(run_id, started_at, mode, dry_run, paths, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_apply(
    run_id: str,
    db_dsn: str,
    plan: ReconciliationPlan,
    counters: RunCounters,
    dry_run: bool,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        try:
            total = apply_plan(conn, plan, counters)
        except psycopg.Error as exc:
            conn.rollback()
            _fatal(run_id, f"database error during apply; rolled back: {exc}")

        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] {total} row(s) affected; all changes rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed: {total} row(s) affected.")
    finally:
        conn.close()

    for kind in STATEMENT_KINDS:
        per_type = counters.rows_affected.get(kind, {})
        click.echo(
            f"[{run_id}]   {kind}: "
            + " ".join(f"{TARGET_TABLES[t]}={per_type.get(t, 0)}" for t in ENTITY_ORDER)
        )


def _run_preview(
    run_id: str,
    db_dsn: str,
    inputs: dict[str, PlanInput],
    counters: RunCounters,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        summary = preview_matches(
            conn, {t: item.entities for t, item in inputs.items()}, counters
        )
    except psycopg.Error as exc:
        _fatal(run_id, f"database error during preview: {exc}")
    finally:
        conn.rollback()
        conn.close()

    for entity_type, outcomes in summary.items():
        click.echo(
            f"[{run_id}] {TARGET_TABLES[entity_type]}: "
            + " ".join(f"{o}={outcomes[o]}" for o in PREVIEW_OUTCOMES)
        )


if __name__ == "__main__":
    main()
