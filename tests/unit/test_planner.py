"""Unit tests for crm_sync.planner."""

from datetime import datetime, timezone

import pytest

from crm_sync.models import (
    COMPANY,
    DELETE,
    INSERT,
    JOB,
    LINK,
    PERSON,
    REFRESH,
    UPDATE,
    Company,
    Job,
    Person,
)
from crm_sync.planner import (
    PlanInput,
    PlanningError,
    build_plan,
    entity_columns,
    is_plannable,
    plan_cleanup,
    plan_company_links,
    plan_entity,
    plan_insert,
    plan_refresh,
    plan_update,
)

GENERATED = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _jane(**overrides) -> Person:
    kwargs = dict(
        external_id="rec1",
        name="Jane Doe",
        stage="messaged",
        source_stage="MSG SENT",
    )
    kwargs.update(overrides)
    return Person(**kwargs)


def _input(entities, complete=True, extra_ids=()):
    return PlanInput(
        entities=list(entities),
        fetched_ids=[e.external_id for e in entities] + list(extra_ids),
        fetch_complete=complete,
    )


# ---------------------------------------------------------------------------
# Columns / preconditions
# ---------------------------------------------------------------------------

class TestEntityColumns:
    def test_excludes_non_columns(self):
        cols = entity_columns(_jane(company_external_id="recC"))
        assert "external_id" not in cols
        assert "company_external_id" not in cols
        assert "source_stage" not in cols
        assert "created_at" not in cols
        assert cols["name"] == "Jane Doe"
        assert cols["stage"] == "messaged"


class TestIsPlannable:
    def test_named_person(self):
        assert is_plannable(_jane())

    def test_blank_name(self):
        assert not is_plannable(Person(external_id="rec1", name="   "))

    def test_job_needs_title(self):
        assert not is_plannable(Job(external_id="recJ", title="", company_name="Acme"))


# ---------------------------------------------------------------------------
# Update / insert pair
# ---------------------------------------------------------------------------

class TestPlanUpdate:
    def test_example_record(self):
        stmt = plan_update(_jane())
        assert stmt.kind == UPDATE
        assert stmt.entity_type == PERSON
        assert "UPDATE people SET" in stmt.sql_text
        assert "stage = 'messaged'" in stmt.sql_text
        assert "airtable_id = 'rec1'" in stmt.sql_text
        assert "updated_at = NOW()" in stmt.sql_text
        assert "LOWER(name) = LOWER('Jane Doe')" in stmt.sql_text

    def test_only_unlinked_rows(self):
        assert "AND airtable_id IS NULL" in plan_update(_jane()).sql_text

    def test_links_single_oldest_row(self):
        sql = plan_update(_jane()).sql_text
        assert "WHERE id = (" in sql
        assert "ORDER BY created_at ASC, id ASC" in sql
        assert "LIMIT 1" in sql

    def test_guard_against_existing_link(self):
        sql = plan_update(_jane()).sql_text
        assert "AND NOT EXISTS (SELECT 1 FROM people WHERE airtable_id = 'rec1')" in sql

    def test_label_shows_stage_mapping(self):
        assert plan_update(_jane()).label == "Update person: Jane Doe (Stage: MSG SENT -> messaged)"

    def test_created_at_only_when_known(self):
        assert "created_at = " not in plan_update(_jane()).sql_text
        ts = datetime(2023, 1, 1, tzinfo=timezone.utc)
        assert "created_at = '2023-01-01T00:00:00+00:00'" in plan_update(_jane(created_at=ts)).sql_text

    def test_quote_escaped_once(self):
        sql = plan_update(_jane(name="O'Brien")).sql_text
        assert "name = 'O''Brien'" in sql
        assert "LOWER('O''Brien')" in sql
        assert "O''''Brien" not in sql


class TestPlanInsert:
    def test_example_record(self):
        stmt = plan_insert(_jane())
        assert stmt.kind == INSERT
        assert stmt.sql_text.startswith("INSERT INTO people (airtable_id, name,")
        assert "'messaged'" in stmt.sql_text
        assert "WHERE NOT EXISTS (" in stmt.sql_text
        assert "airtable_id = 'rec1'" in stmt.sql_text

    def test_guard_includes_match_keys(self):
        sql = plan_insert(_jane(email="Jane@X.com")).sql_text
        assert "OR (LOWER(name) = LOWER('Jane Doe') OR LOWER(email) = LOWER('Jane@X.com'))" in sql

    def test_is_favourite_defaulted(self):
        assert "is_favourite" in plan_insert(_jane()).sql_text
        assert "is_favourite" not in plan_insert(
            Job(external_id="recJ", title="Eng", company_name="Acme")
        ).sql_text

    def test_created_at_defaults_to_now(self):
        sql = plan_insert(_jane()).sql_text
        assert "created_at, updated_at)" in sql
        assert "NOW(), NOW()" in sql

    def test_null_values(self):
        assert "NULL" in plan_insert(_jane()).sql_text

    def test_plan_entity_pair(self):
        update, insert = plan_entity(_jane())
        assert (update.kind, insert.kind) == (UPDATE, INSERT)


class TestPlanRefresh:
    def test_targets_linked_row_only(self):
        stmt = plan_refresh(_jane(stage="meeting_booked"))
        assert stmt.kind == REFRESH
        assert "WHERE airtable_id = 'rec1'" in stmt.sql_text
        assert "stage = 'meeting_booked'" in stmt.sql_text
        assert "airtable_id IS NULL" not in stmt.sql_text

    def test_guarded_by_change(self):
        sql = plan_refresh(_jane()).sql_text
        assert "AND (stage IS DISTINCT FROM 'messaged' OR automation_started_at IS NOT NULL);" in sql

    def test_automation_start_kept_once_set(self):
        ts = datetime(2024, 5, 1, tzinfo=timezone.utc)
        sql = plan_refresh(_jane(automation_started_at=ts)).sql_text
        assert (
            "automation_started_at = COALESCE(automation_started_at, "
            "'2024-05-01T00:00:00+00:00')"
        ) in sql
        assert "OR automation_started_at IS NULL)" in sql

    def test_not_automated_clears_start(self):
        assert "automation_started_at = NULL" in plan_refresh(_jane()).sql_text

    def test_company_automation_flag(self):
        sql = plan_refresh(Company(external_id="recC1", name="Acme", automation_active=True)).sql_text
        assert "automation_active = true" in sql
        assert "automation_active IS DISTINCT FROM true" in sql
        assert "stage" not in sql

    def test_job_status(self):
        sql = plan_refresh(Job(external_id="recJ1", title="Eng", status="closed")).sql_text
        assert sql.startswith("UPDATE jobs SET\n    status = 'closed',")

    def test_label(self):
        assert plan_refresh(_jane()).label == "Refresh person: Jane Doe (Stage: MSG SENT -> messaged)"


# ---------------------------------------------------------------------------
# Company links
# ---------------------------------------------------------------------------

class TestPlanCompanyLinks:
    def test_values_join(self):
        stmt = plan_company_links(
            [_jane(company_external_id="recC1"), _jane(external_id="rec2", name="B")],
            PERSON,
        )
        assert stmt.kind == LINK
        assert "('rec1', 'recC1')" in stmt.sql_text
        assert "'rec2'" not in stmt.sql_text
        assert "JOIN companies c ON c.airtable_id = v.company_airtable_id" in stmt.sql_text
        assert "IS DISTINCT FROM c.id" in stmt.sql_text

    def test_no_links(self):
        assert plan_company_links([_jane()], PERSON) is None

    def test_companies_cannot_link(self):
        with pytest.raises(PlanningError):
            plan_company_links([], COMPANY)


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

class TestPlanCleanup:
    def test_excludes_manual_rows(self):
        stmt = plan_cleanup([_jane(), _jane(external_id="rec2")], PERSON)
        assert stmt.kind == DELETE
        assert "WHERE airtable_id IS NOT NULL" in stmt.sql_text
        assert "airtable_id NOT IN ('rec1', 'rec2')" in stmt.sql_text

    def test_extra_ids_kept(self):
        stmt = plan_cleanup([_jane()], PERSON, extra_ids=["recRejected"])
        assert "'recRejected'" in stmt.sql_text

    def test_empty_set_refused(self):
        with pytest.raises(PlanningError):
            plan_cleanup([], PERSON)


# ---------------------------------------------------------------------------
# Whole plan
# ---------------------------------------------------------------------------

class TestBuildPlan:
    def _inputs(self, people_complete=True):
        return {
            PERSON: _input([_jane(company_external_id="recC1")], complete=people_complete),
            COMPANY: _input([Company(external_id="recC1", name="Acme")]),
            JOB: _input([Job(external_id="recJ1", title="Eng", company_name="Acme",
                             company_external_id="recC1")]),
        }

    def test_ordering(self):
        plan = build_plan(self._inputs(), generated_at=GENERATED)
        assert [(s.kind, s.entity_type) for s in plan.statements] == [
            (UPDATE, PERSON), (UPDATE, COMPANY), (UPDATE, JOB),
            (INSERT, PERSON), (INSERT, COMPANY), (INSERT, JOB),
            (REFRESH, PERSON), (REFRESH, COMPANY), (REFRESH, JOB),
            (LINK, PERSON), (LINK, JOB),
            (DELETE, PERSON), (DELETE, COMPANY), (DELETE, JOB),
        ]

    def test_record_counts(self):
        plan = build_plan(self._inputs(), generated_at=GENERATED)
        assert plan.record_counts == {PERSON: 1, COMPANY: 1, JOB: 1}
        assert plan.generated_at == GENERATED

    def test_incomplete_fetch_skips_delete(self):
        plan = build_plan(self._inputs(people_complete=False), generated_at=GENERATED)
        assert plan.count(DELETE, PERSON) == 0
        assert plan.count(DELETE, COMPANY) == 1
        assert plan.skipped_cleanups == {PERSON: "source fetch incomplete"}
        assert plan.count(UPDATE, PERSON) == 1

    def test_empty_source_skips_delete(self):
        plan = build_plan({PERSON: PlanInput()}, generated_at=GENERATED)
        assert plan.statements == []
        assert plan.skipped_cleanups == {PERSON: "source returned no records"}

    def test_rejected_ids_protect_rows(self):
        plan = build_plan(
            {PERSON: _input([_jane()], extra_ids=["recBlank"])}, generated_at=GENERATED
        )
        delete = plan.of_kind(DELETE)[0]
        assert "'recBlank'" in delete.sql_text
        assert plan.record_counts[PERSON] == 2

    def test_only_rejected_records_still_plans_cleanup(self):
        plan = build_plan(
            {PERSON: PlanInput(fetched_ids=["recBlank"])}, generated_at=GENERATED
        )
        assert plan.count(DELETE) == 1

    def test_unknown_type(self):
        with pytest.raises(PlanningError):
            build_plan({"deal": PlanInput()})

    def test_mismatched_entity(self):
        with pytest.raises(PlanningError):
            build_plan({COMPANY: _input([_jane()])})

    def test_deterministic(self):
        a = build_plan(self._inputs(), generated_at=GENERATED)
        b = build_plan(self._inputs(), generated_at=GENERATED)
        assert a.statements == b.statements
