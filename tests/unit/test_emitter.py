"""Unit tests for crm_sync.emitter."""

from datetime import datetime, timezone

from crm_sync.emitter import DEFAULT_TITLE, emit, header_lines, summary_line
from crm_sync.models import COMPANY, JOB, PERSON, Company, Person
from crm_sync.planner import PlanInput, build_plan

GENERATED = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _plan(people_complete=True):
    jane = Person(external_id="rec1", name="Jane Doe", stage="messaged", source_stage="MSG SENT")
    acme = Company(external_id="recC1", name="Acme")
    return build_plan(
        {
            PERSON: PlanInput([jane], ["rec1"], fetch_complete=people_complete),
            COMPANY: PlanInput([acme], ["recC1"]),
            JOB: PlanInput(),
        },
        generated_at=GENERATED,
    )


class TestHeader:
    def test_summary_line(self):
        assert summary_line(_plan()) == "-- SUMMARY: people=1 companies=1 jobs=0"

    def test_header(self):
        lines = header_lines(_plan())
        assert lines[0] == f"-- {DEFAULT_TITLE}"
        assert lines[1] == "-- Generated: 2024-06-01T12:00:00+00:00"
        assert lines[2].startswith("-- SUMMARY:")
        assert lines[3] == "-- PLANNED: updates=2 inserts=2 refreshes=2 links=0 deletes=2"

    def test_skipped_cleanups_listed(self):
        lines = header_lines(_plan(people_complete=False))
        assert "-- CLEANUP SKIPPED for people: source fetch incomplete" in lines
        assert "-- CLEANUP SKIPPED for jobs: source returned no records" in lines


class TestEmit:
    def test_statement_comments(self):
        text = emit(_plan())
        assert "-- Update person: Jane Doe (Stage: MSG SENT -> messaged)\nUPDATE people SET" in text
        assert "-- Insert company: Acme\nINSERT INTO companies" in text

    def test_section_order(self):
        text = emit(_plan())
        positions = [
            text.index("-- PEOPLE UPDATE QUERIES"),
            text.index("-- COMPANIES UPDATE QUERIES"),
            text.index("-- PEOPLE INSERT QUERIES"),
            text.index("-- COMPANIES INSERT QUERIES"),
            text.index("-- PEOPLE REFRESH QUERIES"),
            text.index("-- COMPANIES CLEANUP QUERIES"),
        ]
        assert positions == sorted(positions)

    def test_no_delete_when_incomplete(self):
        text = emit(_plan(people_complete=False))
        assert "DELETE FROM people" not in text
        assert "DELETE FROM companies" in text

    def test_custom_title(self):
        assert emit(_plan(), title="NIGHTLY").startswith("-- NIGHTLY\n")

    def test_ends_with_newline(self):
        assert emit(_plan()).endswith(";\n")

    def test_multiline_name_kept_on_comment_line(self):
        plan = build_plan(
            {PERSON: PlanInput([Person(external_id="r", name="A\nB")], ["r"])},
            generated_at=GENERATED,
        )
        assert "-- Update person: A B\n" in emit(plan)
