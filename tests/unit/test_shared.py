"""Unit tests for crm_sync.shared (rejects, counters, run report)."""

import csv
import json

from crm_sync.models import DELETE, PERSON, UPDATE
from crm_sync.shared import RejectWriter, RunCounters, write_run_report


class TestRejectWriter:
    def test_lazy_open(self, tmp_path):
        path = tmp_path / "rejects" / "r.csv"
        w = RejectWriter(path)
        w.close()
        assert not path.exists()

    def test_writes_reason_column(self, tmp_path):
        path = tmp_path / "r.csv"
        w = RejectWriter(path)
        w.write({"entity_type": "person", "airtable_id": "rec1"}, "missing_name")
        w.write({"entity_type": "person", "airtable_id": "rec2"}, "missing_name")
        w.close()
        with path.open(newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert [r["airtable_id"] for r in rows] == ["rec1", "rec2"]
        assert rows[0]["_reject_reason"] == "missing_name"
        assert w.count == 2


class TestRunCounters:
    def test_rows_affected(self):
        c = RunCounters()
        c.add_rows_affected(UPDATE, PERSON, 1)
        c.add_rows_affected(UPDATE, PERSON, 0)
        c.add_rows_affected(DELETE, PERSON, 3)
        c.add_rows_affected(DELETE, PERSON, -1)
        assert c.rows_affected[UPDATE][PERSON] == 1
        assert c.total_rows_affected(DELETE) == 3
        assert c.total_rows_affected() == 4

    def test_match_outcomes(self):
        c = RunCounters()
        c.add_match_outcome(PERSON, "would_link")
        c.add_match_outcome(PERSON, "would_link")
        assert c.match_outcomes == {PERSON: {"would_link": 2}}

    def test_warnings_capped_in_dict(self):
        c = RunCounters()
        c.warnings.extend(f"w{i}" for i in range(80))
        assert len(c.to_dict()["warnings"]) == 50


class TestWriteRunReport:
    def test_report_contents(self, tmp_path):
        c = RunCounters()
        c.records_fetched[PERSON] = 5
        path = write_run_report(
            "run-1", "2024-06-01T12:00:00", "plan", False,
            {"sql_path": "out.sql"}, c, report_dir=tmp_path,
        )
        assert path == tmp_path / "run-1.json"
        report = json.loads(path.read_text())
        assert report["run_id"] == "run-1"
        assert report["mode"] == "plan"
        assert report["sql_path"] == "out.sql"
        assert report["counters"]["records_fetched"][PERSON] == 5
