"""crm_sync.shared

Shared run utilities: RejectWriter, RunCounters and report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from crm_sync.models import ENTITY_ORDER, STATEMENT_KINDS


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected records."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

def _per_type() -> dict[str, int]:
    return {t: 0 for t in ENTITY_ORDER}


@dataclass
class RunCounters:
    # Source
    records_fetched: dict[str, int] = field(default_factory=_per_type)
    pages_fetched: dict[str, int] = field(default_factory=_per_type)
    incomplete_fetches: list[str] = field(default_factory=list)
    # Normalization
    records_normalized: dict[str, int] = field(default_factory=_per_type)
    records_rejected: dict[str, int] = field(default_factory=_per_type)
    unmapped_stage_labels: int = 0
    # Planning
    statements_planned: dict[str, int] = field(
        default_factory=lambda: {k: 0 for k in STATEMENT_KINDS}
    )
    cleanups_skipped: list[str] = field(default_factory=list)
    # Apply
    rows_affected: dict[str, dict[str, int]] = field(default_factory=dict)
    # Preview
    match_outcomes: dict[str, dict[str, int]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def add_rows_affected(self, kind: str, entity_type: str, n: int) -> None:
        per_kind = self.rows_affected.setdefault(kind, _per_type())
        per_kind[entity_type] = per_kind.get(entity_type, 0) + max(n, 0)

    def add_match_outcome(self, entity_type: str, outcome: str) -> None:
        per_type = self.match_outcomes.setdefault(entity_type, {})
        per_type[outcome] = per_type.get(outcome, 0) + 1

    def total_rows_affected(self, kind: str | None = None) -> int:
        kinds = [kind] if kind else list(self.rows_affected)
        return sum(sum(self.rows_affected.get(k, {}).values()) for k in kinds)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
