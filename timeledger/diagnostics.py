from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from timeledger.models import DestinationRecord, PlanResult
from timeledger.window import SyncWindow


DRY_RUN_FILENAME = "dry_run.json"


def build_dry_run_report(
    *,
    window: SyncWindow,
    total_events: int,
    records: list[DestinationRecord],
    plan: PlanResult,
) -> dict[str, Any]:
    return {
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "window": window.to_dict(),
        "totalEvents": total_events,
        "plannedOperations": len(plan.ops),
        "unmatchedCount": len(plan.unmatched),
        "orphanCount": plan.orphan_count,
        "skippedCount": plan.skipped_count,
        "fallbackFetches": plan.fallback_fetches,
        "fallbackFound": plan.fallback_found,
        "existingEntriesCount": len(records),
        "existingEntries": [record.to_dict() for record in records],
        "ops": [op.to_dict() for op in plan.ops],
        "unmatched": [item.to_dict() for item in plan.unmatched],
        "duplicateEventIds": list(plan.duplicate_event_ids),
        "duplicateStableKeys": list(plan.duplicate_stable_keys),
    }


def write_dry_run_report(staging_dir: str | Path, report: dict[str, Any]) -> Path:
    directory = Path(staging_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / DRY_RUN_FILENAME
    path.write_text(json.dumps(report, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def read_dry_run_report(staging_dir: str | Path) -> dict[str, Any]:
    path = Path(staging_dir) / DRY_RUN_FILENAME
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _tally(items: Iterable[dict[str, Any]], field: str, limit: int = 20) -> dict[str, Any]:
    counts = Counter(str(item[field]) for item in items if item.get(field))
    duplicates = [[value, count] for value, count in counts.most_common() if count > 1]
    return {"unique": len(counts), "duplicates": duplicates[:limit]}


def analyze_ids(report: dict[str, Any]) -> dict[str, Any]:
    """Count repeated event ids and stable keys across a dry-run report."""
    ops = [op for op in report.get("ops", []) if isinstance(op, dict)]
    unmatched = [item for item in report.get("unmatched", []) if isinstance(item, dict)]
    rows = [{"event_id": op.get("event_id"), "stable_key": op.get("stable_key")} for op in ops]
    rows += [{"event_id": item.get("id"), "stable_key": item.get("stable_key")} for item in unmatched]
    event_ids = _tally(rows, "event_id")
    stable_keys = _tally(rows, "stable_key")
    return {
        "sampleTotal": len(rows),
        "uniqueEventIds": event_ids["unique"],
        "duplicateEventIds": event_ids["duplicates"],
        "uniqueStableKeys": stable_keys["unique"],
        "duplicateStableKeys": stable_keys["duplicates"],
    }
