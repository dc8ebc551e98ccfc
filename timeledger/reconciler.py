from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from timeledger.mapping_store import MappingEntry
from timeledger.models import OP_CREATE, OP_SKIP, OP_UPDATE, DestinationRecord, PlannedValues


TOLERANCE_MS = 1000

_logger = logging.getLogger(__name__)


def _within(observed: int | None, planned: int, tolerance_ms: int) -> bool:
    if observed is None:
        return False
    return abs(observed - planned) <= tolerance_ms


def changed_fields(record: DestinationRecord, planned: PlannedValues, tolerance_ms: int = TOLERANCE_MS) -> list[str]:
    """Names of the fields where ``record`` no longer matches ``planned``.

    Times compare within ``tolerance_ms``. Duration only counts when the
    record lets it be derived, and the task reference only when the record
    carries one.
    """
    fields: list[str] = []
    if not _within(record.start_ms, planned.start_ms, tolerance_ms):
        fields.append("start")
    if not _within(record.effective_stop_ms, planned.stop_ms, tolerance_ms):
        fields.append("stop")
    duration = record.effective_duration_ms
    if duration is not None and abs(duration - planned.duration_ms) > tolerance_ms:
        fields.append("duration")
    if record.task_ref and record.task_ref != planned.task_ref:
        fields.append("task_ref")
    if (record.description or "").strip() != (planned.description or "").strip():
        fields.append("description")
    return fields


def is_unchanged(record: DestinationRecord, planned: PlannedValues, tolerance_ms: int = TOLERANCE_MS) -> bool:
    return not changed_fields(record, planned, tolerance_ms)


@dataclass
class Verification:
    decision: str
    reason: str
    record: DestinationRecord | None = None


FetchOne = Callable[[str], "DestinationRecord | None"]


class FallbackVerifier:
    """Decide what to do with a mapped record missing from the bulk fetch.

    Order of evidence: a direct fetch by id, then the snapshot stored when
    the record was last written, then nothing. A matching snapshot skips and
    a mismatching one updates the remembered id. Only a mapping without any
    snapshot leads to a create.
    """

    def __init__(self, fetch_one: FetchOne | None = None, tolerance_ms: int = TOLERANCE_MS) -> None:
        self.fetch_one = fetch_one
        self.tolerance_ms = tolerance_ms
        self.fetches = 0
        self.found = 0

    def reset(self) -> None:
        self.fetches = 0
        self.found = 0

    def _fetch(self, destination_id: str) -> DestinationRecord | None:
        if self.fetch_one is None or not destination_id:
            return None
        self.fetches += 1
        try:
            record = self.fetch_one(destination_id)
        except Exception as exc:
            _logger.warning("Fallback fetch failed for %s: %s: %s", destination_id, type(exc).__name__, exc)
            return None
        if record is not None:
            self.found += 1
        return record

    def verify(self, entry: MappingEntry, planned: PlannedValues) -> Verification:
        record = self._fetch(entry.destination_id)
        if record is not None:
            if is_unchanged(record, planned, self.tolerance_ms):
                return Verification(decision=OP_SKIP, reason="fallback_fetch", record=record)
            return Verification(decision=OP_UPDATE, reason="fallback_fetch", record=record)

        snapshot = entry.snapshot
        if snapshot is not None:
            if is_unchanged(snapshot.as_record(entry.destination_id), planned, self.tolerance_ms):
                return Verification(decision=OP_SKIP, reason="snapshot_match")
            return Verification(decision=OP_UPDATE, reason="snapshot_based")

        return Verification(decision=OP_CREATE, reason="missing_remote")
