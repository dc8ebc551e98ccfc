from __future__ import annotations

import logging
from typing import Callable, Iterable

from timeledger.mapping_store import MappingStore
from timeledger.models import (
    OP_CREATE,
    OP_DELETE,
    OP_SKIP,
    OP_UPDATE,
    DestinationRecord,
    Operation,
    PlannedValues,
    PlanResult,
    SourceEvent,
    UnmatchedEvent,
    parse_iso_datetime,
    to_epoch_ms,
)
from timeledger.reconciler import FallbackVerifier, changed_fields
from timeledger.task_id import TaskIdExtractor


_logger = logging.getLogger(__name__)


def _event_bounds(event: SourceEvent) -> tuple[int, int] | None:
    try:
        start = parse_iso_datetime(event.start, event.start_time_zone)
        end = parse_iso_datetime(event.end, event.end_time_zone)
    except ValueError:
        return None
    if start is None or end is None:
        return None
    return to_epoch_ms(start), to_epoch_ms(end)


def _describe(subject: str, subject_transform: Callable[[str], str] | None) -> str:
    if subject_transform is None:
        return subject
    try:
        return str(subject_transform(subject))
    except Exception as exc:
        _logger.warning("Subject transform failed for event; using raw subject: %s: %s", type(exc).__name__, exc)
        return subject


def _unmatched(event: SourceEvent, reason: str) -> UnmatchedEvent:
    return UnmatchedEvent(
        id=event.id,
        stable_key=event.stable_key,
        series_parent_id=event.series_parent_id,
        subject=event.subject,
        reason=reason,
    )


class ReconciliationPlanner:
    """Diff source events against destination records and the mapping.

    ``plan`` is a pure decision pass over in-memory inputs; the only I/O it
    may trigger is the verifier's single-record lookup for mapped records
    that the bulk fetch did not return.
    """

    def __init__(self, extractor: TaskIdExtractor, verifier: FallbackVerifier | None = None) -> None:
        self.extractor = extractor
        self.verifier = verifier or FallbackVerifier()

    def plan(
        self,
        events: list[SourceEvent],
        records: Iterable[DestinationRecord],
        mapping: MappingStore,
        subject_transform: Callable[[str], str] | None = None,
    ) -> PlanResult:
        mapping.rekey_legacy(events)
        self.verifier.reset()
        records_by_id = {record.id: record for record in records if record.id}

        result = PlanResult()
        # One slot per stable key; a later event with the same key replaces the earlier decision.
        decisions: dict[str, Operation] = {}
        seen_ids: set[str] = set()
        duplicate_ids: list[str] = []
        duplicate_keys: list[str] = []

        for event in events:
            if event.id in seen_ids:
                if event.id not in duplicate_ids:
                    duplicate_ids.append(event.id)
            else:
                seen_ids.add(event.id)

            if not event.stable_key:
                result.unmatched.append(_unmatched(event, "missing_stable_key"))
                continue

            extraction = self.extractor.extract(event)
            if extraction is None or not extraction.task_ref:
                result.unmatched.append(_unmatched(event, "no_task_id"))
                continue

            bounds = _event_bounds(event)
            if bounds is None:
                result.unmatched.append(_unmatched(event, "missing_time"))
                continue
            start_ms, stop_ms = bounds
            duration_ms = stop_ms - start_ms
            if duration_ms <= 0:
                result.unmatched.append(_unmatched(event, "non_positive_duration"))
                continue

            planned = PlannedValues(
                task_ref=extraction.task_ref,
                start_ms=start_ms,
                stop_ms=stop_ms,
                duration_ms=duration_ms,
                description=_describe(event.subject, subject_transform),
            )
            operation = self._decide(event, planned, mapping, records_by_id)

            if event.stable_key in decisions:
                if event.stable_key not in duplicate_keys:
                    duplicate_keys.append(event.stable_key)
                _logger.warning("Duplicate stable key in batch, keeping the later event: %s", event.stable_key)
                del decisions[event.stable_key]
            decisions[event.stable_key] = operation

        if duplicate_ids:
            _logger.warning("Duplicate event ids encountered in fetched window: %d", len(duplicate_ids))

        upserts: list[Operation] = []
        for operation in decisions.values():
            if operation.kind == OP_SKIP:
                result.skipped.append({"stable_key": operation.stable_key, "reason": operation.reason})
            else:
                upserts.append(operation)

        live_keys = {event.stable_key for event in events if event.stable_key}
        orphans = mapping.find_orphans(live_keys)
        deletes = [
            Operation(
                kind=OP_DELETE,
                stable_key=entry.source_key,
                destination_id=entry.destination_id,
                reason="orphan",
            )
            for entry in orphans
        ]

        # Creates and updates always precede deletes.
        result.ops = upserts + deletes
        result.orphan_count = len(orphans)
        result.skipped_count = len(result.skipped)
        result.fallback_fetches = self.verifier.fetches
        result.fallback_found = self.verifier.found
        result.duplicate_event_ids = duplicate_ids
        result.duplicate_stable_keys = duplicate_keys
        _logger.info(
            "Planned %d operations: create=%d update=%d delete=%d skipped=%d unmatched=%d",
            len(result.ops),
            len(result.ops_of(OP_CREATE)),
            len(result.ops_of(OP_UPDATE)),
            len(deletes),
            result.skipped_count,
            len(result.unmatched),
        )
        return result

    def _decide(
        self,
        event: SourceEvent,
        planned: PlannedValues,
        mapping: MappingStore,
        records_by_id: dict[str, DestinationRecord],
    ) -> Operation:
        entry = mapping.get(event.stable_key)
        if entry is None:
            return self._operation(OP_CREATE, event, planned)

        record = records_by_id.get(entry.destination_id)
        if record is not None:
            fields = changed_fields(record, planned, self.verifier.tolerance_ms)
            if not fields:
                return self._operation(OP_SKIP, event, planned, entry.destination_id, reason="unchanged")
            _logger.debug("Mapped record %s changed: %s", entry.destination_id, ", ".join(fields))
            return self._operation(OP_UPDATE, event, planned, entry.destination_id)

        verification = self.verifier.verify(entry, planned)
        if verification.decision == OP_CREATE:
            return self._operation(OP_CREATE, event, planned, reason=verification.reason)
        return self._operation(
            verification.decision,
            event,
            planned,
            entry.destination_id,
            reason=verification.reason,
        )

    @staticmethod
    def _operation(
        kind: str,
        event: SourceEvent,
        planned: PlannedValues,
        destination_id: str = "",
        reason: str = "",
    ) -> Operation:
        return Operation(
            kind=kind,
            stable_key=event.stable_key,
            event_id=event.id,
            series_parent_id=event.series_parent_id,
            destination_id=destination_id,
            task_ref=planned.task_ref,
            start_ms=planned.start_ms,
            stop_ms=planned.stop_ms,
            duration_ms=planned.duration_ms,
            subject=event.subject,
            description=planned.description,
            reason=reason,
        )
