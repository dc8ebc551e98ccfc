import unittest
from datetime import datetime, timezone
from unittest import mock

from timeledger.mapping_store import MappingEntry, MappingStore
from timeledger.models import DestinationRecord, SourceEvent, SubjectTransformConfig, SyncConfig, to_epoch_ms
from timeledger.planner import ReconciliationPlanner
from timeledger.reconciler import FallbackVerifier
from timeledger.subject_transform import build_subject_transform, trim_subject
from timeledger.task_id import TaskIdExtractor


def _ms(hour: int, minute: int = 0) -> int:
    return to_epoch_ms(datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc))


def _event(
    key: str,
    *,
    event_id: str = "",
    body: str = "tid#AB12cd34",
    start: str = "2026-03-02T09:00:00.0000000",
    end: str = "2026-03-02T10:00:00.0000000",
    subject: str = "Client work",
) -> SourceEvent:
    return SourceEvent(
        id=event_id or f"id-{key}",
        stable_key=key,
        subject=subject,
        body_html=body,
        start=start,
        end=end,
        start_time_zone="UTC",
        end_time_zone="UTC",
    )


def _snapshot(start: int, stop: int, task_ref: str = "AB12cd34", description: str = "Client work") -> dict:
    return {"start": start, "stop": stop, "duration": stop - start, "taskRef": task_ref, "description": description}


class PlannerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fetch_one = mock.Mock(return_value=None)
        self.planner = ReconciliationPlanner(
            TaskIdExtractor.from_config(SyncConfig()),
            FallbackVerifier(self.fetch_one),
        )

    def test_unmapped_event_creates(self) -> None:
        result = self.planner.plan([_event("k1")], [], MappingStore(), trim_subject)
        self.assertEqual(len(result.ops), 1)
        op = result.ops[0]
        self.assertEqual(op.kind, "create")
        self.assertEqual(op.stable_key, "k1")
        self.assertEqual(op.task_ref, "AB12cd34")
        self.assertEqual(op.start_ms, _ms(9))
        self.assertEqual(op.stop_ms, _ms(10))
        self.assertEqual(op.duration_ms, 3_600_000)
        self.assertEqual(op.description, "Client work")

    def test_events_without_identifier_are_unmatched_and_never_planned(self) -> None:
        mapping = MappingStore()
        mapping.upsert("k1", "te-1")
        result = self.planner.plan([_event("k1", body="<p>No task here</p>")], [], mapping, trim_subject)
        self.assertEqual([(u.stable_key, u.reason) for u in result.unmatched], [("k1", "no_task_id")])
        self.assertEqual(result.ops, [])
        # Still a live key, so not an orphan either.
        self.assertEqual(result.orphan_count, 0)

    def test_non_positive_duration_is_unmatched(self) -> None:
        events = [
            _event("zero", end="2026-03-02T09:00:00"),
            _event("negative", end="2026-03-02T08:00:00"),
        ]
        result = self.planner.plan(events, [], MappingStore(), trim_subject)
        self.assertEqual(result.ops, [])
        self.assertEqual([u.reason for u in result.unmatched], ["non_positive_duration", "non_positive_duration"])

    def test_unparsable_time_is_unmatched(self) -> None:
        events = [_event("bad", start="not a date"), _event("empty", end="")]
        result = self.planner.plan(events, [], MappingStore(), trim_subject)
        self.assertEqual([u.reason for u in result.unmatched], ["missing_time", "missing_time"])

    def test_missing_stable_key_is_unmatched(self) -> None:
        result = self.planner.plan([_event("")], [], MappingStore(), trim_subject)
        self.assertEqual(result.unmatched[0].reason, "missing_stable_key")
        self.assertEqual(result.ops, [])

    def test_mapped_unchanged_record_is_skipped(self) -> None:
        mapping = MappingStore()
        mapping.upsert("k1", "te-1")
        record = DestinationRecord(
            id="te-1", task_ref="AB12cd34", start_ms=_ms(9), stop_ms=_ms(10), description="Client work "
        )
        result = self.planner.plan([_event("k1")], [record], mapping, trim_subject)
        self.assertEqual(result.ops, [])
        self.assertEqual(result.skipped_count, 1)
        self.assertEqual(result.skipped, [{"stable_key": "k1", "reason": "unchanged"}])
        self.fetch_one.assert_not_called()

    def test_mapped_changed_record_is_updated(self) -> None:
        mapping = MappingStore()
        mapping.upsert("k1", "te-1")
        record = DestinationRecord(id="te-1", task_ref="AB12cd34", start_ms=_ms(8), stop_ms=_ms(10))
        result = self.planner.plan([_event("k1")], [record], mapping, trim_subject)
        self.assertEqual([(op.kind, op.destination_id) for op in result.ops], [("update", "te-1")])

    def test_missing_remote_with_matching_snapshot_is_skipped(self) -> None:
        mapping = MappingStore()
        mapping.upsert("k1", "te-1", {"snapshot": _snapshot(_ms(9), _ms(10))})
        result = self.planner.plan([_event("k1")], [], mapping, trim_subject)
        self.assertEqual(result.ops, [])
        self.assertEqual(result.skipped_count, 1)
        self.assertEqual(result.skipped[0]["reason"], "snapshot_match")
        self.assertEqual(result.fallback_fetches, 1)
        self.assertEqual(result.fallback_found, 0)
        self.fetch_one.assert_called_once_with("te-1")

    def test_missing_remote_with_stale_snapshot_updates(self) -> None:
        mapping = MappingStore()
        mapping.upsert("k1", "te-1", {"snapshot": _snapshot(_ms(9), _ms(11))})
        result = self.planner.plan([_event("k1")], [], mapping, trim_subject)
        self.assertEqual([(op.kind, op.reason, op.destination_id) for op in result.ops], [("update", "snapshot_based", "te-1")])

    def test_missing_remote_without_snapshot_creates(self) -> None:
        mapping = MappingStore()
        mapping.upsert("k1", "te-1")
        result = self.planner.plan([_event("k1")], [], mapping, trim_subject)
        self.assertEqual([(op.kind, op.reason) for op in result.ops], [("create", "missing_remote")])

    def test_single_fetch_resolves_pagination_gap(self) -> None:
        self.fetch_one.return_value = DestinationRecord(
            id="te-1", task_ref="AB12cd34", start_ms=_ms(9), stop_ms=_ms(10), description="Client work"
        )
        mapping = MappingStore()
        mapping.upsert("k1", "te-1")
        result = self.planner.plan([_event("k1")], [], mapping, trim_subject)
        self.assertEqual(result.ops, [])
        self.assertEqual(result.fallback_found, 1)

    def test_orphans_become_deletes_after_upserts(self) -> None:
        mapping = MappingStore()
        mapping.upsert("gone-1", "te-1")
        mapping.upsert("live", "te-2")
        mapping.upsert("gone-2", "te-3")
        record = DestinationRecord(id="te-2", task_ref="AB12cd34", start_ms=_ms(8), stop_ms=_ms(10))
        events = [_event("live"), _event("new")]
        result = self.planner.plan(events, [record], mapping, trim_subject)

        kinds = [op.kind for op in result.ops]
        self.assertEqual(kinds, ["update", "create", "delete", "delete"])
        deletes = result.ops_of("delete")
        self.assertEqual(sorted(op.stable_key for op in deletes), ["gone-1", "gone-2"])
        self.assertEqual(sorted(op.destination_id for op in deletes), ["te-1", "te-3"])
        self.assertTrue(all(op.reason == "orphan" for op in deletes))
        self.assertEqual(result.orphan_count, 2)

    def test_transform_failure_falls_back_to_raw_subject(self) -> None:
        def broken(_subject: str) -> str:
            raise KeyError("missing")

        with self.assertLogs("timeledger.planner", level="WARNING"):
            result = self.planner.plan([_event("k1", subject="  Raw subject ")], [], MappingStore(), broken)
        self.assertEqual(result.ops[0].description, "  Raw subject ")

    def test_configured_transform_shapes_description(self) -> None:
        transform = build_subject_transform(
            SubjectTransformConfig(pattern=r"^\[[^\]]*\]\s*", template="CAL: {subject}")
        )
        result = self.planner.plan([_event("k1", subject="[Focus] Write report")], [], MappingStore(), transform)
        self.assertEqual(result.ops[0].description, "CAL: Write report")

    def test_legacy_entries_are_rekeyed_before_planning(self) -> None:
        mapping = MappingStore()
        mapping.legacy = {"old-id": MappingEntry(source_key="old-id", destination_id="te-1")}
        record = DestinationRecord(
            id="te-1", task_ref="AB12cd34", start_ms=_ms(9), stop_ms=_ms(10), description="Client work"
        )
        result = self.planner.plan([_event("k1", event_id="old-id")], [record], mapping, trim_subject)
        self.assertEqual(result.ops, [])
        self.assertEqual(result.skipped_count, 1)
        self.assertIsNone(mapping.legacy)
        self.assertEqual(mapping.get("k1").destination_id, "te-1")

    def test_duplicate_stable_key_keeps_later_event(self) -> None:
        events = [
            _event("dup", event_id="a", subject="First"),
            _event("other"),
            _event("dup", event_id="b", subject="Second"),
        ]
        with self.assertLogs("timeledger.planner", level="WARNING"):
            result = self.planner.plan(events, [], MappingStore(), trim_subject)
        self.assertEqual([(op.stable_key, op.description) for op in result.ops], [("other", "Client work"), ("dup", "Second")])
        self.assertEqual(result.duplicate_stable_keys, ["dup"])

    def test_duplicate_event_ids_are_reported(self) -> None:
        events = [_event("k1", event_id="same"), _event("k2", event_id="same")]
        with self.assertLogs("timeledger.planner", level="WARNING"):
            result = self.planner.plan(events, [], MappingStore(), trim_subject)
        self.assertEqual(result.duplicate_event_ids, ["same"])
        self.assertEqual(len(result.ops), 2)

    def test_second_run_after_apply_is_idempotent(self) -> None:
        events = [
            _event("k1"),
            _event("k2", body='<a href="https://app.clickup.com/t/xyz98765">t</a>', start="2026-03-02T11:00:00Z", end="2026-03-02T11:45:00Z"),
        ]
        mapping = MappingStore()
        first = self.planner.plan(events, [], mapping, trim_subject)
        self.assertEqual([op.kind for op in first.ops], ["create", "create"])

        records = []
        for index, op in enumerate(first.ops):
            values = op.planned_values()
            destination_id = f"te-{index}"
            mapping.upsert(op.stable_key, destination_id, {"snapshot": values.snapshot().to_dict(), "origin": "create"})
            records.append(
                DestinationRecord(
                    id=destination_id,
                    task_ref=values.task_ref,
                    start_ms=values.start_ms,
                    stop_ms=values.stop_ms,
                    duration_ms=values.duration_ms,
                    description=values.description,
                )
            )

        second = self.planner.plan(events, records, mapping, trim_subject)
        self.assertEqual(second.ops, [])
        self.assertEqual(second.skipped_count, 2)


if __name__ == "__main__":
    unittest.main()
