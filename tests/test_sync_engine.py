import json
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest import mock

from timeledger.clickup_client import ClickUpApiError
from timeledger.mapping_store import MappingFile, MappingStore
from timeledger.models import AppConfig, DestinationRecord, Operation, SourceEvent
from timeledger.state_store import StateStore
from timeledger.sync_engine import QUIT, SKIP, SyncEngine, summarize_operation


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClickUp:
    """In-memory stand-in for the ClickUp time entry API."""

    def __init__(self) -> None:
        self.entries: dict[str, DestinationRecord] = {}
        self.created: list[str] = []
        self.updated: list[str] = []
        self.deleted: list[str] = []
        self.fail_creates = False
        self.hide_from_listing = False
        self.entered = threading.Event()
        self.gate: threading.Event | None = None

    def is_configured(self) -> bool:
        return True

    def fetch_time_entries(self, _start_ms: int, _end_ms: int) -> list[DestinationRecord]:
        if self.hide_from_listing:
            return []
        return list(self.entries.values())

    def get_time_entry(self, _entry_id: str) -> DestinationRecord | None:
        return None

    def create_time_entry(self, *, task_ref: str, start_ms: int, stop_ms: int, duration_ms: int, description: str) -> dict[str, Any]:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_creates:
            raise ClickUpApiError(500, "/team/1/time_entries", "boom")
        entry_id = f"te-{len(self.created) + 1}"
        self.created.append(entry_id)
        self.entries[entry_id] = DestinationRecord(
            id=entry_id,
            task_ref=task_ref,
            start_ms=start_ms,
            stop_ms=stop_ms,
            duration_ms=duration_ms,
            description=description,
        )
        return {"data": {"id": entry_id}}

    def update_time_entry(self, entry_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        self.updated.append(entry_id)
        record = self.entries[entry_id]
        record.start_ms = patch["start"]
        record.stop_ms = patch["end"]
        record.duration_ms = patch["duration"]
        record.description = patch["description"]
        return {}

    def delete_time_entry(self, entry_id: str) -> dict[str, Any]:
        if entry_id not in self.entries:
            raise ClickUpApiError(404, f"/team/1/time_entries/{entry_id}")
        self.deleted.append(entry_id)
        del self.entries[entry_id]
        return {}


def _event(key: str, start: str = "2026-03-02T09:00:00.0000000", end: str = "2026-03-02T10:00:00.0000000") -> SourceEvent:
    return SourceEvent(
        id=f"id-{key}",
        stable_key=key,
        subject=f"Work {key}",
        body_html="<p>tid#AB12cd34</p>",
        start=start,
        end=end,
        start_time_zone="UTC",
        end_time_zone="UTC",
    )


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.mapping_path = root / "mapping.json"
        self.staging_dir = root / "staging"
        self.config_data = {
            "outlook": {"client_id": "c", "client_secret": "s", "tenant_id": "t", "refresh_token": "r"},
            "clickup": {"api_token": "pk", "team_id": "1"},
            "storage": {"mapping_path": str(self.mapping_path), "staging_dir": str(self.staging_dir)},
        }
        self.config_manager = mock.Mock()
        self.config_manager.load.side_effect = lambda: AppConfig.from_dict(self.config_data)
        self.state_store = StateStore(str(root / "state.db"))
        self.engine = SyncEngine(self.config_manager, self.state_store)
        self.clickup = FakeClickUp()
        self.outlook = mock.Mock()
        self.outlook.truncated = False
        self.events = [_event("k1")]
        self.outlook.fetch_calendar_view.side_effect = lambda *_args, **_kwargs: list(self.events)

        patches = [
            mock.patch("timeledger.sync_engine.OutlookCalendarClient", return_value=self.outlook),
            mock.patch("timeledger.sync_engine.ClickUpClient", return_value=self.clickup),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _run(self, **kwargs: Any):
        return self.engine.run_once(trigger="manual", now=NOW, **kwargs)

    def _actions(self) -> list[str]:
        return [event["action"] for event in reversed(self.state_store.recent_audit_events(limit=100))]

    def _last_audit(self) -> dict[str, Any]:
        return self.state_store.recent_audit_events(limit=1)[0]

    def test_dry_run_writes_report_without_side_effects(self) -> None:
        result = self._run()

        self.assertEqual(result.status, "planned")
        self.assertEqual(result.planned, 1)
        self.assertEqual(self.clickup.created, [])
        self.assertFalse(self.mapping_path.exists())
        report = json.loads((self.staging_dir / "dry_run.json").read_text(encoding="utf-8"))
        self.assertEqual(report["plannedOperations"], 1)
        self.assertEqual(report["totalEvents"], 1)
        self.assertEqual(report["ops"][0]["kind"], "create")
        self.assertEqual(report["ops"][0]["task_ref"], "AB12cd34")
        self.assertEqual(self.state_store.recent_sync_runs(limit=1)[0]["status"], "planned")

    def test_apply_persists_mapping_and_second_run_is_noop(self) -> None:
        first = self._run(apply=True)
        self.assertEqual((first.status, first.applied, first.failed), ("success", 1, 0))

        stored = MappingFile(self.mapping_path).load().get("k1")
        self.assertEqual(stored.destination_id, "te-1")
        self.assertEqual(stored.metadata["origin"], "create")
        self.assertEqual(stored.snapshot.description, "Work k1")

        second = self._run(apply=True)
        self.assertEqual((second.status, second.planned, second.applied), ("success", 0, 0))
        self.assertEqual(self.clickup.created, ["te-1"])
        self.assertEqual(self._actions(), ["created"])

    def test_snapshot_prevents_duplicate_when_listing_misses_entry(self) -> None:
        self._run(apply=True)
        self.clickup.hide_from_listing = True

        second = self._run(apply=True)

        self.assertEqual(second.planned, 0)
        self.assertEqual(self.clickup.created, ["te-1"])

    def test_changed_event_updates_existing_entry(self) -> None:
        self._run(apply=True)
        self.events = [_event("k1", end="2026-03-02T11:00:00.0000000")]

        result = self._run(apply=True)

        self.assertEqual((result.status, result.applied), ("success", 1))
        self.assertEqual(self.clickup.updated, ["te-1"])
        self.assertEqual(self.clickup.entries["te-1"].duration_ms, 2 * 3_600_000)
        stored = MappingFile(self.mapping_path).load().get("k1")
        self.assertEqual(stored.metadata["origin"], "update")
        self.assertEqual(stored.snapshot.duration_ms, 2 * 3_600_000)

    def test_orphan_delete_is_gated_by_config(self) -> None:
        self._run(apply=True)
        self.events = []

        gated = self._run(apply=True)
        self.assertEqual((gated.status, gated.planned, gated.applied), ("success", 1, 0))
        self.assertEqual(self.clickup.deleted, [])
        self.assertIsNotNone(MappingFile(self.mapping_path).load().get("k1"))
        self.assertIn("skipped_delete", self._actions())

        self.config_data["sync"] = {"delete_orphans": True}
        allowed = self._run(apply=True)
        self.assertEqual(allowed.applied, 1)
        self.assertEqual(self.clickup.deleted, ["te-1"])
        self.assertIsNone(MappingFile(self.mapping_path).load().get("k1"))

    def test_entry_aged_out_of_window_is_not_deleted(self) -> None:
        self._run(apply=True)
        self.config_data["sync"] = {"delete_orphans": True}
        # The event still exists but now starts before the rolling window.
        self.events = []

        later = self.engine.run_once(trigger="manual", apply=True, now=NOW + timedelta(days=130))

        self.assertEqual((later.status, later.planned, later.applied), ("success", 1, 0))
        self.assertEqual(self.clickup.deleted, [])
        self.assertEqual(MappingFile(self.mapping_path).load().get("k1").destination_id, "te-1")
        audit = self._last_audit()
        self.assertEqual(audit["action"], "skipped_delete")
        self.assertEqual(audit["details"]["outcome"]["reason"], "outside_window")

    def test_truncated_calendar_fetch_holds_back_deletes(self) -> None:
        self._run(apply=True)
        self.config_data["sync"] = {"delete_orphans": True}
        self.events = []
        self.outlook.truncated = True

        with self.assertLogs("timeledger.sync_engine", level="WARNING"):
            result = self._run(apply=True)

        self.assertEqual((result.status, result.applied), ("success", 0))
        self.assertEqual(self.clickup.deleted, [])
        self.assertIsNotNone(MappingFile(self.mapping_path).load().get("k1"))
        self.assertEqual(self._last_audit()["details"]["outcome"]["reason"], "source_incomplete")

    def test_overlapping_runs_do_not_duplicate_entries(self) -> None:
        self.clickup.gate = threading.Event()
        results: dict[str, Any] = {}
        worker = threading.Thread(target=lambda: results.setdefault("first", self._run(apply=True)))
        worker.start()
        try:
            self.assertTrue(self.clickup.entered.wait(timeout=5))
            second = self._run(apply=True)
        finally:
            self.clickup.gate.set()
            worker.join(timeout=5)

        self.assertEqual(second.status, "busy")
        self.assertEqual(results["first"].status, "success")
        self.assertEqual(self.clickup.created, ["te-1"])
        self.assertEqual(MappingFile(self.mapping_path).load().get("k1").destination_id, "te-1")
        self.assertEqual(len(self.state_store.recent_sync_runs(limit=10)), 1)

        # The lock is released once the first run finishes.
        self.assertEqual(self._run(apply=True).status, "success")

    def test_delete_of_already_removed_entry_still_clears_mapping(self) -> None:
        store = MappingStore()
        store.upsert("gone", "te-missing")
        MappingFile(self.mapping_path).save(store)
        self.config_data["sync"] = {"delete_orphans": True}
        self.events = []

        result = self._run(apply=True)

        self.assertEqual((result.status, result.applied), ("success", 1))
        self.assertIsNone(MappingFile(self.mapping_path).load().get("gone"))

    def test_failed_operation_marks_run_partial(self) -> None:
        self.events = [_event("k1")]
        self.clickup.fail_creates = True

        result = self._run(apply=True)

        self.assertEqual((result.status, result.applied, result.failed), ("partial", 0, 1))
        self.assertEqual(self._actions(), ["create_failed"])
        self.assertFalse(self.mapping_path.exists())

    def test_missing_outlook_credentials_is_run_error(self) -> None:
        self.config_data["outlook"] = {}

        result = self._run(apply=True)

        self.assertEqual(result.status, "error")
        self.assertIn("ConfigError", result.message)
        self.assertEqual(self._actions(), ["run_error"])
        self.assertEqual(self.state_store.recent_sync_runs(limit=1)[0]["status"], "error")

    def test_quit_stops_applying(self) -> None:
        self.events = [_event("k1"), _event("k2", start="2026-03-03T09:00:00", end="2026-03-03T09:30:00")]
        answers = iter([SKIP, QUIT])

        result = self._run(apply=True, confirm=lambda _op: next(answers))

        self.assertEqual((result.status, result.planned, result.applied), ("success", 2, 0))
        self.assertEqual(self.clickup.created, [])

    def test_unconfigured_clickup_skips_apply(self) -> None:
        self.clickup.is_configured = lambda: False

        result = self._run(apply=True)

        self.assertEqual(result.status, "skipped")
        self.assertEqual(self.clickup.created, [])


class SummarizeOperationTests(unittest.TestCase):
    def test_create_summary(self) -> None:
        op = Operation(
            kind="create",
            stable_key="k1",
            task_ref="AB12cd34",
            start_ms=0,
            duration_ms=90_000,
            subject="Work",
        )
        self.assertEqual(
            summarize_operation(op),
            '[CREATE] task=AB12cd34 start=1970-01-01T00:00:00+00:00 dur=1.5m subj="Work"',
        )

    def test_delete_summary(self) -> None:
        op = Operation(kind="delete", stable_key="k1", destination_id="te-1")
        self.assertEqual(summarize_operation(op), "[DELETE] entry=te-1 key=k1")


if __name__ == "__main__":
    unittest.main()
