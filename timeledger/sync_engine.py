from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from timeledger.auth import OutlookTokenProvider, TokenCache
from timeledger.clickup_client import ClickUpApiError, ClickUpClient, extract_created_id
from timeledger.config_manager import ConfigManager, require_outlook_credentials
from timeledger.diagnostics import build_dry_run_report, write_dry_run_report
from timeledger.mapping_store import MappingFile, MappingStore
from timeledger.models import (
    OP_CREATE,
    OP_DELETE,
    OP_UPDATE,
    AppConfig,
    DestinationRecord,
    Operation,
    PlanResult,
    SourceEvent,
    SyncResult,
)
from timeledger.outlook_client import OutlookCalendarClient
from timeledger.planner import ReconciliationPlanner
from timeledger.reconciler import FallbackVerifier
from timeledger.state_store import StateStore
from timeledger.subject_transform import build_subject_transform
from timeledger.task_id import TaskIdExtractor
from timeledger.window import SyncWindow, compute_window


APPLY = "y"
SKIP = "s"
QUIT = "q"

Confirm = Callable[[Operation], str]

_logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def summarize_operation(op: Operation) -> str:
    if op.kind == OP_DELETE:
        return f"[DELETE] entry={op.destination_id} key={op.stable_key}"
    start = datetime.fromtimestamp((op.start_ms or 0) / 1000, tz=timezone.utc).isoformat()
    minutes = (op.duration_ms or 0) / 60000
    entry = f" entry={op.destination_id}" if op.destination_id else ""
    reason = f" reason={op.reason}" if op.reason else ""
    return f"[{op.kind.upper()}]{entry} task={op.task_ref} start={start} dur={minutes:.1f}m{reason} subj=\"{op.subject}\""


@dataclass
class SyncPlan:
    window: SyncWindow
    events: list[SourceEvent]
    records: list[DestinationRecord]
    mapping: MappingStore
    mapping_file: MappingFile
    result: PlanResult
    source_complete: bool = True


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.token_cache = TokenCache()
        self._run_lock = threading.Lock()

    def plan(self, config: AppConfig | None = None, now: datetime | None = None) -> SyncPlan:
        config = config or self.config_manager.load()
        require_outlook_credentials(config)
        now = now or datetime.now(timezone.utc)
        window = compute_window(now, config.sync)

        outlook = OutlookCalendarClient(config.outlook, OutlookTokenProvider(config.outlook, self.token_cache))
        events = outlook.fetch_calendar_view(window.start, window.end, category=config.sync.target_category)

        clickup = ClickUpClient(config.clickup)
        query_window = window.padded(config.sync.window_padding_minutes)
        records = clickup.fetch_time_entries(query_window.start_ms, query_window.end_ms)

        mapping_file = MappingFile(config.storage.mapping_path)
        mapping = mapping_file.load()
        verifier = FallbackVerifier(clickup.get_time_entry if clickup.is_configured() else None)
        planner = ReconciliationPlanner(TaskIdExtractor.from_config(config.sync), verifier)
        result = planner.plan(events, records, mapping, build_subject_transform(config.sync.subject_transform))
        return SyncPlan(
            window=window,
            events=events,
            records=records,
            mapping=mapping,
            mapping_file=mapping_file,
            result=result,
            source_complete=not outlook.truncated,
        )

    def apply_operation(
        self,
        client: ClickUpClient,
        op: Operation,
        mapping: MappingStore,
        config: AppConfig,
        window: SyncWindow | None = None,
        source_complete: bool = True,
    ) -> dict[str, Any]:
        if op.kind == OP_CREATE:
            values = op.planned_values()
            response = client.create_time_entry(
                task_ref=values.task_ref,
                start_ms=values.start_ms,
                stop_ms=values.stop_ms,
                duration_ms=values.duration_ms,
                description=values.description,
            )
            created_id = extract_created_id(response)
            if not created_id:
                _logger.warning("Could not determine created time entry id for %s", op.stable_key)
                return {"status": "created", "id": ""}
            mapping.upsert(op.stable_key, created_id, {"snapshot": values.snapshot().to_dict(), "origin": "create"})
            return {"status": "created", "id": created_id}

        if op.kind == OP_UPDATE:
            values = op.planned_values()
            patch = {
                "start": values.start_ms,
                "end": values.stop_ms,
                "duration": values.duration_ms,
                "description": values.description,
                "tid": values.task_ref,
            }
            client.update_time_entry(op.destination_id, patch)
            mapping.upsert(
                op.stable_key,
                op.destination_id,
                {"snapshot": values.snapshot().to_dict(), "origin": "update"},
            )
            return {"status": "updated", "id": op.destination_id}

        if op.kind == OP_DELETE:
            reason = self._delete_blocker(op, mapping, config, window, source_complete)
            if reason:
                return {"status": "skipped_delete", "id": op.destination_id, "reason": reason}
            try:
                client.delete_time_entry(op.destination_id)
            except ClickUpApiError as exc:
                if exc.status_code != 404:
                    raise
                _logger.info("Time entry %s already gone", op.destination_id)
            mapping.remove(op.stable_key)
            return {"status": "deleted", "id": op.destination_id}

        return {"status": "noop"}

    @staticmethod
    def _delete_blocker(
        op: Operation,
        mapping: MappingStore,
        config: AppConfig,
        window: SyncWindow | None,
        source_complete: bool,
    ) -> str:
        """Why an orphan delete must not run, or "" when it may.

        An orphan only means "absent from this fetch". Entries whose last
        known start lies before the window may belong to events that still
        exist, and a truncated fetch says nothing about the missing pages.
        """
        if not config.sync.delete_orphans:
            return "disabled"
        if not source_complete:
            return "source_incomplete"
        entry = mapping.get(op.stable_key)
        snapshot = entry.snapshot if entry is not None else None
        if (
            window is not None
            and snapshot is not None
            and snapshot.start_ms is not None
            and snapshot.start_ms < window.start_ms
        ):
            return "outside_window"
        return ""

    def run_once(
        self,
        trigger: str = "manual",
        *,
        apply: bool = False,
        confirm: Confirm | None = None,
        now: datetime | None = None,
    ) -> SyncResult:
        """Plan and optionally apply one sync run.

        Runs never overlap: while one is in progress, further calls return
        at once with status ``busy`` and record nothing.
        """
        if not self._run_lock.acquire(blocking=False):
            _logger.warning("Sync run requested by %s while another run is in progress", trigger)
            return SyncResult(
                status="busy",
                message="Another sync run is in progress.",
                duration_ms=0,
                planned=0,
                applied=0,
                failed=0,
                trigger=trigger,
            )
        try:
            return self._run_locked(trigger, apply=apply, confirm=confirm, now=now)
        finally:
            self._run_lock.release()

    def _run_locked(
        self,
        trigger: str,
        *,
        apply: bool,
        confirm: Confirm | None,
        now: datetime | None,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(trigger=trigger)
        planned = 0
        applied = 0
        failed = 0

        try:
            config = self.config_manager.load()
            sync_plan = self.plan(config, now=now)
            result = sync_plan.result
            planned = len(result.ops)

            if not apply:
                report = build_dry_run_report(
                    window=sync_plan.window,
                    total_events=len(sync_plan.events),
                    records=sync_plan.records,
                    plan=result,
                )
                path = write_dry_run_report(config.storage.staging_dir, report)
                for item in result.unmatched[:10]:
                    _logger.warning("Unmatched event: id=%s reason=%s subject=%r", item.id, item.reason, item.subject)
                message = (
                    f"Planned {planned} operations ({len(result.unmatched)} unmatched, "
                    f"{result.orphan_count} orphans, {result.skipped_count} unchanged). Report: {path}"
                )
                return self._finish(run_id, trigger, started_at, "planned", message, planned, 0, 0)

            client = ClickUpClient(config.clickup)
            if not client.is_configured():
                message = "ClickUp config missing api_token/team_id. Apply skipped."
                return self._finish(run_id, trigger, started_at, "skipped", message, planned, 0, 0)

            if not sync_plan.source_complete and result.ops_of(OP_DELETE):
                _logger.warning("Calendar fetch was truncated; orphan deletes are held back this run")

            for index, op in enumerate(result.ops, start=1):
                decision = confirm(op) if confirm else APPLY
                if decision == QUIT:
                    _logger.info("Apply stopped by user after %d of %d operations", index - 1, planned)
                    break
                if decision != APPLY:
                    _logger.info("Skipped op %s %s", op.kind, op.stable_key)
                    continue
                try:
                    outcome = self.apply_operation(
                        client,
                        op,
                        sync_plan.mapping,
                        config,
                        window=sync_plan.window,
                        source_complete=sync_plan.source_complete,
                    )
                    sync_plan.mapping_file.save(sync_plan.mapping)
                except Exception as exc:
                    failed += 1
                    error_text = f"{type(exc).__name__}: {exc}"
                    _logger.error("Apply failed for %s %s: %s", op.kind, op.stable_key, error_text)
                    self.state_store.record_audit_event(
                        stable_key=op.stable_key,
                        destination_id=op.destination_id,
                        action=f"{op.kind}_failed",
                        details={"trigger": trigger, "error": error_text, "op": op.to_dict()},
                        run_id=run_id,
                    )
                    continue
                if outcome["status"] != "skipped_delete":
                    applied += 1
                _logger.info("Applied %s %s: %s", op.kind, op.stable_key, outcome)
                self.state_store.record_audit_event(
                    stable_key=op.stable_key,
                    destination_id=str(outcome.get("id") or op.destination_id),
                    action=str(outcome["status"]),
                    details={"trigger": trigger, "op": op.to_dict(), "outcome": outcome},
                    run_id=run_id,
                )

            status = "success" if failed == 0 else "partial"
            message = f"Applied {applied} of {planned} planned operations, {failed} failed."
            return self._finish(run_id, trigger, started_at, status, message, planned, applied, failed)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            _logger.error("Sync run failed: %s", error_message)
            self.state_store.record_audit_event(
                stable_key="system",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return self._finish(run_id, trigger, started_at, "error", error_message, planned, applied, failed)

    def _finish(
        self,
        run_id: int,
        trigger: str,
        started_at: datetime,
        status: str,
        message: str,
        planned: int,
        applied: int,
        failed: int,
    ) -> SyncResult:
        duration_ms = _elapsed_ms(started_at)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            planned=planned,
            applied=applied,
            failed=failed,
        )
        return SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            planned=planned,
            applied=applied,
            failed=failed,
            trigger=trigger,
        )
