from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_TASK_ID_REGEX = r"^[A-Za-z0-9_-]{6,15}$"
DEFAULT_TASK_ID_PREFIX = "tid#"

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
OP_SKIP = "skip"

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None, tz_name: str = "") -> datetime | None:
    """Parse an ISO-8601 string into an aware datetime.

    Naive values are placed in ``tz_name`` when it names a known zone,
    otherwise in UTC. Graph returns seven fractional digits, which
    ``fromisoformat`` rejects on older interpreters, so the fraction is cut to
    microseconds first.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None and tz_name and tz_name.upper() != "UTC":
        try:
            return parsed.replace(tzinfo=ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def to_epoch_ms(value: datetime) -> int:
    return int(round(_ensure_tz(value).timestamp() * 1000))


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass
class OutlookConfig:
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = ""
    refresh_token: str = ""
    scope: str = "offline_access Calendars.Read"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    page_size: int = 200
    max_pages: int = 50
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OutlookConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            tenant_id=str(data.get("tenant_id", "")).strip(),
            refresh_token=str(data.get("refresh_token", "")).strip(),
            scope=str(data.get("scope", "offline_access Calendars.Read")).strip()
            or "offline_access Calendars.Read",
            graph_base_url=str(data.get("graph_base_url", "https://graph.microsoft.com/v1.0")).strip()
            or "https://graph.microsoft.com/v1.0",
            page_size=max(1, int(data.get("page_size", 200))),
            max_pages=max(1, int(data.get("max_pages", 50))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )

    def missing_fields(self) -> list[str]:
        required = ("client_id", "client_secret", "tenant_id", "refresh_token")
        return [name for name in required if not getattr(self, name)]


@dataclass
class ClickUpConfig:
    api_token: str = ""
    team_id: str = ""
    base_url: str = "https://api.clickup.com/api/v2"
    page_days: int = 31
    max_pages: int = 24
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ClickUpConfig":
        data = data or {}
        return cls(
            api_token=str(data.get("api_token", "")).strip(),
            team_id=str(data.get("team_id", "")).strip(),
            base_url=str(data.get("base_url", "https://api.clickup.com/api/v2")).strip()
            or "https://api.clickup.com/api/v2",
            page_days=max(1, int(data.get("page_days", 31))),
            max_pages=max(1, int(data.get("max_pages", 24))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SubjectTransformConfig:
    pattern: str = ""
    replacement: str = ""
    template: str = "{subject}"
    strip: bool = True
    # Expressions from JSONata-based configs are read only to warn about them.
    jsonata: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SubjectTransformConfig":
        data = data or {}
        return cls(
            pattern=str(data.get("pattern", "") or ""),
            replacement=str(data.get("replacement", "") or ""),
            template=str(data.get("template", "{subject}") or "{subject}"),
            strip=bool(data.get("strip", True)),
            jsonata=str(data.get("jsonata", "") or "").strip(),
        )


@dataclass
class SyncConfig:
    active_window_months: int = 3
    hard_start_date: str = ""
    timezone: str = ""
    target_category: str = ""
    task_id_regex: str = DEFAULT_TASK_ID_REGEX
    task_id_prefix: str = DEFAULT_TASK_ID_PREFIX
    window_padding_minutes: int = 0
    delete_orphans: bool = False
    subject_transform: SubjectTransformConfig = field(default_factory=SubjectTransformConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            active_window_months=max(0, int(data.get("active_window_months", 3))),
            hard_start_date=str(data.get("hard_start_date", "") or "").strip(),
            timezone=str(data.get("timezone", "") or "").strip(),
            target_category=str(data.get("target_category", "") or "").strip(),
            task_id_regex=str(data.get("task_id_regex", "") or "").strip() or DEFAULT_TASK_ID_REGEX,
            task_id_prefix=str(data.get("task_id_prefix", "") or "").strip() or DEFAULT_TASK_ID_PREFIX,
            window_padding_minutes=max(0, int(data.get("window_padding_minutes", 0))),
            delete_orphans=bool(data.get("delete_orphans", False)),
            subject_transform=SubjectTransformConfig.from_dict(data.get("subject_transform")),
        )


@dataclass
class StorageConfig:
    mapping_path: str = "data/mapping.json"
    staging_dir: str = "data/staging"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            mapping_path=str(data.get("mapping_path", "data/mapping.json")).strip() or "data/mapping.json",
            staging_dir=str(data.get("staging_dir", "data/staging")).strip() or "data/staging",
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    outlook: OutlookConfig = field(default_factory=OutlookConfig)
    clickup: ClickUpConfig = field(default_factory=ClickUpConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            outlook=OutlookConfig.from_dict(data.get("outlook")),
            clickup=ClickUpConfig.from_dict(data.get("clickup")),
            sync=SyncConfig.from_dict(data.get("sync")),
            storage=StorageConfig.from_dict(data.get("storage")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class SourceEvent:
    id: str
    stable_key: str = ""
    series_parent_id: str = ""
    subject: str = ""
    body_html: str = ""
    body_preview: str = ""
    start: str = ""
    end: str = ""
    start_time_zone: str = ""
    end_time_zone: str = ""
    categories: list[str] = field(default_factory=list)

    @classmethod
    def from_graph(cls, payload: dict[str, Any]) -> "SourceEvent":
        body = payload.get("body") or {}
        start = payload.get("start") or {}
        end = payload.get("end") or {}
        # Older snapshots carry the stable identity as "uid".
        stable_key = payload.get("iCalUId") or payload.get("uid") or ""
        return cls(
            id=str(payload.get("id", "") or ""),
            stable_key=str(stable_key),
            series_parent_id=str(payload.get("seriesMasterId", "") or ""),
            subject=str(payload.get("subject", "") or ""),
            body_html=str(body.get("content", "") or ""),
            body_preview=str(payload.get("bodyPreview", "") or ""),
            start=str(start.get("dateTime") or start.get("dateTimeRaw") or ""),
            end=str(end.get("dateTime") or end.get("dateTimeRaw") or ""),
            start_time_zone=str(start.get("timeZone", "") or ""),
            end_time_zone=str(end.get("timeZone", "") or ""),
            categories=[str(x) for x in payload.get("categories", []) or []],
        )

    @property
    def raw_body(self) -> str:
        return self.body_html or self.body_preview or ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DestinationRecord:
    id: str
    task_ref: str = ""
    start_ms: int | None = None
    stop_ms: int | None = None
    duration_ms: int | None = None
    description: str = ""

    @classmethod
    def from_clickup(cls, payload: dict[str, Any]) -> "DestinationRecord":
        task = payload.get("task")
        task_ref = ""
        if isinstance(task, dict):
            task_ref = str(task.get("id", "") or "")
        task_ref = task_ref or str(payload.get("tid", "") or payload.get("task_id", "") or "")
        stop = payload.get("end")
        if stop is None:
            stop = payload.get("stop")
        record_id = payload.get("id") or payload.get("time_entry_id") or payload.get("_id") or ""
        return cls(
            id=str(record_id),
            task_ref=task_ref,
            start_ms=_optional_int(payload.get("start")),
            stop_ms=_optional_int(stop),
            duration_ms=_optional_int(payload.get("duration")),
            description=str(payload.get("description", "") or ""),
        )

    @property
    def effective_stop_ms(self) -> int | None:
        if self.stop_ms is not None:
            return self.stop_ms
        if self.start_ms is not None and self.duration_ms is not None:
            return self.start_ms + self.duration_ms
        return None

    @property
    def effective_duration_ms(self) -> int | None:
        if self.duration_ms is not None:
            return self.duration_ms
        if self.start_ms is not None and self.stop_ms is not None:
            return self.stop_ms - self.start_ms
        return None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["duration_ms"] = self.effective_duration_ms
        return payload


@dataclass
class Snapshot:
    start_ms: int | None = None
    stop_ms: int | None = None
    duration_ms: int | None = None
    task_ref: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Snapshot | None":
        if not isinstance(data, dict) or not data:
            return None
        return cls(
            start_ms=_optional_int(data.get("start")),
            stop_ms=_optional_int(data.get("stop")),
            duration_ms=_optional_int(data.get("duration")),
            # Files written before the rename use "taskId".
            task_ref=str(data.get("taskRef") or data.get("taskId") or ""),
            description=str(data.get("description", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start_ms,
            "stop": self.stop_ms,
            "duration": self.duration_ms,
            "taskRef": self.task_ref,
            "description": self.description,
        }

    def as_record(self, destination_id: str) -> DestinationRecord:
        return DestinationRecord(
            id=destination_id,
            task_ref=self.task_ref,
            start_ms=self.start_ms,
            stop_ms=self.stop_ms,
            duration_ms=self.duration_ms,
            description=self.description,
        )


@dataclass
class ExtractionResult:
    task_ref: str
    method: str
    validated: bool = True


@dataclass
class PlannedValues:
    task_ref: str
    start_ms: int
    stop_ms: int
    duration_ms: int
    description: str

    def snapshot(self) -> Snapshot:
        return Snapshot(
            start_ms=self.start_ms,
            stop_ms=self.stop_ms,
            duration_ms=self.duration_ms,
            task_ref=self.task_ref,
            description=self.description.strip(),
        )


@dataclass
class Operation:
    kind: str
    stable_key: str
    event_id: str = ""
    series_parent_id: str = ""
    destination_id: str = ""
    task_ref: str = ""
    start_ms: int | None = None
    stop_ms: int | None = None
    duration_ms: int | None = None
    subject: str = ""
    description: str = ""
    reason: str = ""

    def planned_values(self) -> PlannedValues:
        start_ms = int(self.start_ms or 0)
        duration_ms = int(self.duration_ms or 0)
        stop_ms = int(self.stop_ms) if self.stop_ms is not None else start_ms + duration_ms
        return PlannedValues(
            task_ref=self.task_ref,
            start_ms=start_ms,
            stop_ms=stop_ms,
            duration_ms=duration_ms,
            description=self.description,
        )

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in (None, "")}


@dataclass
class UnmatchedEvent:
    id: str
    stable_key: str = ""
    series_parent_id: str = ""
    subject: str = ""
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PlanResult:
    """Outcome of one planning pass.

    ``ops`` lists every create and update in event input order, followed by
    every delete. Skips are never part of ``ops``; they are counted in
    ``skipped_count`` and listed in ``skipped``.
    """

    ops: list[Operation] = field(default_factory=list)
    unmatched: list[UnmatchedEvent] = field(default_factory=list)
    orphan_count: int = 0
    skipped_count: int = 0
    skipped: list[dict[str, str]] = field(default_factory=list)
    fallback_fetches: int = 0
    fallback_found: int = 0
    duplicate_event_ids: list[str] = field(default_factory=list)
    duplicate_stable_keys: list[str] = field(default_factory=list)

    def ops_of(self, kind: str) -> list[Operation]:
        return [op for op in self.ops if op.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ops": [op.to_dict() for op in self.ops],
            "unmatched": [item.to_dict() for item in self.unmatched],
            "orphanCount": self.orphan_count,
            "skippedCount": self.skipped_count,
            "skipped": list(self.skipped),
            "fallbackFetches": self.fallback_fetches,
            "fallbackFound": self.fallback_found,
            "duplicateEventIds": list(self.duplicate_event_ids),
            "duplicateStableKeys": list(self.duplicate_stable_keys),
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    planned: int
    applied: int
    failed: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "planned": self.planned,
            "applied": self.applied,
            "failed": self.failed,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
