from __future__ import annotations

import errno
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from timeledger.models import SourceEvent, Snapshot


SCHEMA_VERSION = 2

_logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MappingEntry:
    source_key: str
    destination_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: str = ""

    @classmethod
    def from_dict(cls, source_key: str, data: dict[str, Any]) -> "MappingEntry":
        # Entries written by the first release use clickupTimeEntryId/meta.
        destination_id = data.get("destinationId") or data.get("clickupTimeEntryId") or ""
        metadata = data.get("metadata")
        if metadata is None:
            metadata = data.get("meta")
        if not isinstance(metadata, dict):
            metadata = {}
        extra = {
            key: value
            for key, value in data.items()
            if key not in {"destinationId", "clickupTimeEntryId", "metadata", "meta", "updatedAt"}
        }
        if extra:
            metadata = {**metadata, **extra}
        return cls(
            source_key=str(source_key),
            destination_id=str(destination_id),
            metadata=dict(metadata),
            updated_at=str(data.get("updatedAt", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "destinationId": self.destination_id,
            "metadata": self.metadata,
            "updatedAt": self.updated_at,
        }

    @property
    def snapshot(self) -> Snapshot | None:
        return Snapshot.from_dict(self.metadata.get("snapshot"))


@dataclass
class MappingStore:
    """In-memory view of the source key to destination record mapping.

    Each source key maps to at most one destination record. ``legacy`` holds
    entries from files written before stable keys existed; they are keyed by
    the source's per-occurrence event id until :meth:`rekey_legacy` runs.
    """

    schema_version: int = SCHEMA_VERSION
    entries: dict[str, MappingEntry] = field(default_factory=dict)
    legacy: dict[str, MappingEntry] | None = None

    def get(self, source_key: str) -> MappingEntry | None:
        if not source_key:
            return None
        return self.entries.get(source_key)

    def upsert(self, source_key: str, destination_id: str, metadata: dict[str, Any] | None = None) -> MappingEntry:
        entry = MappingEntry(
            source_key=source_key,
            destination_id=str(destination_id),
            metadata=dict(metadata or {}),
            updated_at=_utc_now(),
        )
        self.entries[source_key] = entry
        return entry

    def remove(self, source_key: str) -> MappingEntry | None:
        return self.entries.pop(source_key, None)

    def rekey_legacy(self, events: Iterable[SourceEvent]) -> int:
        """Move legacy entries under the stable key of the matching event.

        The legacy bucket is dropped afterwards, including entries that found
        no event in this batch.
        """
        if self.legacy is None:
            return 0
        by_id = {event.id: event for event in events if event.id}
        migrated = 0
        for old_id, entry in self.legacy.items():
            event = by_id.get(old_id)
            if event is None or not event.stable_key:
                continue
            if event.stable_key in self.entries:
                continue
            metadata = {**entry.metadata, "migrated_from": old_id, "migrated_at": _utc_now()}
            self.entries[event.stable_key] = MappingEntry(
                source_key=event.stable_key,
                destination_id=entry.destination_id,
                metadata=metadata,
                updated_at=entry.updated_at,
            )
            migrated += 1
        dropped = len(self.legacy) - migrated
        self.legacy = None
        _logger.info("Rekeyed legacy mapping entries: migrated=%d dropped=%d", migrated, dropped)
        return migrated

    def find_orphans(self, live_keys: set[str]) -> list[MappingEntry]:
        return [entry for key, entry in self.entries.items() if key not in live_keys]

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "entries": {key: entry.to_dict() for key, entry in self.entries.items()},
        }


def _parse_entries(raw: Any) -> dict[str, MappingEntry]:
    if not isinstance(raw, dict):
        return {}
    parsed: dict[str, MappingEntry] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            continue
        entry = MappingEntry.from_dict(str(key), value)
        if entry.destination_id:
            parsed[str(key)] = entry
    return parsed


def parse_mapping(data: Any) -> MappingStore:
    if not isinstance(data, dict):
        raise ValueError("mapping root must be an object")
    version = data.get("schemaVersion") or data.get("version")
    if not version:
        _logger.info("Migrating legacy mapping to version %d", SCHEMA_VERSION)
        legacy_raw = data.get("entries") if isinstance(data.get("entries"), dict) else data
        return MappingStore(schema_version=SCHEMA_VERSION, entries={}, legacy=_parse_entries(legacy_raw))
    return MappingStore(schema_version=SCHEMA_VERSION, entries=_parse_entries(data.get("entries")))


class MappingFile:
    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def load(self) -> MappingStore:
        if not self.path.exists():
            return MappingStore()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            return parse_mapping(data)
        except (OSError, ValueError) as exc:
            _logger.warning("Failed to read mapping file %s, starting fresh: %s", self.path, exc)
            return MappingStore()

    def save(self, store: MappingStore) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(store.to_dict(), indent=2, ensure_ascii=False)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        try:
            tmp_path.replace(self.path)
        except OSError as exc:
            # Some bind-mounted single files in containers cannot be atomically replaced.
            if exc.errno != errno.EBUSY:
                raise
            self.path.write_text(text, encoding="utf-8")
            if tmp_path.exists():
                tmp_path.unlink()
