from __future__ import annotations

import logging
from typing import Any

import requests

from timeledger.models import ClickUpConfig, DestinationRecord


DAY_MS = 24 * 60 * 60 * 1000

_logger = logging.getLogger(__name__)


class ClickUpApiError(RuntimeError):
    def __init__(self, status_code: int, path: str, body: str = "") -> None:
        super().__init__(f"ClickUp API {status_code} on {path}")
        self.status_code = status_code
        self.path = path
        self.body = body


def extract_created_id(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    data = payload.get("data")
    time_entry = payload.get("time_entry")
    for candidate in (
        data.get("id") if isinstance(data, dict) else None,
        payload.get("id"),
        time_entry.get("id") if isinstance(time_entry, dict) else None,
        payload.get("timeEntryId"),
    ):
        if candidate:
            return str(candidate)
    return ""


class ClickUpClient:
    def __init__(self, config: ClickUpConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.api_token and self.config.team_id)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.config.api_token:
            raise RuntimeError("ClickUp api_token is not set. Cannot perform ClickUp operations.")
        url = f"{self.config.base_url.rstrip('/')}{path}"
        response = self.session.request(
            method,
            url,
            headers={
                "Authorization": self.config.api_token,
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout_seconds,
            **kwargs,
        )
        if not response.ok:
            body = response.text[:500]
            _logger.error("ClickUp API error: status=%s path=%s body=%s", response.status_code, path, body)
            raise ClickUpApiError(response.status_code, path, body)
        if not response.content:
            return {}
        return response.json()

    def fetch_time_entries(self, start_ms: int, end_ms: int) -> list[DestinationRecord]:
        """Time entries in ``[start_ms, end_ms]``, fetched in ``page_days`` slices.

        At most ``max_pages`` slices are requested. A failed slice or the cap
        stops the fetch early and whatever was collected is returned.
        """
        if not self.is_configured():
            _logger.warning("ClickUp not configured (token/team id missing); skipping time entry fetch")
            return []
        step = self.config.page_days * DAY_MS
        records: dict[str, DestinationRecord] = {}
        cursor = start_ms
        pages = 0
        while cursor <= end_ms:
            if pages >= self.config.max_pages:
                _logger.warning(
                    "Time entry page cap reached (%d pages); continuing with %d entries",
                    self.config.max_pages,
                    len(records),
                )
                break
            slice_end = min(cursor + step - 1, end_ms)
            try:
                payload = self._request(
                    "GET",
                    f"/team/{self.config.team_id}/time_entries",
                    params={"start_date": cursor, "end_date": slice_end},
                )
            except (ClickUpApiError, requests.RequestException, ValueError) as exc:
                _logger.error("Time entry page %d failed, truncating fetch: %s", pages + 1, exc)
                break
            pages += 1
            items = payload.get("data", []) if isinstance(payload, dict) else []
            for item in items or []:
                if not isinstance(item, dict):
                    continue
                record = DestinationRecord.from_clickup(item)
                if record.id:
                    records[record.id] = record
            cursor = slice_end + 1
        _logger.debug("Fetched time entries: entries=%d pages=%d", len(records), pages)
        return list(records.values())

    def get_time_entry(self, entry_id: str) -> DestinationRecord | None:
        if not self.is_configured():
            return None
        try:
            payload = self._request("GET", f"/team/{self.config.team_id}/time_entries/{entry_id}")
        except ClickUpApiError as exc:
            if exc.status_code == 404:
                return None
            raise
        data = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            return None
        record = DestinationRecord.from_clickup(data)
        return record if record.id else None

    def create_time_entry(
        self,
        *,
        task_ref: str,
        start_ms: int,
        stop_ms: int,
        duration_ms: int,
        description: str,
    ) -> dict[str, Any]:
        payload = {
            "description": description or "",
            "tags": [],
            "start": start_ms,
            "stop": stop_ms,
            "end": stop_ms,
            "duration": duration_ms,
            "tid": task_ref,
        }
        return self._request("POST", f"/team/{self.config.team_id}/time_entries", json=payload)

    def update_time_entry(self, entry_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", f"/team/{self.config.team_id}/time_entries/{entry_id}", json=patch)

    def delete_time_entry(self, entry_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/team/{self.config.team_id}/time_entries/{entry_id}")
