from __future__ import annotations

import logging
from datetime import datetime, timezone

import requests

from timeledger.auth import OutlookTokenProvider
from timeledger.models import OutlookConfig, SourceEvent


_logger = logging.getLogger(__name__)


def _graph_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class OutlookCalendarClient:
    def __init__(
        self,
        config: OutlookConfig,
        token_provider: OutlookTokenProvider,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self.session = session or requests.Session()
        # True when the last fetch stopped before the final page.
        self.truncated = False

    def _headers(self, time_zone: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token_provider.get_access_token()}",
            "Prefer": f'outlook.timezone="{time_zone}"',
        }

    def fetch_calendar_view(
        self,
        start: datetime,
        end: datetime,
        *,
        category: str = "",
        time_zone: str = "UTC",
    ) -> list[SourceEvent]:
        """Expanded calendar occurrences in ``[start, end]``.

        Follows ``@odata.nextLink`` for at most ``max_pages`` pages. A failed
        page or reaching the cap is logged and the events fetched so far are
        returned, and ``truncated`` is set until the next fetch.
        """
        self.truncated = False
        url: str | None = f"{self.config.graph_base_url.rstrip('/')}/me/calendarView"
        params: dict[str, str] | None = {
            "startDateTime": _graph_timestamp(start),
            "endDateTime": _graph_timestamp(end),
            "$top": str(self.config.page_size),
        }
        headers = self._headers(time_zone)
        events: list[SourceEvent] = []
        pages = 0
        while url:
            if pages >= self.config.max_pages:
                _logger.warning(
                    "Calendar view page cap reached (%d pages); continuing with %d events",
                    self.config.max_pages,
                    len(events),
                )
                self.truncated = True
                break
            try:
                response = self.session.get(url, headers=headers, params=params, timeout=self.config.timeout_seconds)
                response.raise_for_status()
                payload = response.json()
            except (requests.RequestException, ValueError) as exc:
                _logger.error("Calendar view page %d failed, truncating fetch: %s", pages + 1, exc)
                self.truncated = True
                break
            pages += 1
            for item in payload.get("value", []) or []:
                if isinstance(item, dict):
                    events.append(SourceEvent.from_graph(item))
            url = payload.get("@odata.nextLink")
            # nextLink already carries the query.
            params = None
        _logger.debug("Fetched calendar view: events=%d pages=%d", len(events), pages)
        if category:
            wanted = category.casefold()
            events = [event for event in events if any(c.casefold() == wanted for c in event.categories)]
        return events
