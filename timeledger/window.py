from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from timeledger.models import SyncConfig, serialize_datetime, to_epoch_ms


@dataclass
class SyncWindow:
    start: datetime
    end: datetime

    @property
    def start_ms(self) -> int:
        return to_epoch_ms(self.start)

    @property
    def end_ms(self) -> int:
        return to_epoch_ms(self.end)

    def padded(self, minutes: int) -> "SyncWindow":
        pad = timedelta(minutes=max(0, minutes))
        return SyncWindow(start=self.start - pad, end=self.end + pad)

    def to_dict(self) -> dict[str, str | None]:
        return {"start": serialize_datetime(self.start), "end": serialize_datetime(self.end)}


def subtract_months(value: datetime, months: int) -> datetime:
    # The day is clamped so 31 May minus three months lands on 28/29 Feb.
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_window(now: datetime, config: SyncConfig) -> SyncWindow:
    """Past-only query window ending at ``now``.

    A configured ``hard_start_date`` starts the window at local midnight of
    that date, carried as an aware datetime with an explicit UTC offset.
    Otherwise the window reaches back ``active_window_months`` months.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if config.hard_start_date:
        start_date = date.fromisoformat(config.hard_start_date)
        if config.timezone:
            local_midnight = datetime.combine(start_date, time.min, tzinfo=ZoneInfo(config.timezone))
        else:
            local_midnight = datetime.combine(start_date, time.min).astimezone()
        # Pin the offset in force on that date instead of keeping a named zone.
        offset = local_midnight.utcoffset() or timedelta(0)
        start = local_midnight.replace(tzinfo=timezone(offset))
    else:
        start = subtract_months(now, config.active_window_months)
    return SyncWindow(start=start, end=now)
