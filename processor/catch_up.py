"""Hour-bucket catch-up planning for reminder-style jobs."""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Tuple

from processor.models import Watermark


@dataclass
class CatchUpPlan:
    """Hours still to process for the rolling target date."""
    target_date: str
    current_hour: int
    hours: List[int]
    watermark: Watermark

    @property
    def is_empty(self) -> bool:
        return not self.hours


def plan_catch_up(watermark: Watermark, now_utc: datetime, day_offset: int = 1) -> CatchUpPlan:
    """
    Work out which hour buckets of the target date have not been handled yet.

    The target date is day_offset days after the current UTC date. A
    watermark for another date is reset to -1 first, so a new day starts at
    hour 0. Re-running within the same hour yields an empty plan.

    Args:
        watermark: Persisted watermark
        now_utc: Current time (aware)
        day_offset: Days between today (UTC) and the target date

    Returns:
        CatchUpPlan with hours in ascending order and the (possibly reset) watermark
    """
    now_utc = now_utc.astimezone(timezone.utc)
    target_date = (now_utc.date() + timedelta(days=day_offset)).isoformat()
    current_hour = now_utc.hour

    effective = watermark.reset_for(target_date)
    start = effective.last_processed_hour + 1
    hours = list(range(start, current_hour + 1)) if start <= current_hour else []

    return CatchUpPlan(
        target_date=target_date,
        current_hour=current_hour,
        hours=hours,
        watermark=effective,
    )


def hour_window(target_date: str, hour: int) -> Tuple[datetime, datetime]:
    """Half-open UTC window [target_date hour:00, hour+1:00)."""
    day = date.fromisoformat(target_date)
    start = datetime.combine(day, time(hour=hour), tzinfo=timezone.utc)
    return start, start + timedelta(hours=1)
