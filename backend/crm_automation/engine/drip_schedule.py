"""Drip Schedule - Send-time arithmetic in a campaign's timezone"""
from datetime import datetime, time, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo

from ..domain.models import DripCampaign, DripStep
from ..utils.time import ensure_utc


def parse_clock(value: str) -> Tuple[int, int]:
    """'09:30' -> (9, 30)"""
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


def compute_send_time(campaign: DripCampaign, step: DripStep, base: datetime) -> datetime:
    """
    When a step should go out, in UTC

    The step fires ``day_offset`` calendar days after ``base`` (as seen in
    the campaign timezone) at its ``time_of_day``, or at the campaign's
    schedule start time when the step has none. The result can lie in the
    past, in which case the step is due immediately.

    Example (UTC campaign, base 2024-01-01T08:00Z, step day 0 at 09:00):
        -> 2024-01-01T09:00Z
    """
    tz = ZoneInfo(campaign.timezone)
    local_base = ensure_utc(base).astimezone(tz)
    hours, minutes = parse_clock(step.time_of_day or campaign.schedule.start_time)
    target_date = local_base.date() + timedelta(days=step.day_offset)
    local_send = datetime.combine(target_date, time(hours, minutes), tzinfo=tz)
    return local_send.astimezone(timezone.utc)


def local_day_start(campaign: DripCampaign, moment: datetime) -> datetime:
    """Midnight of ``moment``'s day in the campaign timezone, as UTC"""
    tz = ZoneInfo(campaign.timezone)
    local = ensure_utc(moment).astimezone(tz)
    midnight = datetime.combine(local.date(), time(0, 0), tzinfo=tz)
    return midnight.astimezone(timezone.utc)
