"""Tests for drip send-time arithmetic"""
from datetime import datetime, timezone

from crm_automation.domain.models import DripCampaign, DripStep
from crm_automation.engine.drip_schedule import compute_send_time, local_day_start, parse_clock


def campaign(tz: str = "UTC", start_time: str = "09:00") -> DripCampaign:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return DripCampaign(
        campaign_id="dc-1",
        user_id="t1",
        name="c",
        timezone=tz,
        schedule={"start_time": start_time},
        created_at=now,
        updated_at=now,
    )


def test_parse_clock():
    assert parse_clock("07:05") == (7, 5)


def test_same_day_send_time():
    step = DripStep(day_offset=0, time_of_day="09:00")
    base = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    assert compute_send_time(campaign(), step, base) == datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def test_day_offset_and_past_times():
    step = DripStep(day_offset=2, time_of_day="07:30")
    base = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    assert compute_send_time(campaign(), step, base) == datetime(2024, 1, 3, 7, 30, tzinfo=timezone.utc)

    same_day = DripStep(day_offset=0, time_of_day="07:30")
    assert compute_send_time(campaign(), same_day, base) < base


def test_schedule_start_time_is_the_fallback():
    step = DripStep(day_offset=1)
    base = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    assert compute_send_time(campaign(start_time="10:15"), step, base) == datetime(2024, 1, 2, 10, 15, tzinfo=timezone.utc)


def test_campaign_timezone_is_respected():
    # 2024-01-01T20:00Z is already 2024-01-02 01:30 in Kolkata
    step = DripStep(day_offset=0, time_of_day="09:00")
    base = datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)
    assert compute_send_time(campaign("Asia/Kolkata"), step, base) == datetime(2024, 1, 2, 3, 30, tzinfo=timezone.utc)


def test_local_day_start():
    moment = datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)
    assert local_day_start(campaign("Asia/Kolkata"), moment) == datetime(2024, 1, 1, 18, 30, tzinfo=timezone.utc)
    assert local_day_start(campaign(), moment) == datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
