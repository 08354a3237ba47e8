"""Tests for the holiday overlay."""

from datetime import date

import pytest

from conftest import FakeRemoteCalendar, at
from offline_calsync.services.holidays import GoogleHolidayFeed, holiday_calendar_id


@pytest.mark.parametrize('code, region', [
    ('ko', 'ko.south_korea'),
    ('KR', 'ko.south_korea'),
    ('en-GB', 'en.uk'),
    ('in', 'en.indian'),
    ('xx', 'en.usa'),
])
def test_calendar_ids(code, region):
    assert holiday_calendar_id(code) == f"{region}#holiday@group.v.calendar.google.com"


@pytest.mark.asyncio
async def test_observances_are_skipped_and_sorted():
    remote = FakeRemoteCalendar()
    remote.add_remote("Chuseok", day=20)
    remote.add_remote("식목일", day=5)
    remote.add_remote("Seollal", day=2)
    feed = GoogleHolidayFeed(remote, clock=lambda: at(1))

    holidays = await feed.list_holidays("ko")

    assert [(h.title, h.day) for h in holidays] == [
        ("Seollal", date(2026, 3, 2)),
        ("Chuseok", date(2026, 3, 20)),
    ]
    assert remote.calls == ['list_range']


@pytest.mark.asyncio
async def test_timed_entry_uses_its_own_timezone():
    remote = FakeRemoteCalendar()
    # 15:00 UTC on the 19th is midnight on the 20th in Seoul.
    remote.add_remote("Late holiday", day=19, hour=15, timezone="Asia/Seoul")
    remote.add_remote("All day", day=19, hour=0, all_day=True, timezone="Asia/Seoul")
    feed = GoogleHolidayFeed(remote, clock=lambda: at(1))

    holidays = await feed.list_holidays("ko")

    assert [(h.title, h.day) for h in holidays] == [
        ("All day", date(2026, 3, 19)),
        ("Late holiday", date(2026, 3, 20)),
    ]
