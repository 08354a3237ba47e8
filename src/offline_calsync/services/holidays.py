"""Read-only public holiday overlay from Google's holiday calendars."""

import logging
from datetime import date, datetime
from typing import Callable, List, Optional

import pytz

from .base import BaseRemoteCalendar
from ..models import Holiday, RemoteEvent

logger = logging.getLogger(__name__)

_HOLIDAY_CALENDARS = {
    'ko': 'ko.south_korea', 'ko-kr': 'ko.south_korea', 'kr': 'ko.south_korea',
    'en-gb': 'en.uk', 'en-uk': 'en.uk', 'gb': 'en.uk', 'uk': 'en.uk',
    'en-au': 'en.australian', 'au': 'en.australian', 'en-nz': 'en.australian', 'nz': 'en.australian',
    'en-ca': 'en.ca', 'ca': 'en.ca',
    'en-in': 'en.indian', 'in': 'en.indian',
    'en': 'en.usa', 'en-us': 'en.usa', 'us': 'en.usa',
}

# Observances that are not days off.
SKIP_HOLIDAY_TITLES = frozenset({
    '식목일', '노동절', '어버이날', '스승의날', '제헌절', '국군의 날', '국군의날',
    '크리스마스 이브', '섣달 그믐날',
    'arbor day', 'labor day', "parents' day", 'parents day', "teachers' day",
    'teachers day', 'constitution day', 'armed forces day', 'christmas eve',
    "new year's eve",
})


def holiday_calendar_id(country_code: str) -> str:
    """Map a locale or country code to a Google holiday calendar ID."""
    region = _HOLIDAY_CALENDARS.get(country_code.strip().lower(), 'en.usa')
    return f"{region}#holiday@group.v.calendar.google.com"


def _local_day(item: RemoteEvent) -> date:
    """Calendar day of an entry; timed entries count in their own timezone."""
    if item.all_day or not item.timezone:
        return item.start.date()
    try:
        return item.start.astimezone(pytz.timezone(item.timezone)).date()
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone {item.timezone!r} on holiday {item.id}")
        return item.start.date()


class GoogleHolidayFeed:
    """Fetches holidays for the current year and the next one.

    Results are display-only; nothing here touches the local event store.
    """

    def __init__(
        self,
        remote: BaseRemoteCalendar,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.remote = remote
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('feed')

    async def list_holidays(self, country_code: str) -> List[Holiday]:
        calendar_id = holiday_calendar_id(country_code)
        now = self.clock()
        time_min = datetime(now.year, 1, 1, tzinfo=pytz.UTC)
        time_max = datetime(now.year + 2, 1, 1, tzinfo=pytz.UTC)

        items = await self.remote.list_range(calendar_id, time_min, time_max)
        holidays = []
        for item in items:
            if item.deleted or item.start is None:
                continue
            if item.title.strip().lower() in SKIP_HOLIDAY_TITLES:
                continue
            holidays.append(Holiday(title=item.title, day=_local_day(item)))

        self.logger.debug(f"Loaded {len(holidays)} holidays from {calendar_id}")
        return sorted(holidays, key=lambda h: h.day)
