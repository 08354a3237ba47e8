"""Google Calendar v3 client with async support."""

import asyncio
import base64
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from dateutil import parser as date_parser
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
import pytz
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseRemoteCalendar, CalendarServiceError, InvalidSyncToken, RemoteConflict,
    RemoteNotFound, TransientNetworkError, Unauthenticated,
)
from .credentials import CredentialManager
from ..config import Settings
from ..models import (
    ALERT_MINUTES, AlertKind, CalendarEvent, ChangePage, EventColor, Recurrence, RemoteEvent,
)


SIMPLE_RRULES: Dict[Recurrence, str] = {
    Recurrence.DAILY: "RRULE:FREQ=DAILY",
    Recurrence.WEEKLY: "RRULE:FREQ=WEEKLY",
    Recurrence.MONTHLY: "RRULE:FREQ=MONTHLY",
    Recurrence.YEARLY: "RRULE:FREQ=YEARLY",
}

_RATE_LIMIT_REASONS = {'rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded'}

logger = logging.getLogger(__name__)


class DuplicateEventId(CalendarServiceError):
    """An insert reused an id that already exists remotely (HTTP 409)."""
    pass


def translate_http_error(
    error: HttpError,
    gone: Type[CalendarServiceError] = RemoteNotFound,
) -> CalendarServiceError:
    """Map a Google API HTTP error onto the service error taxonomy.

    Args:
        error: Error raised by googleapiclient
        gone: Exception type for HTTP 410, which means an expired sync token
            on listings and an already-deleted item everywhere else

    Returns:
        The exception to raise
    """
    status = error.resp.status
    reason = error._get_reason() if hasattr(error, '_get_reason') else str(error)

    if status == 401:
        return Unauthenticated(f"Google rejected the access token: {reason}")
    if status == 404:
        return RemoteNotFound(f"Not found: {reason}")
    if status == 409:
        return DuplicateEventId(f"Duplicate event id: {reason}")
    if status == 410:
        return gone(f"Gone: {reason}")
    if status == 412:
        return RemoteConflict(f"Etag precondition failed: {reason}")
    if status == 429 or status >= 500:
        return TransientNetworkError(f"Google API unavailable (HTTP {status}): {reason}")
    if status == 403 and any(r in str(error.content) for r in _RATE_LIMIT_REASONS):
        return TransientNetworkError(f"Google API rate limited: {reason}")
    return CalendarServiceError(f"Google API error (HTTP {status}): {reason}")


def generate_compliant_event_id(local_id: str) -> str:
    """Derive a stable Google event id from a local id.

    Google accepts client-supplied ids made of base32hex characters
    ([a-v0-9], 5..1024 long). Reusing the same id on a retried insert turns a
    duplicate into a 409 instead of a second event.
    """
    digest = hashlib.sha256(local_id.encode()).digest()
    encoded = base64.b32hexencode(digest).decode().rstrip('=').lower()
    return encoded[:32]


def _recurrence_to_google(event: CalendarEvent) -> List[str]:
    if event.recurrence == Recurrence.NONE:
        return []
    if event.recurrence == Recurrence.CUSTOM:
        lines = []
        for line in (event.recurrence_custom or '').splitlines():
            line = line.strip()
            if not line:
                continue
            if line.upper().startswith('FREQ='):
                line = f"RRULE:{line}"
            lines.append(line)
        return lines
    return [SIMPLE_RRULES[event.recurrence]]


def _recurrence_from_google(lines: Optional[List[str]]) -> Tuple[Recurrence, Optional[str]]:
    if not lines:
        return Recurrence.NONE, None
    if len(lines) == 1:
        for tag, rule in SIMPLE_RRULES.items():
            if lines[0].strip().upper() == rule:
                return tag, None
    return Recurrence.CUSTOM, "\n".join(lines)


def _alert_from_google(reminders: Optional[Dict[str, Any]]) -> Tuple[AlertKind, int]:
    if not reminders or reminders.get('useDefault'):
        return AlertKind.NONE, 0
    overrides = reminders.get('overrides') or []
    if not overrides:
        return AlertKind.NONE, 0
    minutes = int(overrides[0].get('minutes', 0))
    for kind, preset in ALERT_MINUTES.items():
        if preset == minutes:
            return kind, 0
    return AlertKind.CUSTOM, minutes


class GoogleCalendarClient(BaseRemoteCalendar):
    """Google Calendar adapter issuing authenticated calls in an executor."""

    def __init__(self, settings: Settings, credentials: CredentialManager):
        """Initialize Google Calendar client.

        Args:
            settings: Application settings
            credentials: Source of fresh access tokens
        """
        self.settings = settings
        self.credentials = credentials
        self.logger = logger.getChild('google')
        self._service = None
        self._service_token: Optional[str] = None

    async def _get_service(self):
        """Build (or reuse) the API service for the current access token."""
        token = await self.credentials.ensure_fresh_access_token()
        if self._service is None or token != self._service_token:
            http = AuthorizedHttp(
                Credentials(token=token),
                http=httplib2.Http(timeout=self.settings.request_timeout_seconds),
            )
            self._service = build('calendar', 'v3', http=http, cache_discovery=False)
            self._service_token = token
        return self._service

    async def _execute(
        self,
        build_request: Callable[[Any], Any],
        headers: Optional[Dict[str, str]] = None,
        gone: Type[CalendarServiceError] = RemoteNotFound,
    ) -> Any:
        """Execute one API request, retrying transient failures.

        Args:
            build_request: Builds the request from the API service object
            headers: Extra request headers such as If-Match
            gone: Exception type used for HTTP 410

        Returns:
            Decoded response body
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.sync_config.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(TransientNetworkError),
            reraise=True,
        ):
            with attempt:
                return await self._execute_once(build_request, headers, gone)

    async def _execute_once(
        self,
        build_request: Callable[[Any], Any],
        headers: Optional[Dict[str, str]],
        gone: Type[CalendarServiceError],
    ) -> Any:
        service = await self._get_service()
        request = build_request(service)
        if headers:
            request.headers.update(headers)
        try:
            return await asyncio.get_event_loop().run_in_executor(None, request.execute)
        except HttpError as e:
            raise translate_http_error(e, gone=gone)
        except (httplib2.HttpLib2Error, OSError) as e:
            raise TransientNetworkError(f"Network error talking to Google: {e}")

    async def list_changes(
        self,
        calendar_id: str,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> ChangePage:
        """Return one page of incremental changes, or of a full listing."""
        params: Dict[str, Any] = {
            'calendarId': calendar_id,
            'maxResults': self.settings.sync_config.page_size,
            'singleEvents': False,
        }
        if sync_token:
            params['syncToken'] = sync_token
            params['showDeleted'] = True
        if page_token:
            params['pageToken'] = page_token

        result = await self._execute(
            lambda service: service.events().list(**params),
            gone=InvalidSyncToken if sync_token else RemoteNotFound,
        )
        items = [self._format_google_event(data) for data in result.get('items', [])]
        page = ChangePage(
            items=items,
            next_sync_token=result.get('nextSyncToken'),
            next_page_token=result.get('nextPageToken'),
        )
        self.logger.debug(
            f"Listed {len(items)} items (incremental={bool(sync_token)}, truncated={page.truncated})"
        )
        return page

    async def list_range(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[RemoteEvent]:
        """List events between two instants, following pagination."""
        events: List[RemoteEvent] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                'calendarId': calendar_id,
                'timeMin': time_min.isoformat(),
                'timeMax': time_max.isoformat(),
                'singleEvents': True,
                'orderBy': 'startTime',
                'maxResults': 2500,
            }
            if page_token:
                params['pageToken'] = page_token
            result = await self._execute(lambda service: service.events().list(**params))
            events.extend(self._format_google_event(data) for data in result.get('items', []))
            page_token = result.get('nextPageToken')
            if not page_token:
                return events

    async def get_event(self, calendar_id: str, remote_id: str) -> RemoteEvent:
        data = await self._execute(
            lambda service: service.events().get(calendarId=calendar_id, eventId=remote_id)
        )
        event = self._format_google_event(data)
        if event.deleted:
            raise RemoteNotFound(f"Google event {remote_id} was deleted")
        return event

    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> RemoteEvent:
        """Create the event with an id derived from the local id."""
        body = self._convert_to_google_format(event)
        body['id'] = generate_compliant_event_id(event.id)
        try:
            data = await self._execute(
                lambda service: service.events().insert(calendarId=calendar_id, body=body)
            )
        except DuplicateEventId:
            # An earlier attempt created it but we never recorded the result.
            self.logger.info(f"Event {event.id} already exists remotely as {body['id']}, updating it")
            return await self.patch_event(calendar_id, body['id'], event, expected_etag=None)
        self.logger.info(f"Created Google event {data.get('id')} for '{event.title}'")
        return self._format_google_event(data)

    async def patch_event(
        self,
        calendar_id: str,
        remote_id: str,
        event: CalendarEvent,
        expected_etag: Optional[str],
    ) -> RemoteEvent:
        body = self._convert_to_google_format(event)
        headers = {'If-Match': expected_etag} if expected_etag else None
        data = await self._execute(
            lambda service: service.events().patch(
                calendarId=calendar_id, eventId=remote_id, body=body
            ),
            headers=headers,
        )
        return self._format_google_event(data)

    async def delete_event(
        self,
        calendar_id: str,
        remote_id: str,
        expected_etag: Optional[str],
    ) -> None:
        headers = {'If-Match': expected_etag} if expected_etag else None
        await self._execute(
            lambda service: service.events().delete(calendarId=calendar_id, eventId=remote_id),
            headers=headers,
        )
        self.logger.info(f"Deleted Google event {remote_id}")

    def _parse_google_time(self, value: Dict[str, Any]) -> Optional[datetime]:
        try:
            if value.get('date'):
                return datetime.strptime(value['date'], '%Y-%m-%d').replace(tzinfo=pytz.UTC)
            if value.get('dateTime'):
                parsed = date_parser.isoparse(value['dateTime'])
                if parsed.tzinfo is None:
                    tz_name = value.get('timeZone')
                    parsed = pytz.timezone(tz_name).localize(parsed) if tz_name else pytz.UTC.localize(parsed)
                return parsed
        except (ValueError, pytz.UnknownTimeZoneError) as e:
            self.logger.warning(f"Unparseable Google time {value}: {e}")
        return None

    def _format_google_event(self, event_data: Dict[str, Any]) -> RemoteEvent:
        """Convert a Google Calendar event resource to a RemoteEvent."""
        start = event_data.get('start') or {}
        end = event_data.get('end') or {}

        recurrence, recurrence_custom = _recurrence_from_google(event_data.get('recurrence'))
        alert, alert_offset = _alert_from_google(event_data.get('reminders'))

        color_id = event_data.get('colorId')
        color = EventColor(color_id) if color_id in EventColor._value2member_map_ else None

        updated = None
        if event_data.get('updated'):
            try:
                updated = date_parser.isoparse(event_data['updated'])
            except ValueError:
                self.logger.warning(f"Unparseable update time on Google event {event_data['id']}")

        return RemoteEvent(
            id=event_data['id'],
            status=event_data.get('status', 'confirmed'),
            etag=event_data.get('etag'),
            updated=updated,
            title=event_data.get('summary', ''),
            start=self._parse_google_time(start),
            end=self._parse_google_time(end),
            all_day='date' in start,
            timezone=start.get('timeZone'),
            recurrence=recurrence,
            recurrence_custom=recurrence_custom,
            location=event_data.get('location') or None,
            description=event_data.get('description') or None,
            color=color,
            alert=alert,
            alert_offset=alert_offset,
        )

    def _convert_to_google_format(self, event: CalendarEvent) -> Dict[str, Any]:
        """Convert a local event to a Google Calendar resource body.

        Unused start/end keys are sent as null so a patch can switch an event
        between all-day and timed.
        """
        google_event: Dict[str, Any] = {
            'status': 'confirmed',
            'summary': event.title,
            'description': event.description or '',
            'location': event.location or '',
            'colorId': event.color.value if event.color else None,
            'recurrence': _recurrence_to_google(event),
        }

        if event.all_day:
            start_date = event.start.date()
            end_date = event.end.date()
            # Google's all-day end date is exclusive.
            if end_date <= start_date:
                end_date = start_date + timedelta(days=1)
            google_event['start'] = {'date': start_date.isoformat(), 'dateTime': None}
            google_event['end'] = {'date': end_date.isoformat(), 'dateTime': None}
        else:
            tz_name = event.timezone or 'UTC'
            google_event['start'] = {'dateTime': event.start.isoformat(), 'timeZone': tz_name, 'date': None}
            google_event['end'] = {'dateTime': event.end.isoformat(), 'timeZone': tz_name, 'date': None}

        if event.alert != AlertKind.NONE:
            minutes = ALERT_MINUTES.get(event.alert, event.alert_offset)
            google_event['reminders'] = {
                'useDefault': False,
                'overrides': [{'method': 'popup', 'minutes': minutes}],
            }

        return google_event
