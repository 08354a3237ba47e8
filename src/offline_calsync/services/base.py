"""Remote calendar client interface and error taxonomy."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
import logging

from ..models import CalendarEvent, ChangePage, RemoteEvent

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors. These abort a sync pass."""
    pass


class Unauthenticated(AuthenticationError):
    """No credential, or the provider rejected the access token."""
    pass


class ReauthorizationRequired(AuthenticationError):
    """The refresh token is missing or was rejected by the provider."""
    pass


class InvalidGrant(AuthenticationError):
    """An authorization code was rejected or already used."""
    pass


class ClientNotConfigured(AuthenticationError):
    """OAuth client id, secret or redirect URI is missing."""
    pass


class RemoteConflict(CalendarServiceError):
    """Etag precondition failed on patch/delete."""
    pass


class RemoteNotFound(CalendarServiceError):
    """The remote item no longer exists."""
    pass


class TransientNetworkError(CalendarServiceError):
    """Rate limiting, server-side or transport failure worth retrying."""
    pass


class InvalidSyncToken(CalendarServiceError):
    """The provider no longer accepts the stored sync token."""
    pass


class BaseRemoteCalendar(ABC):
    """Abstract base class for a remote calendar adapter.

    All methods address a single calendar. Implementations translate
    provider failures into the exceptions defined above.
    """

    @abstractmethod
    async def list_changes(
        self,
        calendar_id: str,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> ChangePage:
        """Return one page of changes.

        Args:
            calendar_id: Calendar ID
            sync_token: Incremental baseline; None requests a full listing
            page_token: Continuation token from the previous page

        Returns:
            Change page. ``next_sync_token`` is set only on the last page.

        Raises:
            InvalidSyncToken: If the sync token is expired or invalid
            CalendarServiceError: If the listing fails
        """
        pass

    @abstractmethod
    async def get_event(self, calendar_id: str, remote_id: str) -> RemoteEvent:
        """Get a specific event by remote ID.

        Raises:
            RemoteNotFound: If the event does not exist or was deleted
        """
        pass

    @abstractmethod
    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> RemoteEvent:
        """Create the remote counterpart of a local event.

        Returns:
            The created remote event, carrying its id and etag
        """
        pass

    @abstractmethod
    async def patch_event(
        self,
        calendar_id: str,
        remote_id: str,
        event: CalendarEvent,
        expected_etag: Optional[str],
    ) -> RemoteEvent:
        """Conditionally update a remote event.

        Args:
            calendar_id: Calendar ID
            remote_id: Remote event ID
            event: Local event whose content is written
            expected_etag: Etag the remote item must still carry; None is unconditional

        Returns:
            The updated remote event with its new etag

        Raises:
            RemoteConflict: If ``expected_etag`` is stale
            RemoteNotFound: If the remote event no longer exists
        """
        pass

    @abstractmethod
    async def delete_event(
        self,
        calendar_id: str,
        remote_id: str,
        expected_etag: Optional[str],
    ) -> None:
        """Conditionally delete a remote event.

        Raises:
            RemoteConflict: If ``expected_etag`` is stale
            RemoteNotFound: If the remote event is already gone
        """
        pass

    @abstractmethod
    async def list_range(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[RemoteEvent]:
        """List non-deleted events in a time window (read-only calendars)."""
        pass

    async def close(self) -> None:
        """Clean up resources."""
        pass
