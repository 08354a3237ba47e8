"""Remote calendar, credential and holiday services."""

from .base import (
    BaseRemoteCalendar,
    CalendarServiceError,
    AuthenticationError,
    Unauthenticated,
    ReauthorizationRequired,
    InvalidGrant,
    ClientNotConfigured,
    RemoteConflict,
    RemoteNotFound,
    TransientNetworkError,
    InvalidSyncToken,
)
from .credentials import CredentialManager, FileTokenStore
from .google import GoogleCalendarClient
from .holidays import GoogleHolidayFeed

__all__ = [
    'BaseRemoteCalendar',
    'CalendarServiceError',
    'AuthenticationError',
    'Unauthenticated',
    'ReauthorizationRequired',
    'InvalidGrant',
    'ClientNotConfigured',
    'RemoteConflict',
    'RemoteNotFound',
    'TransientNetworkError',
    'InvalidSyncToken',
    'CredentialManager',
    'FileTokenStore',
    'GoogleCalendarClient',
    'GoogleHolidayFeed',
]
