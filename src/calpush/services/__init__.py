"""Calendar provider interfaces and implementations."""

from .base import (
    AuthenticationError,
    BaseAccountProvider,
    BaseCalendarService,
    CalendarServiceError,
    ChannelIdNotUniqueError,
    RegistrationError,
    SyncTokenInvalidError,
)
from .google import GoogleAccountProvider, GoogleCalendarService

__all__ = [
    'AuthenticationError',
    'BaseAccountProvider',
    'BaseCalendarService',
    'CalendarServiceError',
    'ChannelIdNotUniqueError',
    'RegistrationError',
    'SyncTokenInvalidError',
    'GoogleAccountProvider',
    'GoogleCalendarService',
]
