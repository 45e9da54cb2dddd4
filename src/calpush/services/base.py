"""Base calendar provider interfaces with async support."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from ..config import Settings
from ..exceptions import CalpushError
from ..models import CalendarInfo, Credential, EventPage, OAuthToken, UserInfo

logger = logging.getLogger(__name__)


class CalendarServiceError(CalpushError):
    """Base exception for calendar provider errors."""

    status_code = 500


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors (code exchange, token refresh)."""
    pass


class ChannelIdNotUniqueError(CalendarServiceError):
    """The requested channel ID is still bound to an existing subscription."""

    def __init__(self, channel_id: str, message: Optional[str] = None):
        super().__init__(message or f"Channel ID {channel_id} is not unique")
        self.channel_id = channel_id


class SyncTokenInvalidError(CalendarServiceError):
    """The stored sync token is missing or no longer accepted; a full resync is required."""
    pass


class RegistrationError(CalendarServiceError):
    """Channel registration gave up after too many collisions."""
    pass


class BaseCalendarService(ABC):
    """Calendar operations on behalf of one access token."""

    def __init__(self, settings: Settings):
        """Initialize calendar service.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.logger = logger.getChild(type(self).__name__)

    @abstractmethod
    async def create_subscription(
        self,
        calendar_id: str,
        channel_id: str,
        callback_url: str,
        token: Optional[str] = None,
    ) -> str:
        """Watch a calendar's events.

        Args:
            calendar_id: Calendar to watch
            channel_id: Caller-chosen channel ID
            callback_url: HTTPS address notifications are delivered to
            token: Verification token echoed back with every notification

        Returns:
            Provider-assigned resource ID

        Raises:
            ChannelIdNotUniqueError: If the channel ID is still in use
            CalendarServiceError: For any other failure
        """
        pass

    @abstractmethod
    async def cancel_subscription(self, channel_id: str, resource_id: str) -> None:
        """Stop a channel addressed by its ID and resource ID.

        Raises:
            CalendarServiceError: If the channel cannot be stopped
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
    ) -> EventPage:
        """Fetch one page of events.

        Args:
            calendar_id: Calendar ID
            page_token: Token of the page to fetch, None for the first page
            sync_token: Only return changes since this token

        Returns:
            The page; the last page carries ``next_sync_token``

        Raises:
            SyncTokenInvalidError: If ``sync_token`` is no longer valid
            CalendarServiceError: For any other failure
        """
        pass

    @abstractmethod
    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> None:
        """Apply a partial update to an event.

        Raises:
            CalendarServiceError: If the event cannot be patched
        """
        pass

    @abstractmethod
    async def list_calendars(self) -> List[CalendarInfo]:
        """List calendars of the authenticated user."""
        pass


class BaseAccountProvider(ABC):
    """OAuth side of a calendar provider and factory for calendar services."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger = logger.getChild(type(self).__name__)

    @abstractmethod
    def authorization_url(self, redirect_uri: str, state: str) -> str:
        """URL of the consent screen requesting offline access."""
        pass

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthToken:
        """Exchange an authorization code for a token.

        Raises:
            AuthenticationError: If the code is rejected
        """
        pass

    @abstractmethod
    async def get_user_info(self, access_token: str) -> UserInfo:
        """Identify the user an access token belongs to."""
        pass

    @abstractmethod
    async def refresh_token(self, credential: Credential) -> OAuthToken:
        """Return a valid token for a stored credential, refreshing it if expired.

        Raises:
            AuthenticationError: If the refresh is rejected
        """
        pass

    @abstractmethod
    def calendar_service(self, access_token: str) -> BaseCalendarService:
        """Calendar service acting with ``access_token``."""
        pass
