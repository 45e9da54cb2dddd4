"""Google Calendar provider implementation with async support."""

import asyncio
import json
from typing import Any, Dict, List, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import pytz

from .base import (
    AuthenticationError,
    BaseAccountProvider,
    BaseCalendarService,
    CalendarServiceError,
    ChannelIdNotUniqueError,
    SyncTokenInvalidError,
)
from ..config import Settings
from ..models import CalendarInfo, Credential, EventPage, OAuthToken, ProviderEvent, UserInfo

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

CHANNEL_ID_NOT_UNIQUE = "channelIdNotUnique"


def error_reasons(error: HttpError) -> List[str]:
    """Reasons listed in a Google API error payload (``error.errors[].reason``)."""
    content = error.content
    if isinstance(content, bytes):
        content = content.decode('utf-8', errors='replace')
    try:
        data = json.loads(content)
    except (TypeError, ValueError):
        return []
    if not isinstance(data, dict) or not isinstance(data.get('error'), dict):
        return []
    return [
        item.get('reason', '')
        for item in data['error'].get('errors') or []
        if isinstance(item, dict)
    ]


def is_channel_id_collision(error: HttpError) -> bool:
    """True only when the single reported reason is a non-unique channel ID.

    A payload listing ``channelIdNotUnique`` next to any other reason is not a
    collision.
    """
    return error_reasons(error) == [CHANNEL_ID_NOT_UNIQUE]


class GoogleCalendarService(BaseCalendarService):
    """Google Calendar operations for one set of OAuth credentials."""

    def __init__(self, settings: Settings, credentials: Credentials):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
            credentials: Credentials the API calls are made with
        """
        super().__init__(settings)
        self.credentials = credentials
        self._service = None

    @property
    def service(self):
        """Lazily built ``calendar`` v3 discovery client."""
        if self._service is None:
            self._service = build('calendar', 'v3', credentials=self.credentials, cache_discovery=False)
        return self._service

    async def _execute(self, request):
        # googleapiclient is blocking; run it in the default thread pool
        return await asyncio.get_event_loop().run_in_executor(None, request.execute)

    async def create_subscription(
        self,
        calendar_id: str,
        channel_id: str,
        callback_url: str,
        token: Optional[str] = None,
    ) -> str:
        """Create a web_hook channel on a calendar's events."""
        body = {'id': channel_id, 'type': 'web_hook', 'address': callback_url}
        if token:
            body['token'] = token

        try:
            result = await self._execute(
                self.service.events().watch(calendarId=calendar_id, body=body)
            )
        except HttpError as e:
            if is_channel_id_collision(e):
                raise ChannelIdNotUniqueError(channel_id)
            raise CalendarServiceError(f"Failed to watch Google calendar {calendar_id}: {e}")

        resource_id = result.get('resourceId')
        if not resource_id:
            raise CalendarServiceError(f"Watch response for channel {channel_id} has no resourceId")
        self.logger.debug(f"Created channel {channel_id} on {calendar_id} (resource {resource_id})")
        return resource_id

    async def cancel_subscription(self, channel_id: str, resource_id: str) -> None:
        """Stop a channel."""
        try:
            await self._execute(
                self.service.channels().stop(body={'id': channel_id, 'resourceId': resource_id})
            )
        except HttpError as e:
            raise CalendarServiceError(f"Failed to stop Google channel {channel_id}: {e}")
        self.logger.debug(f"Stopped channel {channel_id} (resource {resource_id})")

    async def list_events(
        self,
        calendar_id: str,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
    ) -> EventPage:
        """Fetch one page of events, incrementally when ``sync_token`` is given."""
        params: Dict[str, Any] = {'calendarId': calendar_id}
        if sync_token:
            params['syncToken'] = sync_token
        if page_token:
            params['pageToken'] = page_token

        try:
            result = await self._execute(self.service.events().list(**params))
        except HttpError as e:
            if e.resp.status == 410 and sync_token:
                raise SyncTokenInvalidError(
                    f"Sync token for Google calendar {calendar_id} expired; full resync required"
                )
            if e.resp.status == 404:
                raise CalendarServiceError(f"Google calendar {calendar_id} not found")
            raise CalendarServiceError(f"Failed to list Google events: {e}")

        items = []
        for event_data in result.get('items', []):
            if not event_data.get('id'):
                self.logger.warning(f"Skipping Google event without id on {calendar_id}")
                continue
            items.append(ProviderEvent.from_google(event_data))

        return EventPage(
            items=items,
            next_page_token=result.get('nextPageToken'),
            next_sync_token=result.get('nextSyncToken'),
        )

    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> None:
        """Patch an event."""
        try:
            await self._execute(
                self.service.events().patch(calendarId=calendar_id, eventId=event_id, body=body)
            )
        except HttpError as e:
            raise CalendarServiceError(f"Failed to patch Google event {event_id}: {e}")

    async def list_calendars(self) -> List[CalendarInfo]:
        """List the user's Google calendars."""
        calendars = []
        page_token = None
        try:
            while True:
                params = {'pageToken': page_token} if page_token else {}
                result = await self._execute(self.service.calendarList().list(**params))
                for cal_data in result.get('items', []):
                    calendars.append(CalendarInfo(
                        id=cal_data['id'],
                        name=cal_data.get('summaryOverride') or cal_data.get('summary', 'Unnamed Calendar'),
                        is_primary=cal_data.get('primary', False),
                    ))
                page_token = result.get('nextPageToken')
                if not page_token:
                    break
        except HttpError as e:
            raise CalendarServiceError(f"Failed to list Google calendars: {e}")
        return calendars


class GoogleAccountProvider(BaseAccountProvider):
    """Google OAuth 2.0 web flow and token refresh."""

    @property
    def client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
            }
        }

    def _flow(self, redirect_uri: str) -> Flow:
        return Flow.from_client_config(
            self.client_config,
            scopes=self.settings.google_scopes,
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=False,
        )

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        url, _ = self._flow(redirect_uri).authorization_url(
            access_type='offline',
            state=state,
        )
        return url

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthToken:
        flow = self._flow(redirect_uri)
        try:
            await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: flow.fetch_token(code=code)
            )
        except Exception as e:
            raise AuthenticationError(f"Failed to exchange authorization code: {e}")

        creds = flow.credentials
        return OAuthToken(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=creds.expiry,
        )

    def _oauth2_service(self, access_token: str):
        return build('oauth2', 'v2', credentials=Credentials(token=access_token), cache_discovery=False)

    async def get_user_info(self, access_token: str) -> UserInfo:
        service = self._oauth2_service(access_token)
        try:
            data = await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: service.userinfo().get().execute()
            )
        except HttpError as e:
            if e.resp.status in (401, 403):
                raise AuthenticationError(f"Access token rejected by Google: {e}")
            raise CalendarServiceError(f"Failed to get Google user info: {e}")
        return UserInfo(id=data['id'], given_name=data.get('given_name', ''))

    async def refresh_token(self, credential: Credential) -> OAuthToken:
        """Return the stored token while valid, otherwise a refreshed one."""
        creds = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token or None,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=self.settings.google_scopes,
            # google-auth compares against naive UTC datetimes
            expiry=credential.expires_at.astimezone(pytz.UTC).replace(tzinfo=None),
        )

        if creds.valid:
            return OAuthToken(
                access_token=credential.access_token,
                refresh_token=credential.refresh_token or None,
                expires_at=credential.expires_at,
            )

        if not creds.refresh_token:
            raise AuthenticationError(
                f"Access token of {credential.principal_id} expired and no refresh token is stored"
            )

        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: creds.refresh(Request()))
        except RefreshError as e:
            raise AuthenticationError(f"Failed to refresh token of {credential.principal_id}: {e}")

        self.logger.info(f"Refreshed Google access token of {credential.principal_id}")
        return OAuthToken(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=creds.expiry or credential.expires_at,
        )

    def calendar_service(self, access_token: str) -> GoogleCalendarService:
        return GoogleCalendarService(self.settings, Credentials(token=access_token))
