from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calpush.config import Settings
from calpush.database import DatabaseManager
from calpush.models import CalendarInfo, Credential, EventPage, OAuthToken, ProviderEvent, UserInfo
from calpush.services.base import (
    AuthenticationError,
    BaseAccountProvider,
    BaseCalendarService,
    ChannelIdNotUniqueError,
)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        public_base_url='https://calpush.test',
    )
    values.update(overrides)
    return TestSettings(**values)


def busy_event(event_id, use_default=True, summary='Busy', status='confirmed'):
    return ProviderEvent(id=event_id, summary=summary, status=status, reminders_use_default=use_default)


def paged(*item_lists, sync_token='sync-next'):
    """Chain item lists into pages whose tokens are the next page's index."""
    pages = []
    for index, items in enumerate(item_lists):
        last = index == len(item_lists) - 1
        pages.append(EventPage(
            items=list(items),
            next_page_token=None if last else str(index + 1),
            next_sync_token=sync_token if last else None,
        ))
    return pages


class FakeCalendarService(BaseCalendarService):
    """In-memory calendar recording every remote call."""

    def __init__(self, settings, resource_id='res-cal'):
        super().__init__(settings)
        self.resource_id = resource_id
        self.calls: List[tuple] = []
        self.collisions: Dict[str, int] = {}
        self.create_errors: Dict[str, Exception] = {}
        self.full_pages: List[EventPage] = paged([], sync_token='sync-baseline')
        self.change_pages: List[EventPage] = paged([])
        self.list_failures: Dict[int, Exception] = {}
        self.patch_failures: Dict[str, Exception] = {}
        self.calendars: List[CalendarInfo] = [
            CalendarInfo(id='cal-1', name='Work', is_primary=True),
            CalendarInfo(id='cal-2', name='Home'),
        ]

    def calls_of(self, kind):
        return [call for call in self.calls if call[0] == kind]

    async def create_subscription(self, calendar_id, channel_id, callback_url, token=None):
        self.calls.append(('create', calendar_id, channel_id, callback_url, token))
        if channel_id in self.create_errors:
            raise self.create_errors[channel_id]
        if self.collisions.get(channel_id):
            self.collisions[channel_id] -= 1
            raise ChannelIdNotUniqueError(channel_id)
        return self.resource_id

    async def cancel_subscription(self, channel_id, resource_id):
        self.calls.append(('cancel', channel_id, resource_id))

    async def list_events(self, calendar_id, page_token=None, sync_token=None):
        self.calls.append(('list', calendar_id, page_token, sync_token))
        index = int(page_token) if page_token else 0
        if index in self.list_failures:
            raise self.list_failures[index]
        pages = self.change_pages if sync_token else self.full_pages
        return pages[index]

    async def patch_event(self, calendar_id, event_id, body):
        self.calls.append(('patch', calendar_id, event_id, body))
        if event_id in self.patch_failures:
            raise self.patch_failures[event_id]

    async def list_calendars(self):
        return list(self.calendars)


class FakeAccountProvider(BaseAccountProvider):
    """Account provider handing out a single fake calendar service."""

    def __init__(self, settings, service: FakeCalendarService):
        super().__init__(settings)
        self.service = service
        self.users: Dict[str, UserInfo] = {'access-1': UserInfo(id='u1', given_name='Ada')}
        self.refreshed: Optional[OAuthToken] = None
        self.refresh_error: Optional[Exception] = None
        self.exchanged: Optional[OAuthToken] = OAuthToken(
            access_token='access-1',
            refresh_token='refresh-1',
            expires_at=datetime.now(pytz.UTC) + timedelta(hours=1),
        )
        self.access_tokens: List[str] = []

    def authorization_url(self, redirect_uri, state):
        return f"https://accounts.example.com/auth?redirect_uri={redirect_uri}&state={state}"

    async def exchange_code(self, code, redirect_uri):
        if code != 'good-code':
            raise AuthenticationError("invalid_grant")
        return self.exchanged

    async def get_user_info(self, access_token):
        if access_token not in self.users:
            raise AuthenticationError("Access token rejected")
        return self.users[access_token]

    async def refresh_token(self, credential):
        if self.refresh_error:
            raise self.refresh_error
        if self.refreshed:
            return self.refreshed
        return OAuthToken(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token or None,
            expires_at=credential.expires_at,
        )

    def calendar_service(self, access_token):
        self.access_tokens.append(access_token)
        return self.service


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def calendar_service(settings):
    return FakeCalendarService(settings)


@pytest.fixture
def provider(settings, calendar_service):
    return FakeAccountProvider(settings, calendar_service)


@pytest.fixture
def credential(db_manager):
    cred = Credential(
        principal_id='u1',
        access_token='access-1',
        refresh_token='refresh-1',
        expires_at=datetime(2030, 1, 1, tzinfo=pytz.UTC),
    )
    db_manager.upsert_credential(cred)
    return cred
