"""Incremental sync driven by watch channel notifications."""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List

import structlog

from .config import Settings
from .credentials import CredentialRotator
from .database import DatabaseManager
from .models import ProviderEvent, SyncResult, WatchChannel
from .services.base import (
    BaseAccountProvider,
    BaseCalendarService,
    CalendarServiceError,
    SyncTokenInvalidError,
)

logger = structlog.get_logger(__name__)

# Forces an explicit (empty) reminder override instead of the calendar defaults
SUPPRESS_DEFAULT_REMINDERS = {'reminders': {'useDefault': False}}


class ChannelLocks:
    """One asyncio lock per channel ID, dropped once nobody holds or awaits it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, channel_id: str):
        lock = self._locks.setdefault(channel_id, asyncio.Lock())
        self._users[channel_id] = self._users.get(channel_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[channel_id] -= 1
            if not self._users[channel_id]:
                del self._users[channel_id]
                del self._locks[channel_id]

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._locks


class SyncEngine:
    """Handles webhook notifications for registered watch channels."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        provider: BaseAccountProvider,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Credential store and channel registry
            provider: Account provider used to refresh tokens and reach calendars
        """
        self.settings = settings
        self.db_manager = db_manager
        self.provider = provider
        self.rotator = CredentialRotator(db_manager)
        self.locks = ChannelLocks()

    def is_suppression_candidate(self, event: ProviderEvent) -> bool:
        """Busy events still using the calendar's default reminders."""
        return (
            not event.is_cancelled
            and event.summary == self.settings.busy_summary
            and event.reminders_use_default
        )

    async def handle_notification(
        self,
        channel_id: str,
        verification_token: str,
        resource_id: str,
    ) -> SyncResult:
        """Authenticate a notification and run one incremental sync pass.

        The channel's sync token is only advanced when every page was fetched
        and every patch succeeded; any error leaves it untouched so the same
        window is processed again on the next notification.

        Raises:
            NotFoundError: If the channel triple or its user is unknown
            SyncTokenInvalidError: If the stored sync token is missing or expired
            CalendarServiceError: On any other provider failure
            PersistenceError: If the credential or sync token cannot be written
        """
        async with self.locks.hold(channel_id):
            channel = self.db_manager.find_channel(channel_id, verification_token, resource_id)
            return await self._sync_channel(channel)

    async def _sync_channel(self, channel: WatchChannel) -> SyncResult:
        log = logger.bind(channel_id=channel.channel_id, principal_id=channel.principal_id)
        result = SyncResult(channel_id=channel.channel_id, previous_sync_token=channel.sync_token)

        credential = self.db_manager.get_credential(channel.principal_id)
        token = await self.provider.refresh_token(credential)
        result.credential_rotated = self.rotator.reconcile(credential, token)

        service = self.provider.calendar_service(token.access_token)
        candidates = await self._pull_changes(service, channel, result)

        for event in candidates:
            await service.patch_event(channel.calendar_id, event.id, SUPPRESS_DEFAULT_REMINDERS)
            result.patched_event_ids.append(event.id)
            log.info("default reminders suppressed", event_id=event.id)

        self.db_manager.update_channel_sync_token(
            channel.channel_id, channel.verification_token, result.next_sync_token
        )
        log.debug(
            "sync pass completed",
            pages=result.pages_fetched,
            events=result.events_seen,
            patched=result.events_patched,
        )
        return result

    async def _pull_changes(
        self,
        service: BaseCalendarService,
        channel: WatchChannel,
        result: SyncResult,
    ) -> List[ProviderEvent]:
        """Fetch every page of changes since the stored sync token."""
        if channel.needs_full_resync:
            raise SyncTokenInvalidError(f"Channel {channel.channel_id} has no sync token")

        candidates: List[ProviderEvent] = []
        page_token = None
        while True:
            page = await service.list_events(
                channel.calendar_id,
                page_token=page_token,
                sync_token=channel.sync_token,
            )
            result.pages_fetched += 1
            result.events_seen += len(page.items)
            candidates.extend(e for e in page.items if self.is_suppression_candidate(e))
            if page.is_last:
                break
            page_token = page.next_page_token

        if not page.next_sync_token:
            raise CalendarServiceError(
                f"Change listing of calendar {channel.calendar_id} returned no sync token"
            )
        result.next_sync_token = page.next_sync_token
        return candidates
