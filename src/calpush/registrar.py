"""Watch channel registration with channel ID collision recovery."""

from enum import Enum
from typing import Optional
from uuid import uuid4

import structlog

from .config import Settings
from .database import DatabaseManager
from .models import WatchChannel, make_channel_id
from .services.base import (
    BaseCalendarService,
    CalendarServiceError,
    ChannelIdNotUniqueError,
    RegistrationError,
)

logger = structlog.get_logger(__name__)


class RegistrationState(str, Enum):
    """States of the channel creation loop."""

    CREATING = "creating"
    COLLISION_DETECTED = "collision_detected"
    FREEING = "freeing"
    CREATED = "created"


class ChannelRegistrar:
    """Creates (or re-creates) the watch channel of a user's calendar.

    Channel IDs are derived from the user and calendar, so a channel left over
    from an earlier registration blocks the ID. Google has no way to look a
    channel up by ID and only reveals a calendar's resource ID when a channel is
    created, so a colliding ID is freed by:

    1. creating a throwaway channel on the same calendar to learn the resource ID,
    2. stopping the throwaway channel,
    3. stopping the stale channel with that resource ID,
    4. creating the channel again.

    Creation is attempted at most ``Settings.max_registration_attempts`` times.
    The throwaway channel points at the live webhook URL while it exists; a
    notification delivered in that window matches no stored channel and is
    rejected as not found.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager
        self.max_attempts = settings.max_registration_attempts

    async def register(
        self,
        principal_id: str,
        calendar_id: str,
        service: BaseCalendarService,
        callback_url: str,
    ) -> WatchChannel:
        """Register a watch channel and record it with a baseline sync token.

        Args:
            principal_id: Google user ID
            calendar_id: Calendar to watch
            service: Calendar service acting for the user
            callback_url: Webhook URL notifications are delivered to

        Returns:
            The stored channel

        Raises:
            RegistrationError: If the channel ID stays taken after all attempts
            CalendarServiceError: On any other provider failure
            PersistenceError: If the channel cannot be stored
        """
        channel_id = make_channel_id(principal_id, calendar_id)
        verification_token = str(uuid4())
        log = logger.bind(channel_id=channel_id, principal_id=principal_id, calendar_id=calendar_id)

        resource_id = await self._create_channel(
            service, calendar_id, channel_id, callback_url, verification_token, log
        )
        sync_token = await self._baseline_sync_token(service, calendar_id, log)

        channel = WatchChannel(
            channel_id=channel_id,
            principal_id=principal_id,
            verification_token=verification_token,
            resource_id=resource_id,
            calendar_id=calendar_id,
            sync_token=sync_token,
        )
        self.db_manager.upsert_channel(channel)
        log.info("channel registered", resource_id=resource_id)
        return channel

    async def _create_channel(
        self,
        service: BaseCalendarService,
        calendar_id: str,
        channel_id: str,
        callback_url: str,
        verification_token: str,
        log,
    ) -> str:
        state = RegistrationState.CREATING
        attempts = 0
        resource_id: Optional[str] = None
        stale_resource_id: Optional[str] = None

        while state is not RegistrationState.CREATED:
            if state is RegistrationState.CREATING:
                attempts += 1
                try:
                    resource_id = await service.create_subscription(
                        calendar_id, channel_id, callback_url, verification_token
                    )
                except ChannelIdNotUniqueError:
                    log.warning("channel id collision", attempt=attempts)
                    if attempts >= self.max_attempts:
                        raise RegistrationError(
                            f"Channel ID {channel_id} still in use after {attempts} attempts"
                        )
                    state = RegistrationState.COLLISION_DETECTED
                else:
                    state = RegistrationState.CREATED

            elif state is RegistrationState.COLLISION_DETECTED:
                stale_resource_id = await self._capture_resource_id(service, calendar_id, callback_url)
                state = RegistrationState.FREEING

            elif state is RegistrationState.FREEING:
                await service.cancel_subscription(channel_id, stale_resource_id)
                log.info("stale channel stopped", resource_id=stale_resource_id)
                state = RegistrationState.CREATING

        return resource_id

    async def _capture_resource_id(
        self,
        service: BaseCalendarService,
        calendar_id: str,
        callback_url: str,
    ) -> str:
        """Create and immediately stop a throwaway channel to learn the calendar's resource ID."""
        throwaway_id = str(uuid4())
        resource_id = await service.create_subscription(calendar_id, throwaway_id, callback_url)
        await service.cancel_subscription(throwaway_id, resource_id)
        return resource_id

    async def _baseline_sync_token(self, service: BaseCalendarService, calendar_id: str, log) -> str:
        """Walk every page of the calendar's events and return the final sync token."""
        page_token = None
        pages = 0
        while True:
            page = await service.list_events(calendar_id, page_token=page_token)
            pages += 1
            if page.is_last:
                break
            page_token = page.next_page_token

        if not page.next_sync_token:
            raise CalendarServiceError(f"Listing of calendar {calendar_id} returned no sync token")
        log.debug("baseline sync token acquired", pages=pages)
        return page.next_sync_token
