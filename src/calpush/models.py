"""Data models for watch channels, credentials and provider payloads."""

import re
from datetime import datetime
from typing import Any, Dict, Optional, List

from pydantic import BaseModel, Field, validator
import pytz


# Characters Google accepts in a channel ID; anything else becomes CHANNEL_ID_FILLER.
CHANNEL_ID_UNSAFE = re.compile(r'[^A-Za-z0-9\-_+/=]')
CHANNEL_ID_FILLER = '-'


def make_channel_id(principal_id: str, calendar_id: str) -> str:
    """Derive the deterministic watch channel ID for a (user, calendar) pair."""
    return CHANNEL_ID_UNSAFE.sub(CHANNEL_ID_FILLER, f"{principal_id}-{calendar_id}")


def _ensure_utc(v):
    if isinstance(v, datetime):
        if v.tzinfo is None:
            return pytz.UTC.localize(v)
        return v.astimezone(pytz.UTC)
    return v


class Credential(BaseModel):
    """OAuth credential pair of an authenticated Google user."""

    principal_id: str = Field(..., description="Stable Google user ID")
    access_token: str = Field(..., description="Current access token")
    refresh_token: str = Field("", description="Refresh token; empty when Google did not issue one")
    expires_at: datetime = Field(..., description="Access token expiry (UTC)")

    @validator('expires_at', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return _ensure_utc(v)


class OAuthToken(BaseModel):
    """Token as handed out by the OAuth endpoint (code exchange or refresh)."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime

    @validator('expires_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)


class WatchChannel(BaseModel):
    """A push-notification subscription on one calendar of one user."""

    channel_id: str = Field(..., description="Deterministic channel ID")
    principal_id: str = Field(..., description="Owning user")
    verification_token: str = Field(..., description="Secret echoed back in X-Goog-Channel-Token")
    resource_id: str = Field(..., description="Provider handle of the watched resource")
    calendar_id: str = Field(..., description="Watched calendar")
    sync_token: str = Field("", description="Position in the change stream already processed")

    @property
    def needs_full_resync(self) -> bool:
        return not self.sync_token


class UserInfo(BaseModel):
    """Subset of the Google userinfo payload."""

    id: str
    given_name: str = ""


class CalendarInfo(BaseModel):
    """Calendar list entry offered on the picker page."""

    id: str = Field(..., description="Calendar ID")
    name: str = Field(..., description="Calendar name")
    is_primary: bool = Field(False)


class ProviderEvent(BaseModel):
    """Event item as returned by an events listing."""

    id: str
    summary: str = ""
    status: Optional[str] = None
    reminders_use_default: bool = False

    @classmethod
    def from_google(cls, data: Dict[str, Any]) -> 'ProviderEvent':
        reminders = data.get('reminders') or {}
        return cls(
            id=data['id'],
            summary=data.get('summary', ''),
            status=data.get('status'),
            reminders_use_default=bool(reminders.get('useDefault', False)),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status == 'cancelled'


class EventPage(BaseModel):
    """One page of an events listing."""

    items: List[ProviderEvent] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return not self.next_page_token


class SyncResult(BaseModel):
    """Outcome of one incremental sync pass."""

    channel_id: str
    pages_fetched: int = 0
    events_seen: int = 0
    patched_event_ids: List[str] = Field(default_factory=list)
    previous_sync_token: str = ""
    next_sync_token: str = ""
    credential_rotated: bool = False

    @property
    def events_patched(self) -> int:
        return len(self.patched_event_ids)
