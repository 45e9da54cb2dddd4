"""Database models and operations for credentials and watch channels."""

from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy import create_engine, Column, String, DateTime, Text, Index
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
import pytz

from .config import Settings
from .exceptions import NotFoundError, PersistenceError
from .models import Credential, WatchChannel

Base = declarative_base()

logger = logging.getLogger(__name__)


class CredentialDB(Base):
    """Database model for a user's OAuth credential pair."""

    __tablename__ = 'credentials'

    principal_id = Column(String(255), primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False, default='')
    expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(pytz.UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(pytz.UTC))

    def to_model(self) -> Credential:
        return Credential(
            principal_id=self.principal_id,
            access_token=self.access_token,
            refresh_token=self.refresh_token or '',
            expires_at=self.expires_at,
        )


class WatchChannelDB(Base):
    """Database model for a watch channel subscription."""

    __tablename__ = 'watch_channels'

    channel_id = Column(String(255), primary_key=True)
    # Lookup-only reference to credentials.principal_id, deliberately no FK
    principal_id = Column(String(255), nullable=False, index=True)
    verification_token = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=False)
    calendar_id = Column(String(500), nullable=False)
    sync_token = Column(String(1000), nullable=False, default='')

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(pytz.UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(pytz.UTC))
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Webhook authentication looks channels up by the full triple
        Index('idx_watch_channel_auth', 'channel_id', 'verification_token', 'resource_id'),
    )

    def to_model(self) -> WatchChannel:
        return WatchChannel(
            channel_id=self.channel_id,
            principal_id=self.principal_id,
            verification_token=self.verification_token,
            resource_id=self.resource_id,
            calendar_id=self.calendar_id,
            sync_token=self.sync_token or '',
        )


class DatabaseManager:
    """Credential store and channel registry.

    Every write runs in its own session and touches exactly one row addressed
    by primary key. Write failures are raised as ``PersistenceError``.
    """

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def _commit(self, session: Session, what: str) -> None:
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to write {what}: {e}")
            raise PersistenceError(f"Failed to write {what}: {e}") from e

    # Credential store

    def upsert_credential(self, credential: Credential) -> None:
        """Insert a credential or refresh the stored one.

        An empty refresh token never replaces a stored one.
        """
        now = datetime.now(pytz.UTC)
        with self.get_session() as session:
            row = session.get(CredentialDB, credential.principal_id)
            if row is None:
                session.add(CredentialDB(
                    principal_id=credential.principal_id,
                    access_token=credential.access_token,
                    refresh_token=credential.refresh_token or '',
                    expires_at=credential.expires_at,
                    created_at=now,
                    updated_at=now,
                ))
            else:
                row.access_token = credential.access_token
                if credential.refresh_token:
                    row.refresh_token = credential.refresh_token
                row.expires_at = credential.expires_at
                row.updated_at = now
            self._commit(session, f"credential {credential.principal_id}")

    def get_credential(self, principal_id: str) -> Credential:
        """Get a credential by principal ID.

        Raises:
            NotFoundError: If no credential is stored for the principal
        """
        with self.get_session() as session:
            row = session.get(CredentialDB, principal_id)
            if row is None:
                raise NotFoundError(f"user {principal_id} not found")
            return row.to_model()

    def update_credential(self, credential: Credential) -> None:
        """Store a rotated credential; an empty refresh token keeps the stored one.

        Raises:
            NotFoundError: If the credential no longer exists
        """
        with self.get_session() as session:
            row = session.get(CredentialDB, credential.principal_id)
            if row is None:
                raise NotFoundError(f"user {credential.principal_id} not found")
            row.access_token = credential.access_token
            if credential.refresh_token:
                row.refresh_token = credential.refresh_token
            row.expires_at = credential.expires_at
            row.updated_at = datetime.now(pytz.UTC)
            self._commit(session, f"credential {credential.principal_id}")

    # Channel registry

    def upsert_channel(self, channel: WatchChannel) -> None:
        """Insert a channel or overwrite token, resource and sync token of the stored one.

        The identity of an existing channel (principal and calendar) is kept.
        """
        now = datetime.now(pytz.UTC)
        with self.get_session() as session:
            row = session.get(WatchChannelDB, channel.channel_id)
            if row is None:
                session.add(WatchChannelDB(
                    channel_id=channel.channel_id,
                    principal_id=channel.principal_id,
                    verification_token=channel.verification_token,
                    resource_id=channel.resource_id,
                    calendar_id=channel.calendar_id,
                    sync_token=channel.sync_token,
                    created_at=now,
                    updated_at=now,
                ))
            else:
                row.verification_token = channel.verification_token
                row.resource_id = channel.resource_id
                row.sync_token = channel.sync_token
                row.updated_at = now
            self._commit(session, f"channel {channel.channel_id}")

    def find_channel(self, channel_id: str, verification_token: str, resource_id: str) -> WatchChannel:
        """Find the channel matching all three webhook identifiers.

        Raises:
            NotFoundError: If no channel matches the exact triple
        """
        with self.get_session() as session:
            row = session.query(WatchChannelDB).filter(
                WatchChannelDB.channel_id == channel_id,
                WatchChannelDB.verification_token == verification_token,
                WatchChannelDB.resource_id == resource_id,
            ).first()
            if row is None:
                raise NotFoundError(f"channel {channel_id} not found")
            return row.to_model()

    def get_channel(self, channel_id: str) -> Optional[WatchChannel]:
        """Get a channel by ID, or None."""
        with self.get_session() as session:
            row = session.get(WatchChannelDB, channel_id)
            return row.to_model() if row else None

    def update_channel_sync_token(self, channel_id: str, verification_token: str, sync_token: str) -> None:
        """Advance a channel's sync token.

        The write only applies while the channel still carries
        ``verification_token``; a re-registration in the meantime has already
        stored a fresh baseline that must not be overwritten.

        Raises:
            NotFoundError: If the channel no longer exists or was re-registered
        """
        now = datetime.now(pytz.UTC)
        with self.get_session() as session:
            try:
                updated = session.query(WatchChannelDB).filter(
                    WatchChannelDB.channel_id == channel_id,
                    WatchChannelDB.verification_token == verification_token,
                ).update(
                    {
                        WatchChannelDB.sync_token: sync_token,
                        WatchChannelDB.last_synced_at: now,
                        WatchChannelDB.updated_at: now,
                    },
                    synchronize_session=False,
                )
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to write sync token of channel {channel_id}: {e}")
                raise PersistenceError(f"Failed to write sync token of channel {channel_id}: {e}") from e
            if not updated:
                session.rollback()
                raise NotFoundError(f"channel {channel_id} not found")
            self._commit(session, f"sync token of channel {channel_id}")

    def list_channels(self, principal_id: Optional[str] = None) -> List[WatchChannel]:
        """List registered channels, optionally for one principal."""
        with self.get_session() as session:
            query = session.query(WatchChannelDB)
            if principal_id:
                query = query.filter(WatchChannelDB.principal_id == principal_id)
            return [row.to_model() for row in query.order_by(WatchChannelDB.channel_id).all()]
