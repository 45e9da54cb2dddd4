"""Persisting rotated OAuth credentials."""

import structlog

from .database import DatabaseManager
from .models import Credential, OAuthToken

logger = structlog.get_logger(__name__)


class CredentialRotator:
    """Writes a refreshed token back to the credential store when it actually rotated."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def has_rotated(stored: Credential, refreshed: OAuthToken) -> bool:
        if stored.access_token != refreshed.access_token:
            return True
        return bool(refreshed.refresh_token) and refreshed.refresh_token != stored.refresh_token

    def reconcile(self, stored: Credential, refreshed: OAuthToken) -> bool:
        """Persist ``refreshed`` if it differs from ``stored``.

        Returns:
            True if the credential was written
        """
        if not self.has_rotated(stored, refreshed):
            return False

        # An omitted refresh token keeps the stored one
        self.db_manager.update_credential(Credential(
            principal_id=stored.principal_id,
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token or stored.refresh_token,
            expires_at=refreshed.expires_at,
        ))
        logger.info("credential rotated", principal_id=stored.principal_id)
        return True
