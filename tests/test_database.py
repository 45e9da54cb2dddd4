"""Tests for the credential store and channel registry."""

from datetime import datetime

import pytest
import pytz

from calpush.database import CredentialDB, WatchChannelDB
from calpush.exceptions import NotFoundError
from calpush.models import Credential, WatchChannel


def make_channel(**overrides):
    values = dict(
        channel_id='u1-cal-1',
        principal_id='u1',
        verification_token='token-1',
        resource_id='res-cal',
        calendar_id='cal-1',
        sync_token='sync-1',
    )
    values.update(overrides)
    return WatchChannel(**values)


class TestCredentialStore:

    def test_upsert_twice_keeps_single_row(self, db_manager, credential):
        db_manager.upsert_credential(credential)

        with db_manager.get_session() as session:
            assert session.query(CredentialDB).count() == 1
        assert db_manager.get_credential('u1') == credential

    def test_upsert_without_refresh_token_keeps_stored_one(self, db_manager, credential):
        db_manager.upsert_credential(Credential(
            principal_id='u1',
            access_token='access-2',
            refresh_token='',
            expires_at=datetime(2031, 1, 1, tzinfo=pytz.UTC),
        ))

        stored = db_manager.get_credential('u1')
        assert stored.access_token == 'access-2'
        assert stored.refresh_token == 'refresh-1'

    def test_update_without_refresh_token_keeps_stored_one(self, db_manager, credential):
        db_manager.update_credential(credential.model_copy(update={
            'access_token': 'access-2',
            'refresh_token': '',
        }))

        stored = db_manager.get_credential('u1')
        assert stored.access_token == 'access-2'
        assert stored.refresh_token == 'refresh-1'

    def test_update_replaces_refresh_token(self, db_manager, credential):
        db_manager.update_credential(credential.model_copy(update={'refresh_token': 'refresh-2'}))
        assert db_manager.get_credential('u1').refresh_token == 'refresh-2'

    def test_expiry_round_trips_as_utc(self, db_manager, credential):
        assert db_manager.get_credential('u1').expires_at == credential.expires_at

    def test_unknown_principal(self, db_manager):
        with pytest.raises(NotFoundError):
            db_manager.get_credential('nobody')

    def test_update_unknown_principal(self, db_manager, credential):
        with pytest.raises(NotFoundError):
            db_manager.update_credential(credential.model_copy(update={'principal_id': 'nobody'}))


class TestChannelRegistry:

    def test_upsert_twice_keeps_single_row(self, db_manager):
        channel = make_channel()
        db_manager.upsert_channel(channel)
        db_manager.upsert_channel(channel)

        with db_manager.get_session() as session:
            assert session.query(WatchChannelDB).count() == 1
        assert db_manager.get_channel('u1-cal-1') == channel

    def test_reregistration_overwrites_token_and_cursor(self, db_manager):
        db_manager.upsert_channel(make_channel())
        db_manager.upsert_channel(make_channel(
            verification_token='token-2',
            sync_token='sync-2',
            principal_id='someone-else',
            calendar_id='other-cal',
        ))

        stored = db_manager.get_channel('u1-cal-1')
        assert stored.verification_token == 'token-2'
        assert stored.sync_token == 'sync-2'
        # identity is preserved
        assert stored.principal_id == 'u1'
        assert stored.calendar_id == 'cal-1'

    def test_find_channel_exact_triple(self, db_manager):
        db_manager.upsert_channel(make_channel())
        found = db_manager.find_channel('u1-cal-1', 'token-1', 'res-cal')
        assert found.calendar_id == 'cal-1'

    @pytest.mark.parametrize('channel_id,token,resource_id', [
        ('u1-cal-1', 'token-1', 'res-other'),
        ('u1-cal-1', 'forged', 'res-cal'),
        ('other', 'token-1', 'res-cal'),
        ('u1-cal-1', '', ''),
    ])
    def test_find_channel_rejects_partial_match(self, db_manager, channel_id, token, resource_id):
        db_manager.upsert_channel(make_channel())
        with pytest.raises(NotFoundError):
            db_manager.find_channel(channel_id, token, resource_id)

    def test_update_sync_token(self, db_manager):
        db_manager.upsert_channel(make_channel())
        db_manager.update_channel_sync_token('u1-cal-1', 'token-1', 'sync-2')

        assert db_manager.get_channel('u1-cal-1').sync_token == 'sync-2'
        with db_manager.get_session() as session:
            assert session.get(WatchChannelDB, 'u1-cal-1').last_synced_at is not None

    def test_update_sync_token_with_stale_verification_token(self, db_manager):
        db_manager.upsert_channel(make_channel(verification_token='token-2', sync_token='sync-baseline'))

        with pytest.raises(NotFoundError):
            db_manager.update_channel_sync_token('u1-cal-1', 'token-1', 'sync-stale')

        assert db_manager.get_channel('u1-cal-1').sync_token == 'sync-baseline'

    def test_update_sync_token_unknown_channel(self, db_manager):
        with pytest.raises(NotFoundError):
            db_manager.update_channel_sync_token('missing', 'token-1', 'sync-2')

    def test_list_channels(self, db_manager):
        db_manager.upsert_channel(make_channel())
        db_manager.upsert_channel(make_channel(channel_id='u2-cal-1', principal_id='u2'))

        assert [c.channel_id for c in db_manager.list_channels()] == ['u1-cal-1', 'u2-cal-1']
        assert [c.channel_id for c in db_manager.list_channels('u2')] == ['u2-cal-1']
