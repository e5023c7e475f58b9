from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from intuitlib.exceptions import AuthClientError

from qbsync.core.exceptions import AuthenticationError
from qbsync.core.timeutils import utcnow
from qbsync.models.quickbooks_connection import QuickBooksConnection

from tests.conftest import REALM_ID


class FakeAuthClient:
    """Mimics intuitlib's AuthClient token exchange surface"""

    def __init__(self, fail=False):
        self.fail = fail
        self.access_token = None
        self.refresh_token = None
        self.expires_in = None
        self.x_refresh_token_expires_in = None
        self.refreshed_with = None

    def _error(self):
        return AuthClientError(MagicMock(status_code=400, content=b'{"error":"invalid_grant"}', headers={}))

    def _issue(self, suffix):
        self.access_token = f"access-{suffix}"
        self.refresh_token = f"refresh-{suffix}"
        self.expires_in = 3600
        self.x_refresh_token_expires_in = 8726400

    def refresh(self, refresh_token=None):
        if self.fail:
            raise self._error()
        self.refreshed_with = refresh_token
        self._issue("2")

    def get_bearer_token(self, auth_code, realm_id=None):
        if self.fail:
            raise self._error()
        self._issue("new")

    def revoke(self, token=None):
        if self.fail:
            raise self._error()
        return True


def _active_rows(db):
    return db.query(QuickBooksConnection).filter(QuickBooksConnection.is_active.is_(True)).all()


def test_refresh_writes_new_active_row_and_deactivates_old(db, oauth_service, connection):
    auth_client = FakeAuthClient()
    with patch.object(oauth_service, "_auth_client", return_value=auth_client):
        refreshed = oauth_service.refresh_tokens(db, connection)

    assert auth_client.refreshed_with == "refresh-1"
    assert refreshed.id != connection.id
    assert refreshed.access_token == "access-2"
    assert refreshed.company_name == "Maple Residences"
    assert refreshed.refresh_token_expires_at is not None

    active = _active_rows(db)
    assert [row.id for row in active] == [refreshed.id]
    db.refresh(connection)
    assert connection.is_active is False


def test_failed_refresh_keeps_existing_credential(db, oauth_service, connection):
    with patch.object(oauth_service, "_auth_client", return_value=FakeAuthClient(fail=True)):
        with pytest.raises(AuthenticationError):
            oauth_service.refresh_tokens(db, connection)

    assert [row.id for row in _active_rows(db)] == [connection.id]
    assert db.query(QuickBooksConnection).count() == 1


def test_get_token_refreshes_expired_credential(db, oauth_service, connection):
    connection.access_token_expires_at = utcnow() + timedelta(seconds=60)
    db.commit()

    with patch.object(oauth_service, "_auth_client", return_value=FakeAuthClient()):
        token = oauth_service.get_token(db, REALM_ID)

    assert token.access_token == "access-2"


def test_get_token_returns_valid_credential_unchanged(db, oauth_service, connection):
    with patch.object(oauth_service, "_auth_client") as auth_client:
        token = oauth_service.get_token(db, REALM_ID)

    assert token.id == connection.id
    auth_client.assert_not_called()


def test_get_token_without_credential(db, oauth_service):
    assert oauth_service.get_token(db, "unknown-realm") is None


def test_exchange_code_stores_credential(db, oauth_service, connection):
    with patch.object(oauth_service, "_auth_client", return_value=FakeAuthClient()):
        stored = oauth_service.exchange_code_for_tokens(db, "auth-code", REALM_ID)

    assert stored.access_token == "access-new"
    assert [row.id for row in _active_rows(db)] == [stored.id]


def test_exchange_code_failure(db, oauth_service):
    with patch.object(oauth_service, "_auth_client", return_value=FakeAuthClient(fail=True)):
        with pytest.raises(AuthenticationError):
            oauth_service.exchange_code_for_tokens(db, "bad-code", REALM_ID)

    assert db.query(QuickBooksConnection).count() == 0


def test_revoke_deactivates_connection(db, oauth_service, connection):
    with patch.object(oauth_service, "_auth_client", return_value=FakeAuthClient()):
        assert oauth_service.revoke_tokens(db, connection) is True

    assert _active_rows(db) == []
