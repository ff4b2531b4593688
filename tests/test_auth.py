"""
Tests for Gmail credential refresh and the authorization flow.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError, TransportError

from triage_agent.auth.credentials import GMAIL_SCOPES, CredentialManager
from triage_agent.auth.oauth import GoogleAuthorizer
from triage_agent.error_handling import AuthExpired, TransientProviderError


@pytest.fixture
def manager(store):
    return CredentialManager(store, client_id='client-id', client_secret='client-secret')


@pytest.fixture
def expired_account(store):
    return store.create_account(
        'expired@example.com',
        access_token='old-access',
        refresh_token='refresh-token',
        token_expiry=datetime.now(timezone.utc) - timedelta(minutes=5),
        account_id=11,
    )


def _fake_refresh(token='new-access', refresh_token='refresh-token', expiry=None):
    """Side effect for Credentials.refresh that updates the credentials like google-auth does."""
    expiry = expiry or (datetime.now(timezone.utc) + timedelta(hours=1)).replace(tzinfo=None, microsecond=0)

    def refresh(self, request):
        self.token = token
        self.expiry = expiry
        self._refresh_token = refresh_token
    return refresh


def test_build_credentials(manager, account):
    credentials = manager.build_credentials(account)
    assert credentials.token == 'access-token'
    assert credentials.refresh_token == 'refresh-token'
    assert credentials.client_id == 'client-id'
    assert credentials.scopes == GMAIL_SCOPES
    # google-auth works with naive UTC expiries
    assert credentials.expiry.tzinfo is None


@patch('triage_agent.auth.credentials.Request')
@patch('triage_agent.auth.credentials.Credentials.refresh', autospec=True)
def test_valid_token_not_refreshed(mock_refresh, mock_request, manager, account):
    """Test that a token that is not about to expire is used as-is."""
    assert manager.refresh(account) is account
    mock_refresh.assert_not_called()


@patch('triage_agent.auth.credentials.Request')
@patch('triage_agent.auth.credentials.Credentials.refresh', autospec=True)
def test_expired_token_refreshed_and_persisted(mock_refresh, mock_request, manager, store, expired_account):
    """Test that an expired token is refreshed and written back to the account row."""
    mock_refresh.side_effect = _fake_refresh()

    refreshed = manager.refresh(expired_account)

    assert refreshed.access_token == 'new-access'
    assert refreshed.token_expiry.tzinfo is not None
    stored = store.get_account(11)
    assert stored.access_token == 'new-access'
    assert stored.refresh_token == 'refresh-token'
    assert stored.token_expiry > datetime.now(timezone.utc)


@patch('triage_agent.auth.credentials.Request')
@patch('triage_agent.auth.credentials.Credentials.refresh', autospec=True)
def test_rotated_refresh_token_is_stored(mock_refresh, mock_request, manager, store, expired_account):
    mock_refresh.side_effect = _fake_refresh(refresh_token='rotated-refresh')

    manager.refresh(expired_account)

    assert store.get_account(11).refresh_token == 'rotated-refresh'
    assert expired_account.refresh_token == 'rotated-refresh'


@patch('triage_agent.auth.credentials.Request')
@patch('triage_agent.auth.credentials.Credentials.refresh', autospec=True)
def test_force_refresh_of_valid_token(mock_refresh, mock_request, manager, account):
    """Test that force refreshes even when the token looks valid (after a 401)."""
    mock_refresh.side_effect = _fake_refresh(token='forced')

    manager.refresh(account, force=True)

    assert account.access_token == 'forced'
    mock_refresh.assert_called_once()


@patch('triage_agent.auth.credentials.Request')
@patch('triage_agent.auth.credentials.Credentials.refresh', autospec=True)
def test_revoked_refresh_token_raises_auth_expired(mock_refresh, mock_request, manager, store, expired_account):
    mock_refresh.side_effect = RefreshError('invalid_grant')

    with pytest.raises(AuthExpired):
        manager.refresh(expired_account)
    assert store.get_account(11).access_token == 'old-access'


@patch('triage_agent.auth.credentials.Request')
@patch('triage_agent.auth.credentials.Credentials.refresh', autospec=True)
def test_unreachable_token_endpoint_is_transient(mock_refresh, mock_request, manager, expired_account):
    mock_refresh.side_effect = TransportError('connection refused')

    with pytest.raises(TransientProviderError):
        manager.refresh(expired_account)


def test_missing_refresh_token_raises_auth_expired(manager, store):
    account = store.create_account('norefresh@example.com', access_token='', refresh_token='')
    with pytest.raises(AuthExpired, match='no refresh token'):
        manager.refresh(account)


class TestGoogleAuthorizer:

    def test_authorization_url_requests_offline_access(self):
        authorizer = GoogleAuthorizer('client-id', 'client-secret', redirect_uri='http://localhost:9999/cb')
        url = authorizer.authorization_url()
        assert url.startswith('https://accounts.google.com/o/oauth2/v2/auth')
        assert 'access_type=offline' in url
        assert 'prompt=consent' in url
        assert 'client_id=client-id' in url
        assert 'gmail.modify' in url

    def test_exchange_code_returns_tokens(self):
        authorizer = GoogleAuthorizer('client-id', 'client-secret')
        fake_credentials = MagicMock()
        fake_credentials.token = 'access'
        fake_credentials.refresh_token = 'refresh'
        fake_credentials.expiry = datetime(2030, 1, 1, 12, 0)
        authorizer.flow = MagicMock()
        authorizer.flow.credentials = fake_credentials

        tokens = authorizer.exchange_code('the-code')

        authorizer.flow.fetch_token.assert_called_once_with(code='the-code')
        assert tokens == {
            'access_token': 'access',
            'refresh_token': 'refresh',
            'expires_at': datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc),
        }
