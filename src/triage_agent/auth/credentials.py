"""
Mail-provider credential refresh.

Accounts carry an access token, a refresh token and an expiry. Before building
a Gmail client the access token is refreshed when it is missing or about to
expire (or when a call already failed with 401 and the caller forces it), and
the new token is written back to the account row. Concurrent refreshes of the
same account are last-write-wins; Google accepts either token while both are
valid.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from triage_agent.error_handling import AuthExpired, TransientProviderError
from triage_agent.models import Account, utc_now

logger = logging.getLogger(__name__)

GMAIL_SCOPES = ['https://www.googleapis.com/auth/gmail.modify']


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # google-auth compares expiry against a naive utcnow()
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _to_aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CredentialManager:
    """
    Builds google-auth credentials for accounts and keeps them fresh.

    Args:
        store: TriageStore used to persist refreshed tokens
        client_id: OAuth client id
        client_secret: OAuth client secret
        token_uri: Token endpoint
    """

    def __init__(
        self,
        store,
        client_id: str,
        client_secret: str,
        token_uri: str = 'https://oauth2.googleapis.com/token'
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri

    def build_credentials(self, account: Account) -> Credentials:
        return Credentials(
            token=account.access_token or None,
            refresh_token=account.refresh_token or None,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=GMAIL_SCOPES,
            expiry=_to_naive_utc(account.token_expiry),
        )

    def refresh(self, account: Account, force: bool = False) -> Account:
        """
        Refresh the account's access token when expired (or always, with force).

        Returns:
            The account with current credential fields

        Raises:
            AuthExpired: No refresh token, or Google rejected it
            TransientProviderError: The token endpoint could not be reached
        """
        if not force and not account.token_expired(utc_now()):
            return account

        if not account.refresh_token:
            raise AuthExpired(f"Account {account.id} has no refresh token")

        credentials = self.build_credentials(account)
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            logger.error(f"Token refresh rejected for account {account.id}: {e}")
            raise AuthExpired(f"Refresh token is invalid or revoked: {e}") from e
        except TransportError as e:
            raise TransientProviderError(f"Token endpoint unreachable: {e}") from e

        expiry = _to_aware_utc(credentials.expiry)
        # Google only sometimes rotates the refresh token; keep the old one otherwise
        new_refresh = credentials.refresh_token if credentials.refresh_token != account.refresh_token else None
        self.store.update_credentials(account.id, credentials.token, expiry, refresh_token=new_refresh)
        logger.info(f"Refreshed access token for account {account.id}")

        account.access_token = credentials.token
        account.token_expiry = expiry
        if new_refresh:
            account.refresh_token = new_refresh
        return account
