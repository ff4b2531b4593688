"""
Interactive authorization of a new Gmail account.

The Authorization Code flow with offline access, via google-auth-oauthlib.
The CLI prints the consent URL, the operator pastes back the code from the
redirect, and the resulting tokens are stored on a new account row.
"""
import logging
from datetime import timezone
from typing import Dict, List, Optional, Any

from google_auth_oauthlib.flow import Flow

from triage_agent.auth.credentials import GMAIL_SCOPES

logger = logging.getLogger(__name__)

AUTHORIZATION_BASE_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
DEFAULT_REDIRECT_URI = 'http://localhost:8080/callback'


class GoogleAuthorizer:
    """Authorization Code flow for Gmail (offline access, forced consent)."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_uri: str = 'https://oauth2.googleapis.com/token',
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        scopes: Optional[List[str]] = None
    ):
        self.redirect_uri = redirect_uri
        client_config = {
            'web': {
                'client_id': client_id,
                'client_secret': client_secret,
                'auth_uri': AUTHORIZATION_BASE_URL,
                'token_uri': token_uri,
                'redirect_uris': [redirect_uri],
            }
        }
        self.flow = Flow.from_client_config(
            client_config,
            scopes=scopes or GMAIL_SCOPES,
            redirect_uri=redirect_uri,
        )

    def authorization_url(self) -> str:
        # prompt=consent makes Google issue a refresh token every time
        url, _state = self.flow.authorization_url(access_type='offline', prompt='consent')
        return url

    def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Returns:
            Dict with access_token, refresh_token and expires_at (aware UTC)
        """
        self.flow.fetch_token(code=code)
        credentials = self.flow.credentials
        expiry = credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        logger.info("Exchanged authorization code for tokens")
        return {
            'access_token': credentials.token,
            'refresh_token': credentials.refresh_token or '',
            'expires_at': expiry,
        }
