"""Gmail OAuth: credential refresh for stored accounts and first-time authorization."""
from triage_agent.auth.credentials import GMAIL_SCOPES, CredentialManager

__all__ = ['GMAIL_SCOPES', 'CredentialManager']
