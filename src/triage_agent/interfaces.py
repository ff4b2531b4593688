"""
Collaborator interfaces consumed by the pipeline.

The pipeline only talks to the mail provider through MailProvider, and obtains
a provider for an account through a ProviderFactory. GmailClient is the
production implementation; tests use an in-memory fake.
"""
from typing import List, Optional, Protocol, Sequence, Tuple

from triage_agent.models import Account, ParsedMessage


class MailProvider(Protocol):
    """
    Mail provider operations for one account.

    Errors are raised as the error_handling taxonomy: AuthExpired for
    credential failures, NotFound for vanished messages, TransientProviderError
    for rate limits and server errors, ProviderError otherwise.
    """

    def list_new_message_ids(self, cursor: Optional[str]) -> Tuple[List[str], Optional[str]]:
        """
        Message ids added since cursor, and the provider's newest cursor.

        A None cursor returns no ids and the provider's current position, so
        the first poll of an account starts from "now".
        """
        ...

    def get_message(self, message_id: str) -> ParsedMessage:
        ...

    def ensure_label(self, name: str) -> str:
        """Resolve a label name to a provider id, creating the label when absent."""
        ...

    def apply_labels(self, message_id: str, label_ids: Sequence[str]) -> None:
        ...

    def archive(self, message_id: str) -> None:
        ...


class ProviderFactory(Protocol):
    """Builds a MailProvider bound to an account's current credentials."""

    def for_account(self, account: Account) -> MailProvider:
        ...

    def refresh_credentials(self, account: Account, force: bool = False) -> Account:
        """Refresh and persist the account's access token; returns the updated account."""
        ...
