"""
Gmail implementation of the MailProvider interface.

Built on google-api-python-client. Every call goes through _execute(), which
maps HttpError statuses onto the error taxonomy (401 -> AuthExpired,
404/410 -> NotFound, 429/5xx -> TransientProviderError).

Change detection uses users.history.list from the stored historyId, restricted
to messageAdded events on the inbox label and following nextPageToken until the
last page. The cursor returned is the response's historyId, which is the
mailbox's newest position at the time of the call. A cursor Gmail no longer
accepts (404) is replaced by the current historyId, so polling recovers on the
next call instead of failing forever.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from triage_agent.auth.credentials import CredentialManager
from triage_agent.config_schema import GmailConfig
from triage_agent.content_parser import parse_gmail_message
from triage_agent.error_handling import NotFound, ProviderError, TransientProviderError, classify_http_status
from triage_agent.models import Account, ParsedMessage

logger = logging.getLogger(__name__)

USER_ID = 'me'


class GmailClient:
    """
    MailProvider for one Gmail account.

    Args:
        service: A Gmail API service resource (googleapiclient.discovery.build)
        config: Gmail settings
        num_retries: Retries googleapiclient itself performs on 429/5xx
    """

    def __init__(self, service, config: Optional[GmailConfig] = None, num_retries: int = 2):
        self.service = service
        self.config = config or GmailConfig()
        self.num_retries = num_retries
        self._label_ids: Optional[Dict[str, str]] = None

    @classmethod
    def from_credentials(cls, credentials, config: Optional[GmailConfig] = None) -> 'GmailClient':
        service = build('gmail', 'v1', credentials=credentials, cache_discovery=False)
        return cls(service, config)

    def _execute(self, request, operation: str) -> Dict[str, Any]:
        try:
            return request.execute(num_retries=self.num_retries)
        except HttpError as e:
            status = e.resp.status if e.resp is not None else None
            raise classify_http_status(status, f"Gmail {operation} failed: HTTP {status}: {e}") from e
        except OSError as e:
            raise TransientProviderError(f"Gmail {operation} failed: {e}") from e

    def get_current_history_id(self) -> str:
        profile = self._execute(self.service.users().getProfile(userId=USER_ID), 'getProfile')
        return str(profile['historyId'])

    def list_new_message_ids(self, cursor: Optional[str]) -> Tuple[List[str], Optional[str]]:
        if not cursor:
            current = self.get_current_history_id()
            logger.info(f"No history cursor yet, starting from historyId {current}")
            return [], current

        try:
            return self._list_history(cursor)
        except NotFound as e:
            # historyId expired or invalid: restart from the current position
            current = self.get_current_history_id()
            logger.warning(
                f"History cursor {cursor} no longer valid ({e}), restarting from historyId {current}; "
                f"messages added in between are not detected"
            )
            return [], current

    def _list_history(self, cursor: str) -> Tuple[List[str], str]:
        message_ids: List[str] = []
        new_cursor = cursor
        page_token = None
        while True:
            params = {
                'userId': USER_ID,
                'startHistoryId': cursor,
                'historyTypes': ['messageAdded'],
                'labelId': self.config.inbox_label,
                'maxResults': self.config.history_page_size,
            }
            if page_token:
                params['pageToken'] = page_token
            response = self._execute(self.service.users().history().list(**params), 'history.list')

            for record in response.get('history', []):
                for added in record.get('messagesAdded', []):
                    message_id = (added.get('message') or {}).get('id')
                    if message_id and message_id not in message_ids:
                        message_ids.append(message_id)
            new_cursor = str(response.get('historyId') or new_cursor)

            page_token = response.get('nextPageToken')
            if not page_token:
                break

        logger.debug(f"history.list from {cursor}: {len(message_ids)} new message(s), cursor now {new_cursor}")
        return message_ids, new_cursor

    def get_message(self, message_id: str) -> ParsedMessage:
        message = self._execute(
            self.service.users().messages().get(userId=USER_ID, id=message_id, format='full'),
            'messages.get',
        )
        return parse_gmail_message(message)

    def _load_labels(self) -> Dict[str, str]:
        response = self._execute(self.service.users().labels().list(userId=USER_ID), 'labels.list')
        self._label_ids = {label['name']: label['id'] for label in response.get('labels', [])}
        return self._label_ids

    def ensure_label(self, name: str) -> str:
        labels = self._label_ids if self._label_ids is not None else self._load_labels()
        if name in labels:
            return labels[name]

        body = {
            'name': name,
            'messageListVisibility': 'show',
            'labelListVisibility': 'labelShow',
        }
        try:
            created = self._execute(
                self.service.users().labels().create(userId=USER_ID, body=body), 'labels.create'
            )
        except ProviderError as e:
            # 409: another worker created it between our list and create
            if e.status != 409:
                raise
            refreshed = self._load_labels()
            if name not in refreshed:
                raise
            return refreshed[name]
        labels[name] = created['id']
        logger.info(f"Created Gmail label '{name}' ({created['id']})")
        return created['id']

    def apply_labels(self, message_id: str, label_ids: Sequence[str]) -> None:
        if not label_ids:
            return
        self._execute(
            self.service.users().messages().modify(
                userId=USER_ID, id=message_id, body={'addLabelIds': list(label_ids)}
            ),
            'messages.modify',
        )

    def archive(self, message_id: str) -> None:
        self._execute(
            self.service.users().messages().modify(
                userId=USER_ID, id=message_id, body={'removeLabelIds': [self.config.inbox_label]}
            ),
            'messages.modify',
        )


class GmailProviderFactory:
    """
    ProviderFactory for Gmail accounts: refreshes credentials as needed and
    builds a GmailClient around them.
    """

    def __init__(self, credentials: CredentialManager, config: Optional[GmailConfig] = None):
        self.credentials = credentials
        self.config = config or GmailConfig()

    def refresh_credentials(self, account: Account, force: bool = False) -> Account:
        return self.credentials.refresh(account, force=force)

    def for_account(self, account: Account) -> GmailClient:
        account = self.refresh_credentials(account)
        return GmailClient.from_credentials(self.credentials.build_credentials(account), self.config)
