"""
Shared fixtures for the triage agent tests.

- Temporary SQLite store and work queue (same database file, like production)
- FakeMailProvider: in-memory mailbox that records every write-back call
- ScriptedLLM: LLMClient whose completions come from a scripted list
- Builders for accounts and processed-message records
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from triage_agent.config_schema import LLMConfig, QueueConfig
from triage_agent.llm_client import LLMClient
from triage_agent.models import Account, ParsedMessage, ProcessedMessage
from triage_agent.storage import TriageStore
from triage_agent.work_queue import SQLiteWorkQueue


# ============================================================================
# Fakes
# ============================================================================

class FakeMailProvider:
    """In-memory MailProvider. Label ids are 'Label_<name>'."""

    def __init__(self, messages: Optional[Dict[str, ParsedMessage]] = None):
        self.messages = dict(messages or {})
        self.history: List[str] = []
        self.history_cursor: Optional[str] = '1000'
        self.labels: Dict[str, str] = {}
        self.calls: List[Tuple] = []
        self.errors: Dict[str, Exception] = {}

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.errors:
            raise self.errors[operation]

    @property
    def write_calls(self) -> List[Tuple]:
        return [c for c in self.calls if c[0] in ('ensure_label', 'apply_labels', 'archive')]

    def list_new_message_ids(self, cursor):
        self.calls.append(('list_new_message_ids', cursor))
        self._maybe_fail('list_new_message_ids')
        if cursor is None:
            return [], self.history_cursor
        return list(self.history), self.history_cursor

    def get_message(self, message_id):
        self.calls.append(('get_message', message_id))
        self._maybe_fail('get_message')
        return self.messages[message_id]

    def ensure_label(self, name):
        self.calls.append(('ensure_label', name))
        self._maybe_fail('ensure_label')
        return self.labels.setdefault(name, f"Label_{name}")

    def apply_labels(self, message_id, label_ids):
        self.calls.append(('apply_labels', message_id, list(label_ids)))
        self._maybe_fail('apply_labels')

    def archive(self, message_id):
        self.calls.append(('archive', message_id))
        self._maybe_fail('archive')


class FakeProviderFactory:
    """ProviderFactory handing out one shared FakeMailProvider."""

    def __init__(self, provider: FakeMailProvider):
        self.provider = provider
        self.refreshed: List[Tuple[int, bool]] = []
        self.refresh_error: Optional[Exception] = None

    def for_account(self, account):
        return self.provider

    def refresh_credentials(self, account, force=False):
        self.refreshed.append((account.id, force))
        if self.refresh_error is not None:
            raise self.refresh_error
        return account


class ScriptedLLM(LLMClient):
    """LLMClient that returns scripted completions instead of calling the API."""

    def __init__(self, responses: Sequence = ()):
        super().__init__(config=LLMConfig(), api_key='test-key')
        self.responses = list(responses)
        self.calls: List[Dict] = []

    def queue(self, *responses) -> 'ScriptedLLM':
        self.responses.extend(responses)
        return self

    def complete(self, system_prompt, user_prompt, response_schema=None, schema_name='response', max_tokens=None):
        self.calls.append({
            'system': system_prompt,
            'user': user_prompt,
            'schema_name': schema_name if response_schema is not None else None,
            'max_tokens': max_tokens,
        })
        if not self.responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if not isinstance(response, str):
            response = json.dumps(response)
        return response


def analysis_response(slug='invoice_due', keywords=('invoice', 'billing', 'payment'), summary='Invoice due soon'):
    return {'slug': slug, 'keywords': list(keywords), 'summary': summary}


def actions_response(labels=('Finance',), bypass_inbox=False, reasoning='Billing email'):
    return {'labels': list(labels), 'bypass_inbox': bypass_inbox, 'reasoning': reasoning}


def make_record(
    account_id: int = 7,
    message_id: str = 'm1',
    processed_at: Optional[datetime] = None,
    sender: str = 'billing@acme.com',
    subject: str = 'Your invoice is due',
    slug: str = 'invoice_due',
    labels: Sequence[str] = ('Finance',),
    bypassed_inbox: bool = False,
    human_feedback: str = ''
) -> ProcessedMessage:
    return ProcessedMessage(
        account_id=account_id,
        message_id=message_id,
        sender=sender,
        subject=subject,
        slug=slug,
        keywords=['invoice', 'billing', 'payment'],
        summary='Invoice due soon',
        labels_applied=list(labels),
        bypassed_inbox=bypassed_inbox,
        reasoning='Billing email',
        processed_at=processed_at or datetime(2025, 1, 9, 10, 0, tzinfo=timezone.utc),
        human_feedback=human_feedback,
    )


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / 'data' / 'triage.db')


@pytest.fixture
def store(db_path):
    store = TriageStore(db_path)
    yield store
    store.close()


@pytest.fixture
def queue(db_path):
    queue = SQLiteWorkQueue(db_path, QueueConfig(retry_base_delay_seconds=0, max_attempts=3))
    yield queue
    queue.close()


@pytest.fixture
def account(store) -> Account:
    """Active account 7 with a valid token and a history cursor."""
    return store.create_account(
        'user@example.com',
        access_token='access-token',
        refresh_token='refresh-token',
        token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        last_history_id='900',
        account_id=7,
    )


@pytest.fixture
def inbox_message() -> ParsedMessage:
    return ParsedMessage(
        id='m1',
        sender='billing@acme.com',
        subject='Your invoice is due',
        body='Invoice #42 for $100 is due on Friday.',
        label_ids=['INBOX', 'UNREAD'],
    )


@pytest.fixture
def provider(inbox_message) -> FakeMailProvider:
    return FakeMailProvider({'m1': inbox_message})


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()
