"""
Tests for change detection: polling, enqueueing and cursor commit ordering.
"""
import json
from unittest.mock import MagicMock, Mock, patch

import pytest
from googleapiclient.errors import HttpError

from triage_agent.change_detector import ChangeDetector
from triage_agent.config_schema import PipelineConfig
from triage_agent.error_handling import NotFound, TransientProviderError
from triage_agent.gmail_client import GmailClient
from conftest import FakeMailProvider, utc


NOW = utc(2025, 1, 9, 12, 0)


@pytest.fixture
def detector(store, queue):
    return ChangeDetector(store, queue, PipelineConfig())


def test_poll_returns_new_ids_and_cursor(detector, account):
    provider = FakeMailProvider()
    provider.history = ['a', 'b']
    provider.history_cursor = '1000'

    result = detector.poll(account, provider)

    assert result.ok
    assert result.message_ids == ['a', 'b']
    assert result.cursor == '1000'
    assert ('list_new_message_ids', '900') in provider.calls


def test_sync_enqueues_and_commits_cursor(detector, store, queue, account):
    provider = FakeMailProvider()
    provider.history = ['a', 'b']

    result = detector.sync_account(account, provider, now=NOW)

    assert result.enqueued == 2
    assert queue.stats()['pending'] == 2
    stored = store.get_account(7)
    assert stored.last_history_id == '1000'
    assert stored.last_checked_at == NOW
    assert account.last_history_id == '1000'


def test_first_poll_starts_from_now(detector, store, queue):
    """An account without a cursor enqueues nothing and stores the current position."""
    account = store.create_account('fresh@example.com')
    provider = FakeMailProvider()
    provider.history = ['old-mail']
    provider.history_cursor = '5000'

    result = detector.sync_account(account, provider, now=NOW)

    assert result.message_ids == []
    assert queue.stats()['pending'] == 0
    assert store.get_account(account.id).last_history_id == '5000'


def test_no_changes_still_updates_last_checked(detector, store, account):
    provider = FakeMailProvider()
    provider.history_cursor = '900'

    result = detector.sync_account(account, provider, now=NOW)

    assert result.enqueued == 0
    assert store.get_account(7).last_checked_at == NOW


@pytest.mark.parametrize('error', [
    TransientProviderError('503', status=503),
    NotFound('history id too old'),
    RuntimeError('unexpected'),
])
def test_provider_error_leaves_cursor_unchanged(detector, store, queue, account, error):
    """Test that a failed poll reports no messages and does not move the cursor."""
    provider = FakeMailProvider()
    provider.errors['list_new_message_ids'] = error

    result = detector.sync_account(account, provider, now=NOW)

    assert not result.ok
    assert result.message_ids == []
    assert result.cursor == '900'
    stored = store.get_account(7)
    assert stored.last_history_id == '900'
    assert stored.last_checked_at is None
    assert queue.stats()['pending'] == 0


def test_after_enqueue_keeps_cursor_when_enqueue_fails(store, queue, account):
    """With after_enqueue a failed enqueue leaves the cursor for the next poll to re-detect."""
    detector = ChangeDetector(store, queue, PipelineConfig(cursor_commit='after_enqueue'))
    provider = FakeMailProvider()
    provider.history = ['a']

    with patch.object(queue, 'enqueue_many', side_effect=RuntimeError('disk full')):
        with pytest.raises(RuntimeError):
            detector.sync_account(account, provider, now=NOW)

    assert store.get_account(7).last_history_id == '900'


def test_before_enqueue_commits_cursor_first(store, queue, account):
    """With before_enqueue the cursor is stored even if the enqueue then fails."""
    detector = ChangeDetector(store, queue, PipelineConfig(cursor_commit='before_enqueue'))
    provider = FakeMailProvider()
    provider.history = ['a']

    with patch.object(queue, 'enqueue_many', side_effect=RuntimeError('disk full')):
        with pytest.raises(RuntimeError):
            detector.sync_account(account, provider, now=NOW)

    assert store.get_account(7).last_history_id == '1000'


def test_redetected_batch_is_enqueued_again(detector, queue, account):
    """Re-detection produces duplicate items; the processor absorbs them."""
    provider = FakeMailProvider()
    provider.history = ['a']
    detector.sync_account(account, provider, now=NOW)
    account.last_history_id = '900'

    detector.sync_account(account, provider, now=NOW)

    assert queue.stats()['pending'] == 2


def test_expired_gmail_cursor_recovers_on_next_poll(detector, store, queue, account):
    """A historyId Gmail rejects with 404 is replaced, and later polls use the new cursor."""
    service = MagicMock()
    expired = HttpError(Mock(status=404, reason='Not Found'),
                        json.dumps({'error': {'code': 404, 'message': 'Not Found'}}).encode('utf-8'))
    service.users().history().list.return_value.execute.side_effect = [
        expired,
        {'history': [{'messagesAdded': [{'message': {'id': 'fresh'}}]}], 'historyId': '5100'},
    ]
    service.users().getProfile.return_value.execute.return_value = {'historyId': '5000'}
    client = GmailClient(service)

    first = detector.sync_account(account, client, now=NOW)

    assert first.ok
    assert first.message_ids == []
    assert store.get_account(7).last_history_id == '5000'

    second = detector.sync_account(store.get_account(7), client, now=NOW)

    assert second.message_ids == ['fresh']
    assert store.get_account(7).last_history_id == '5100'
    assert service.users().history().list.call_args.kwargs['startHistoryId'] == '5000'
    assert queue.stats()['pending'] == 1
