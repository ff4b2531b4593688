"""
Tests for the work queue consumer: ack/retry dispositions per error class,
credential refresh on AuthExpired and batch processing on the worker pool.
"""
from unittest.mock import MagicMock

import pytest

from triage_agent.classification import EmailAnalyzer
from triage_agent.config_schema import QueueConfig
from triage_agent.decision_logic import DecisionMaker
from triage_agent.error_handling import (
    AuthExpired,
    MalformedModelResponse,
    NotFound,
    TransientProviderError,
)
from triage_agent.processor import MessageProcessor, ProcessOutcome, ProcessResult
from triage_agent.queue_consumer import ConsumeSummary, ItemDisposition, QueueConsumer
from conftest import FakeProviderFactory, actions_response, analysis_response


@pytest.fixture
def factory(provider):
    return FakeProviderFactory(provider)


@pytest.fixture
def mock_processor():
    processor = MagicMock()
    processor.process.return_value = ProcessResult(ProcessOutcome.PROCESSED)
    return processor


def _consumer(store, queue, processor, factory, **config):
    return QueueConsumer(store, queue, processor, factory, QueueConfig(retry_base_delay_seconds=0, **config))


def _lease(queue, account_id=7, message_id='m1'):
    queue.enqueue(account_id, message_id)
    return queue.receive(max_items=1)[0]


def test_success_acks(store, queue, account, factory, mock_processor):
    consumer = _consumer(store, queue, mock_processor, factory)
    item = _lease(queue)

    assert consumer.handle_item(item) == ItemDisposition.ACKED
    assert queue.stats() == {'pending': 0, 'leased': 0, 'dead': 0}
    processed_account, message_id, _provider = mock_processor.process.call_args.args
    assert processed_account.id == 7
    assert message_id == 'm1'


def test_missing_account_acks(store, queue, factory, mock_processor):
    """Items for an unknown account can never succeed and are dropped."""
    consumer = _consumer(store, queue, mock_processor, factory)
    item = _lease(queue, account_id=404)

    assert consumer.handle_item(item) == ItemDisposition.ACKED
    mock_processor.process.assert_not_called()


def test_inactive_account_acks(store, queue, account, factory, mock_processor):
    store.set_account_active(7, False)
    consumer = _consumer(store, queue, mock_processor, factory)

    assert consumer.handle_item(_lease(queue)) == ItemDisposition.ACKED
    mock_processor.process.assert_not_called()


def test_not_found_acks(store, queue, account, factory, mock_processor):
    mock_processor.process.side_effect = NotFound('message deleted')
    consumer = _consumer(store, queue, mock_processor, factory)

    assert consumer.handle_item(_lease(queue)) == ItemDisposition.ACKED
    assert queue.stats()['pending'] == 0


@pytest.mark.parametrize('error', [
    TransientProviderError('rate limited', status=429),
    MalformedModelResponse('email_actions: missing field'),
    RuntimeError('unexpected'),
])
def test_failures_are_retried(store, queue, account, factory, mock_processor, error):
    mock_processor.process.side_effect = error
    consumer = _consumer(store, queue, mock_processor, factory)

    assert consumer.handle_item(_lease(queue)) == ItemDisposition.RETRIED
    assert queue.stats()['pending'] == 1
    redelivered = queue.receive()[0]
    assert type(error).__name__ in redelivered.last_error


def test_auth_expired_forces_refresh_then_retries(store, queue, account, factory, mock_processor):
    """Test that a 401 forces a credential refresh and the item is retried."""
    mock_processor.process.side_effect = AuthExpired('401')
    consumer = _consumer(store, queue, mock_processor, factory)

    assert consumer.handle_item(_lease(queue)) == ItemDisposition.RETRIED
    assert factory.refreshed == [(7, True)]


def test_failed_refresh_still_retries(store, queue, account, factory, mock_processor):
    mock_processor.process.side_effect = AuthExpired('401')
    factory.refresh_error = AuthExpired('refresh token revoked')
    consumer = _consumer(store, queue, mock_processor, factory)

    assert consumer.handle_item(_lease(queue)) == ItemDisposition.RETRIED


def test_dead_letter_after_max_attempts(store, queue, account, factory, mock_processor):
    mock_processor.process.side_effect = TransientProviderError('503', status=503)
    consumer = _consumer(store, queue, mock_processor, factory, max_attempts=2)
    queue.config = consumer.config
    queue.enqueue(7, 'm1')

    dispositions = [consumer.handle_item(queue.receive()[0]) for _ in range(2)]

    assert dispositions == [ItemDisposition.RETRIED, ItemDisposition.DEAD]
    assert queue.stats()['dead'] == 1


def test_run_once_processes_batch(store, queue, account, provider, factory, llm, inbox_message):
    """End to end through the real processor: two deliveries of one message, one side effect."""
    store.create_label(7, 'Finance', 'Bills')
    processor = MessageProcessor(store, EmailAnalyzer(llm), DecisionMaker(llm))
    llm.queue(analysis_response(), actions_response(labels=['Finance']))
    queue.enqueue(7, 'm1')
    queue.enqueue(7, 'm1')
    consumer = _consumer(store, queue, processor, factory, workers=1)

    summary = consumer.run_once()

    assert summary.received == 2
    assert summary.dispositions == {'acked': 2}
    assert [c for c in provider.write_calls if c[0] == 'apply_labels'] == [('apply_labels', 'm1', ['Label_Finance'])]
    assert queue.stats() == {'pending': 0, 'leased': 0, 'dead': 0}


def test_run_once_empty_queue(store, queue, factory, mock_processor):
    summary = _consumer(store, queue, mock_processor, factory).run_once()
    assert summary.received == 0
    assert str(summary) == 'received=0'


def test_run_once_parallel_workers(store, queue, account, factory, mock_processor):
    queue.enqueue_many([(7, f'm{i}') for i in range(6)])
    consumer = _consumer(store, queue, mock_processor, factory, workers=3, batch_size=10)

    summary = consumer.run_once()

    assert summary.received == 6
    assert summary.dispositions == {'acked': 6}
    assert mock_processor.process.call_count == 6


def test_consume_summary_str():
    summary = ConsumeSummary(received=3)
    summary.add(ItemDisposition.ACKED)
    summary.add(ItemDisposition.ACKED)
    summary.add(ItemDisposition.RETRIED)
    assert str(summary) == 'received=3, acked=2, retried=1'


def test_stop_ends_run_forever(store, queue, factory, mock_processor):
    consumer = _consumer(store, queue, mock_processor, factory)
    consumer.stop()
    consumer.run_forever(poll_interval=0.01)


def test_repeated_batches_reuse_worker_connections(store, queue, account, factory, mock_processor):
    """Worker threads persist across batches, so SQLite connections stay bounded."""
    consumer = _consumer(store, queue, mock_processor, factory, workers=2, batch_size=4)

    for batch in range(20):
        queue.enqueue_many([(7, f'b{batch}-{i}') for i in range(4)])
        assert consumer.run_once().received == 4

    # one connection for the test thread plus one per worker thread
    assert len(store._connections) <= 3
    assert len(queue._connections) <= 3
    consumer.close()


def test_close_shuts_down_pool(store, queue, account, factory, mock_processor):
    consumer = _consumer(store, queue, mock_processor, factory, workers=2)
    queue.enqueue(7, 'm1')
    consumer.run_once()
    pool = consumer._pool

    consumer.close()

    assert consumer._pool is None
    assert pool._shutdown
    queue.enqueue(7, 'm2')
    assert consumer.run_once().dispositions == {'acked': 1}
    consumer.close()
