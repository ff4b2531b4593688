"""
Work queue consumer.

Leases batches of work items and runs each through the MessageProcessor on a
bounded thread pool, then signals the queue:

    account missing or inactive        ack (permanently undeliverable)
    processed / already processed      ack
    NotFound                           ack (message vanished, a skip)
    AuthExpired                        force a credential refresh, then retry
    anything else                      retry (queue backoff, dead after max_attempts)

The pool lives as long as the consumer (closed by close() or at the end of
run_forever), so its threads and their thread-local SQLite connections are
reused across batches.
"""
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from triage_agent.config_schema import QueueConfig
from triage_agent.error_handling import (
    AuthExpired,
    ErrorCode,
    MalformedModelResponse,
    NotFound,
    TriageError,
    log_error_with_context,
)
from triage_agent.interfaces import ProviderFactory
from triage_agent.logging_context import with_account_context
from triage_agent.processor import MessageProcessor
from triage_agent.storage import TriageStore
from triage_agent.work_queue import SQLiteWorkQueue, WorkItem

logger = logging.getLogger(__name__)


class ItemDisposition(str, Enum):
    ACKED = 'acked'
    RETRIED = 'retried'
    DEAD = 'dead'


@dataclass
class ConsumeSummary:
    """Counts for one drained batch."""
    received: int = 0
    dispositions: Dict[str, int] = field(default_factory=dict)

    def add(self, disposition: ItemDisposition) -> None:
        self.dispositions[disposition.value] = self.dispositions.get(disposition.value, 0) + 1

    def __str__(self) -> str:
        counts = ', '.join(f"{k}={v}" for k, v in sorted(self.dispositions.items()))
        return f"received={self.received}" + (f", {counts}" if counts else '')


class QueueConsumer:
    """
    Args:
        store: Account store
        queue: Work queue
        processor: Per-message pipeline
        providers: Builds a mail provider per account
        config: Batch size and worker count
    """

    def __init__(
        self,
        store: TriageStore,
        queue: SQLiteWorkQueue,
        processor: MessageProcessor,
        providers: ProviderFactory,
        config: Optional[QueueConfig] = None
    ):
        self.store = store
        self.queue = queue
        self.processor = processor
        self.providers = providers
        self.config = config or QueueConfig()
        self._stop = threading.Event()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=max(1, self.config.workers), thread_name_prefix='triage-worker'
                )
            return self._pool

    def close(self) -> None:
        """Shut down the worker pool; a later batch starts a new one."""
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)

    def _retry(self, item: WorkItem, error: Exception) -> ItemDisposition:
        requeued = self.queue.retry(item, error=f"{type(error).__name__}: {error}")
        return ItemDisposition.RETRIED if requeued else ItemDisposition.DEAD

    def handle_item(self, item: WorkItem, correlation_id: Optional[str] = None) -> ItemDisposition:
        """Process one work item and ack or retry it."""
        with with_account_context(
            account_id=item.account_id, message_id=item.message_id, correlation_id=correlation_id
        ):
            account = self.store.get_account(item.account_id)
            if account is None or not account.is_active:
                logger.warning(f"Account {item.account_id} missing or inactive, dropping work item {item.id}")
                self.queue.ack(item)
                return ItemDisposition.ACKED

            try:
                provider = self.providers.for_account(account)
                self.processor.process(account, item.message_id, provider)
            except NotFound as e:
                logger.info(f"Message {item.message_id} not found, skipping: {e}")
                self.queue.ack(item)
                return ItemDisposition.ACKED
            except AuthExpired as e:
                log_error_with_context(
                    e, ErrorCode.PROVIDER_AUTH_FAILED, "Processing message",
                    context={'attempt': item.attempts}, level=logging.WARNING,
                    include_traceback=False, log=logger,
                )
                try:
                    self.providers.refresh_credentials(account, force=True)
                except TriageError as refresh_error:
                    log_error_with_context(
                        refresh_error, ErrorCode.PROVIDER_AUTH_FAILED, "Refreshing credentials",
                        include_traceback=False, log=logger,
                    )
                return self._retry(item, e)
            except MalformedModelResponse as e:
                log_error_with_context(
                    e, ErrorCode.LLM_INVALID_RESPONSE, "Processing message",
                    context={'attempt': item.attempts}, include_traceback=False, log=logger,
                )
                return self._retry(item, e)
            except Exception as e:
                log_error_with_context(
                    e, ErrorCode.MESSAGE_PROCESSING_FAILED, "Processing message",
                    context={'attempt': item.attempts}, log=logger,
                )
                return self._retry(item, e)

            self.queue.ack(item)
            return ItemDisposition.ACKED

    def run_once(self, max_items: Optional[int] = None) -> ConsumeSummary:
        """Lease one batch and process it; returns the dispositions."""
        items = self.queue.receive(max_items or self.config.batch_size)
        summary = ConsumeSummary(received=len(items))
        if not items:
            return summary

        correlation_id = str(uuid.uuid4())
        logger.info(f"Processing {len(items)} work item(s) [correlation_id={correlation_id}]")
        pool = self._executor()
        for disposition in pool.map(lambda it: self.handle_item(it, correlation_id), items):
            summary.add(disposition)
        logger.info(f"Batch complete: {summary}")
        return summary

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self, poll_interval: float = 5.0) -> None:
        """Drain batches until stop() is called; sleeps poll_interval when the queue is empty."""
        logger.info(f"Queue consumer started (workers={self.config.workers}, batch_size={self.config.batch_size})")
        try:
            while not self._stop.is_set():
                summary = self.run_once()
                if summary.received == 0:
                    self._stop.wait(poll_interval)
        finally:
            self.close()
        logger.info("Queue consumer stopped")
