"""
Change detection: find messages added since an account's cursor and enqueue them.

poll() never raises for provider failures; it logs and reports no new
messages, and the next scheduled poll retries from the same cursor. An expired
history id is handled by the provider, which restarts from the current mailbox
position and returns that as the new cursor.

The new cursor is an explicit value in the PollResult. sync_account() writes it
back together with last_checked_at in one statement, at one of two points:

    before_enqueue  cursor first, then enqueue. A crash in between drops the
                    batch (at-most-once detection).
    after_enqueue   enqueue first, then cursor. A crash in between re-detects
                    the batch on the next poll; the processor's idempotency
                    guard absorbs the duplicates.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from triage_agent.config_schema import PipelineConfig
from triage_agent.error_handling import ErrorCode, log_error_with_context
from triage_agent.interfaces import MailProvider
from triage_agent.models import Account, utc_now
from triage_agent.storage import TriageStore
from triage_agent.work_queue import SQLiteWorkQueue

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """
    Attributes:
        message_ids: New message ids, in provider order
        cursor: Cursor to store (the old one when the poll failed)
        ok: False when the provider call failed
        enqueued: Items enqueued by sync_account
    """
    message_ids: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    ok: bool = True
    enqueued: int = 0


class ChangeDetector:
    """
    Args:
        store: Account store (cursor persistence)
        queue: Work queue fed with (account_id, message_id) items
        config: Pipeline settings (cursor_commit ordering)
    """

    def __init__(self, store: TriageStore, queue: SQLiteWorkQueue, config: Optional[PipelineConfig] = None):
        self.store = store
        self.queue = queue
        self.config = config or PipelineConfig()

    def poll(self, account: Account, provider: MailProvider) -> PollResult:
        """Ask the provider for messages added since the account's cursor."""
        try:
            message_ids, new_cursor = provider.list_new_message_ids(account.last_history_id)
        except Exception as e:
            log_error_with_context(
                e, ErrorCode.HISTORY_FETCH_FAILED, "Polling for new messages",
                context={'account_id': account.id, 'cursor': account.last_history_id},
                level=logging.WARNING, include_traceback=False, log=logger,
            )
            return PollResult(cursor=account.last_history_id, ok=False)

        if message_ids:
            logger.info(f"Found {len(message_ids)} new message(s) for account {account.id}")
        else:
            logger.debug(f"No new messages for account {account.id}")
        return PollResult(message_ids=list(message_ids), cursor=new_cursor or account.last_history_id)

    def _commit_cursor(self, account: Account, result: PollResult, now: datetime) -> None:
        self.store.update_sync_cursor(account.id, result.cursor, now)
        account.last_history_id = result.cursor
        account.last_checked_at = now

    def sync_account(self, account: Account, provider: MailProvider, now: Optional[datetime] = None) -> PollResult:
        """
        Poll an account, enqueue what was found and store the new cursor.

        Returns:
            The PollResult, with enqueued set
        """
        now = now or utc_now()
        result = self.poll(account, provider)
        if not result.ok:
            return result

        items = [(account.id, message_id) for message_id in result.message_ids]
        if self.config.cursor_commit == 'before_enqueue':
            self._commit_cursor(account, result, now)
            result.enqueued = self.queue.enqueue_many(items)
        else:
            result.enqueued = self.queue.enqueue_many(items)
            self._commit_cursor(account, result, now)

        if result.enqueued:
            logger.info(f"Enqueued {result.enqueued} message(s) for account {account.id}, cursor={result.cursor}")
        return result
