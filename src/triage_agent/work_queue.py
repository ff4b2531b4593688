"""
Durable work queue for (account, message) work items.

A SQLite-backed queue with at-least-once delivery:

    enqueue ──► pending ──receive──► leased ──ack──► (deleted)
                   ▲                   │
                   └──── retry ────────┤ (attempts < max_attempts, with backoff)
                   ▲                   └──► dead (attempts exhausted)
                   └── lease expired (worker crashed) ── redelivered by receive

Items for the same (account, message) pair may be enqueued more than once (a
re-detected batch, a manual re-run); the pipeline's idempotency check absorbs
the duplicates.
"""
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from triage_agent.config_schema import QueueConfig
from triage_agent.models import format_timestamp, parse_timestamp, utc_now
from triage_agent.storage import SQLiteDatabase

logger = logging.getLogger(__name__)

QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    available_at TEXT NOT NULL,
    leased_until TEXT,
    last_error TEXT,
    enqueued_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_work_items_status_available
    ON work_items (status, available_at);
"""

STATUS_PENDING = 'pending'
STATUS_LEASED = 'leased'
STATUS_DEAD = 'dead'


@dataclass
class WorkItem:
    """One delivery of a queued (account, message) pair."""
    id: int
    account_id: int
    message_id: str
    attempts: int
    enqueued_at: Optional[datetime] = None
    last_error: Optional[str] = None


class SQLiteWorkQueue(SQLiteDatabase):
    """
    At-least-once work queue.

    Args:
        db_path: SQLite file (may be the same file as the TriageStore)
        config: Lease, retry and dead-letter settings
    """

    schema = QUEUE_SCHEMA

    def __init__(self, db_path: str, config: Optional[QueueConfig] = None):
        self.config = config or QueueConfig()
        super().__init__(db_path)

    def enqueue(self, account_id: int, message_id: str) -> int:
        now = format_timestamp(utc_now())
        cursor = self._get_conn().execute(
            """
            INSERT INTO work_items (account_id, message_id, status, attempts, available_at,
                                    enqueued_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?, ?)
            """,
            (account_id, message_id, STATUS_PENDING, now, now, now),
        )
        return cursor.lastrowid

    def enqueue_many(self, items: Iterable[Tuple[int, str]]) -> int:
        """Enqueue several items atomically; returns how many were added."""
        now = format_timestamp(utc_now())
        rows = [(account_id, message_id, STATUS_PENDING, now, now, now) for account_id, message_id in items]
        if not rows:
            return 0
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO work_items (account_id, message_id, status, attempts, available_at,
                                        enqueued_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def receive(self, max_items: int = 10, now: Optional[datetime] = None) -> List[WorkItem]:
        """
        Lease up to max_items deliverable items.

        Deliverable means pending and due, or leased with an expired lease (the
        previous worker died without ack/retry). Each lease counts as an attempt.
        """
        now = now or utc_now()
        now_str = format_timestamp(now)
        lease_until = format_timestamp(now + timedelta(seconds=self.config.visibility_timeout_seconds))
        with self.transaction(immediate=True) as conn:
            rows = conn.execute(
                """
                SELECT * FROM work_items
                WHERE (status = ? AND available_at <= ?)
                   OR (status = ? AND leased_until <= ?)
                ORDER BY available_at ASC, id ASC
                LIMIT ?
                """,
                (STATUS_PENDING, now_str, STATUS_LEASED, now_str, max_items),
            ).fetchall()
            items = []
            for row in rows:
                attempts = row['attempts'] + 1
                conn.execute(
                    """
                    UPDATE work_items SET status = ?, attempts = ?, leased_until = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (STATUS_LEASED, attempts, lease_until, now_str, row['id']),
                )
                items.append(WorkItem(
                    id=row['id'],
                    account_id=row['account_id'],
                    message_id=row['message_id'],
                    attempts=attempts,
                    enqueued_at=parse_timestamp(row['enqueued_at']),
                    last_error=row['last_error'],
                ))
        if items:
            logger.debug(f"Leased {len(items)} work item(s)")
        return items

    def ack(self, item: WorkItem) -> None:
        """Acknowledge a delivery; the item is removed."""
        self._get_conn().execute("DELETE FROM work_items WHERE id = ?", (item.id,))

    def retry_delay(self, attempts: int) -> float:
        """Exponential backoff with jitter, capped at retry_max_delay_seconds."""
        base = self.config.retry_base_delay_seconds * (2 ** max(attempts - 1, 0))
        delay = min(base, self.config.retry_max_delay_seconds)
        jitter = random.uniform(0, delay * 0.1)
        return min(delay + jitter, self.config.retry_max_delay_seconds)

    def retry(self, item: WorkItem, error: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        """
        Report a failed delivery.

        Returns:
            True if the item was rescheduled, False if it was dead-lettered
        """
        now = now or utc_now()
        now_str = format_timestamp(now)
        if item.attempts >= self.config.max_attempts:
            self._get_conn().execute(
                """
                UPDATE work_items SET status = ?, leased_until = NULL, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (STATUS_DEAD, error, now_str, item.id),
            )
            logger.error(
                f"Work item {item.id} (account {item.account_id}, message {item.message_id}) "
                f"dead-lettered after {item.attempts} attempt(s): {error}"
            )
            return False

        available_at = now + timedelta(seconds=self.retry_delay(item.attempts))
        self._get_conn().execute(
            """
            UPDATE work_items SET status = ?, leased_until = NULL, available_at = ?,
                                  last_error = ?, updated_at = ?
            WHERE id = ?
            """,
            (STATUS_PENDING, format_timestamp(available_at), error, now_str, item.id),
        )
        logger.info(
            f"Work item {item.id} rescheduled for {format_timestamp(available_at)} "
            f"(attempt {item.attempts}/{self.config.max_attempts})"
        )
        return True

    def list_dead(self, limit: int = 100) -> List[WorkItem]:
        rows = self._get_conn().execute(
            "SELECT * FROM work_items WHERE status = ? ORDER BY updated_at DESC LIMIT ?",
            (STATUS_DEAD, limit),
        ).fetchall()
        return [
            WorkItem(
                id=row['id'], account_id=row['account_id'], message_id=row['message_id'],
                attempts=row['attempts'], enqueued_at=parse_timestamp(row['enqueued_at']),
                last_error=row['last_error'],
            )
            for row in rows
        ]

    def stats(self) -> Dict[str, int]:
        """Item counts per status."""
        counts = {STATUS_PENDING: 0, STATUS_LEASED: 0, STATUS_DEAD: 0}
        for row in self._get_conn().execute(
            "SELECT status, COUNT(*) AS n FROM work_items GROUP BY status"
        ).fetchall():
            counts[row['status']] = row['n']
        return counts
