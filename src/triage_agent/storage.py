"""
SQLite persistence for the triage agent.

TriageStore holds the account/label/prompt store the pipeline reads and the
records it writes (processed messages, memories, wrapup reports). The work
queue (work_queue.SQLiteWorkQueue) shares the same database file and the
SQLiteDatabase connection handling defined here.

Concurrency:
    - One connection per thread (threading.local), WAL journal, busy timeout.
    - processed_messages has UNIQUE(account_id, message_id). That constraint is
      the only concurrency control the pipeline needs: insert_processed_message
      returns False instead of raising when another worker got there first.
    - Credential updates are plain last-write-wins UPDATEs.

Usage:
    >>> store = TriageStore('data/triage.db')
    >>> account = store.create_account('me@example.com', refresh_token='...')
    >>> store.create_label(account.id, 'Finance', 'Bills and invoices', ['invoice due'])
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from triage_agent.models import (
    Account,
    Label,
    Memory,
    MemoryTier,
    ProcessedMessage,
    PromptOverride,
    PromptType,
    WrapupReport,
    WrapupType,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    access_token TEXT NOT NULL DEFAULT '',
    refresh_token TEXT NOT NULL DEFAULT '',
    token_expiry TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_checked_at TEXT,
    last_history_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS labels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    reasons TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    UNIQUE (account_id, name)
);

CREATE TABLE IF NOT EXISTS prompt_overrides (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    prompt_type TEXT NOT NULL,
    content TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, prompt_type)
);

CREATE TABLE IF NOT EXISTS processed_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    sender TEXT NOT NULL DEFAULT '',
    subject TEXT NOT NULL DEFAULT '',
    slug TEXT NOT NULL DEFAULT '',
    keywords TEXT NOT NULL DEFAULT '[]',
    summary TEXT NOT NULL DEFAULT '',
    labels_applied TEXT NOT NULL DEFAULT '[]',
    bypassed_inbox INTEGER NOT NULL DEFAULT 0,
    reasoning TEXT NOT NULL DEFAULT '',
    human_feedback TEXT NOT NULL DEFAULT '',
    processed_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (account_id, message_id)
);
CREATE INDEX IF NOT EXISTS idx_processed_account_time
    ON processed_messages (account_id, processed_at);
CREATE INDEX IF NOT EXISTS idx_processed_account_sender
    ON processed_messages (account_id, sender);

CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    tier TEXT NOT NULL,
    content TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_account_tier_end
    ON memories (account_id, tier, end_date);

CREATE TABLE IF NOT EXISTS wrapup_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    report_type TEXT NOT NULL,
    email_count INTEGER NOT NULL,
    content TEXT NOT NULL,
    generated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_wrapups_account_time
    ON wrapup_reports (account_id, generated_at);
"""


class SQLiteDatabase:
    """
    Thread-local SQLite connection handling shared by the store and the queue.

    Connections run in autocommit mode; multi-statement units of work go through
    transaction(), which issues BEGIN/COMMIT/ROLLBACK explicitly.
    """

    schema: str = ''

    def __init__(self, db_path: str, busy_timeout_seconds: float = 30.0):
        self.db_path = Path(db_path)
        if str(db_path) != ':memory:':
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout_seconds
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        if self.schema:
            self._get_conn().executescript(self.schema)

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self._busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one transaction.

        Args:
            immediate: Take the write lock up front (BEGIN IMMEDIATE), needed for
                read-then-write sequences such as leasing queue items.
        """
        conn = self._get_conn()
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def close(self) -> None:
        """Close every connection opened by this instance."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()


def _json_list(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    loaded = json.loads(value)
    return loaded if isinstance(loaded, list) else []


class TriageStore(SQLiteDatabase):
    """Account, label, prompt, processed-message, memory and wrapup persistence."""

    schema = SCHEMA

    # Accounts

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row['id'],
            email=row['email'],
            access_token=row['access_token'],
            refresh_token=row['refresh_token'],
            token_expiry=parse_timestamp(row['token_expiry']),
            is_active=bool(row['is_active']),
            last_checked_at=parse_timestamp(row['last_checked_at']),
            last_history_id=row['last_history_id'],
        )

    def create_account(
        self,
        email: str,
        access_token: str = '',
        refresh_token: str = '',
        token_expiry: Optional[datetime] = None,
        is_active: bool = True,
        last_history_id: Optional[str] = None,
        account_id: Optional[int] = None
    ) -> Account:
        now = format_timestamp(utc_now())
        cursor = self._get_conn().execute(
            """
            INSERT INTO accounts (id, email, access_token, refresh_token, token_expiry,
                                  is_active, last_history_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account_id, email, access_token, refresh_token,
                format_timestamp(token_expiry) if token_expiry else None,
                1 if is_active else 0, last_history_id, now, now,
            ),
        )
        return self.get_account(cursor.lastrowid)

    def get_account(self, account_id: int) -> Optional[Account]:
        row = self._get_conn().execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        return self._row_to_account(row) if row else None

    def list_active_accounts(self) -> List[Account]:
        rows = self._get_conn().execute(
            "SELECT * FROM accounts WHERE is_active = 1 ORDER BY id"
        ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def set_account_active(self, account_id: int, is_active: bool) -> None:
        self._get_conn().execute(
            "UPDATE accounts SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if is_active else 0, format_timestamp(utc_now()), account_id),
        )

    def update_credentials(
        self,
        account_id: int,
        access_token: str,
        token_expiry: Optional[datetime],
        refresh_token: Optional[str] = None
    ) -> None:
        """Store refreshed credentials. Concurrent refreshes are last-write-wins."""
        conn = self._get_conn()
        expiry = format_timestamp(token_expiry) if token_expiry else None
        now = format_timestamp(utc_now())
        if refresh_token:
            conn.execute(
                """
                UPDATE accounts SET access_token = ?, token_expiry = ?, refresh_token = ?, updated_at = ?
                WHERE id = ?
                """,
                (access_token, expiry, refresh_token, now, account_id),
            )
        else:
            conn.execute(
                "UPDATE accounts SET access_token = ?, token_expiry = ?, updated_at = ? WHERE id = ?",
                (access_token, expiry, now, account_id),
            )

    def update_sync_cursor(self, account_id: int, history_id: Optional[str], checked_at: datetime) -> None:
        """Persist the change-detection cursor and last-checked time together."""
        self._get_conn().execute(
            """
            UPDATE accounts SET last_history_id = ?, last_checked_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (history_id, format_timestamp(checked_at), format_timestamp(utc_now()), account_id),
        )

    # Labels

    def create_label(
        self,
        account_id: int,
        name: str,
        description: str = '',
        reasons: Optional[List[str]] = None
    ) -> Label:
        cursor = self._get_conn().execute(
            """
            INSERT INTO labels (account_id, name, description, reasons, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (account_id, name, description, json.dumps(reasons or []), format_timestamp(utc_now())),
        )
        return Label(
            id=cursor.lastrowid, account_id=account_id, name=name,
            description=description, reasons=list(reasons or []),
        )

    def list_labels(self, account_id: int) -> List[Label]:
        rows = self._get_conn().execute(
            "SELECT * FROM labels WHERE account_id = ? ORDER BY name", (account_id,)
        ).fetchall()
        return [
            Label(
                id=row['id'], account_id=row['account_id'], name=row['name'],
                description=row['description'], reasons=_json_list(row['reasons']),
            )
            for row in rows
        ]

    # Prompt overrides

    def set_prompt_override(
        self,
        account_id: int,
        prompt_type: PromptType,
        content: str,
        is_active: bool = True
    ) -> None:
        self._get_conn().execute(
            """
            INSERT INTO prompt_overrides (account_id, prompt_type, content, is_active, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (account_id, prompt_type)
            DO UPDATE SET content = excluded.content, is_active = excluded.is_active,
                          updated_at = excluded.updated_at
            """,
            (account_id, PromptType(prompt_type).value, content, 1 if is_active else 0,
             format_timestamp(utc_now())),
        )

    def get_prompt_override(self, account_id: int, prompt_type: PromptType) -> Optional[PromptOverride]:
        """Return the active, non-blank override for a stage, if any."""
        row = self._get_conn().execute(
            """
            SELECT * FROM prompt_overrides
            WHERE account_id = ? AND prompt_type = ? AND is_active = 1
            """,
            (account_id, PromptType(prompt_type).value),
        ).fetchone()
        if row is None or not row['content'].strip():
            return None
        return PromptOverride(
            account_id=row['account_id'],
            prompt_type=PromptType(row['prompt_type']),
            content=row['content'],
            is_active=bool(row['is_active']),
        )

    def get_prompt_text(self, account_id: int, prompt_type: PromptType) -> Optional[str]:
        override = self.get_prompt_override(account_id, prompt_type)
        return override.content if override else None

    # Processed messages

    @staticmethod
    def _row_to_processed(row: sqlite3.Row) -> ProcessedMessage:
        return ProcessedMessage(
            account_id=row['account_id'],
            message_id=row['message_id'],
            sender=row['sender'],
            subject=row['subject'],
            slug=row['slug'],
            keywords=_json_list(row['keywords']),
            summary=row['summary'],
            labels_applied=_json_list(row['labels_applied']),
            bypassed_inbox=bool(row['bypassed_inbox']),
            reasoning=row['reasoning'],
            human_feedback=row['human_feedback'],
            processed_at=parse_timestamp(row['processed_at']),
        )

    def message_exists(self, account_id: int, message_id: str) -> bool:
        row = self._get_conn().execute(
            "SELECT 1 FROM processed_messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        return row is not None

    def insert_processed_message(self, record: ProcessedMessage) -> bool:
        """
        Persist a processing record.

        Returns:
            True if inserted, False if a record for (account_id, message_id)
            already exists (another delivery won the race).
        """
        try:
            self._get_conn().execute(
                """
                INSERT INTO processed_messages
                    (account_id, message_id, sender, subject, slug, keywords, summary,
                     labels_applied, bypassed_inbox, reasoning, human_feedback,
                     processed_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.account_id, record.message_id, record.sender, record.subject,
                    record.slug, json.dumps(record.keywords), record.summary,
                    json.dumps(record.labels_applied), 1 if record.bypassed_inbox else 0,
                    record.reasoning, record.human_feedback,
                    format_timestamp(record.processed_at), format_timestamp(utc_now()),
                ),
            )
        except sqlite3.IntegrityError:
            logger.info(
                f"Processed record for message {record.message_id} already exists "
                f"(account {record.account_id})"
            )
            return False
        return True

    def get_processed_message(self, account_id: int, message_id: str) -> Optional[ProcessedMessage]:
        row = self._get_conn().execute(
            "SELECT * FROM processed_messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        return self._row_to_processed(row) if row else None

    def list_processed_between(self, account_id: int, start: datetime, end: datetime) -> List[ProcessedMessage]:
        """Records with start <= processed_at < end, oldest first."""
        rows = self._get_conn().execute(
            """
            SELECT * FROM processed_messages
            WHERE account_id = ? AND processed_at >= ? AND processed_at < ?
            ORDER BY processed_at ASC, id ASC
            """,
            (account_id, format_timestamp(start), format_timestamp(end)),
        ).fetchall()
        return [self._row_to_processed(row) for row in rows]

    def get_past_slugs_from_sender(self, account_id: int, sender: str, limit: int = 5) -> List[str]:
        """Distinct slugs previously assigned to this sender, most recently used first."""
        if limit <= 0:
            return []
        rows = self._get_conn().execute(
            """
            SELECT slug, MAX(processed_at) AS last_seen FROM processed_messages
            WHERE account_id = ? AND sender = ? AND slug != ''
            GROUP BY slug
            ORDER BY last_seen DESC
            LIMIT ?
            """,
            (account_id, sender, limit),
        ).fetchall()
        return [row['slug'] for row in rows]

    def update_feedback(self, account_id: int, message_id: str, feedback: str) -> bool:
        """Set the human feedback on a record; the only mutation a record allows."""
        cursor = self._get_conn().execute(
            "UPDATE processed_messages SET human_feedback = ? WHERE account_id = ? AND message_id = ?",
            (feedback, account_id, message_id),
        )
        return cursor.rowcount > 0

    # Memories

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row['id'],
            account_id=row['account_id'],
            tier=MemoryTier(row['tier']),
            content=row['content'],
            start_date=parse_timestamp(row['start_date']),
            end_date=parse_timestamp(row['end_date']),
            created_at=parse_timestamp(row['created_at']),
        )

    def create_memory(
        self,
        account_id: int,
        tier: MemoryTier,
        content: str,
        start_date: datetime,
        end_date: datetime
    ) -> Memory:
        created_at = utc_now()
        cursor = self._get_conn().execute(
            """
            INSERT INTO memories (account_id, tier, content, start_date, end_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (account_id, MemoryTier(tier).value, content, format_timestamp(start_date),
             format_timestamp(end_date), format_timestamp(created_at)),
        )
        return Memory(
            id=cursor.lastrowid, account_id=account_id, tier=MemoryTier(tier), content=content,
            start_date=parse_timestamp(format_timestamp(start_date)),
            end_date=parse_timestamp(format_timestamp(end_date)),
            created_at=parse_timestamp(format_timestamp(created_at)),
        )

    def get_latest_memory(self, account_id: int, tier: MemoryTier) -> Optional[Memory]:
        """The tier instance with the latest window end (the tier's cursor)."""
        row = self._get_conn().execute(
            """
            SELECT * FROM memories WHERE account_id = ? AND tier = ?
            ORDER BY end_date DESC, created_at DESC, id DESC
            LIMIT 1
            """,
            (account_id, MemoryTier(tier).value),
        ).fetchone()
        return self._row_to_memory(row) if row else None

    def list_memories_in_range(
        self,
        account_id: int,
        tier: MemoryTier,
        start: datetime,
        end: datetime
    ) -> List[Memory]:
        """Tier instances whose window lies inside [start, end), oldest first."""
        rows = self._get_conn().execute(
            """
            SELECT * FROM memories
            WHERE account_id = ? AND tier = ? AND start_date >= ? AND end_date <= ?
            ORDER BY start_date ASC, id ASC
            """,
            (account_id, MemoryTier(tier).value, format_timestamp(start), format_timestamp(end)),
        ).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def list_recent_memories(self, account_id: int, tier: MemoryTier, limit: int) -> List[Memory]:
        if limit <= 0:
            return []
        rows = self._get_conn().execute(
            """
            SELECT * FROM memories WHERE account_id = ? AND tier = ?
            ORDER BY end_date DESC, created_at DESC, id DESC
            LIMIT ?
            """,
            (account_id, MemoryTier(tier).value, limit),
        ).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def get_memory_context(self, account_id: int, daily_limit: int = 7) -> List[Memory]:
        """Most recent yearly, monthly and weekly memory plus up to daily_limit dailies."""
        limits = [
            (MemoryTier.YEARLY, 1),
            (MemoryTier.MONTHLY, 1),
            (MemoryTier.WEEKLY, 1),
            (MemoryTier.DAILY, daily_limit),
        ]
        memories: List[Memory] = []
        for tier, limit in limits:
            memories.extend(self.list_recent_memories(account_id, tier, limit))
        return memories

    # Wrapup reports

    def create_wrapup_report(
        self,
        account_id: int,
        report_type: WrapupType,
        email_count: int,
        content: str,
        generated_at: datetime
    ) -> WrapupReport:
        cursor = self._get_conn().execute(
            """
            INSERT INTO wrapup_reports (account_id, report_type, email_count, content, generated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (account_id, WrapupType(report_type).value, email_count, content,
             format_timestamp(generated_at)),
        )
        return WrapupReport(
            id=cursor.lastrowid, account_id=account_id, report_type=WrapupType(report_type),
            email_count=email_count, content=content, generated_at=generated_at,
        )

    def list_wrapup_reports(self, account_id: int, limit: int = 20) -> List[WrapupReport]:
        rows = self._get_conn().execute(
            """
            SELECT * FROM wrapup_reports WHERE account_id = ?
            ORDER BY generated_at DESC, id DESC LIMIT ?
            """,
            (account_id, limit),
        ).fetchall()
        return [
            WrapupReport(
                id=row['id'], account_id=row['account_id'],
                report_type=WrapupType(row['report_type']), email_count=row['email_count'],
                content=row['content'], generated_at=parse_timestamp(row['generated_at']),
            )
            for row in rows
        ]
