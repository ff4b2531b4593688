"""
Data model for the triage agent.

Plain dataclasses for the records the store hands around (accounts, labels,
processed messages, memories, wrapup reports, prompt overrides) and for the
intermediate results of the pipeline (parsed provider message, analysis,
decision).

Timestamps are timezone-aware datetimes in memory and UTC ISO-8601 strings
("2025-01-06T00:00:00Z") in storage; format_timestamp/parse_timestamp convert
between the two. The fixed-width string form makes lexicographic order equal
chronological order, which the range queries rely on.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as a UTC storage string. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp (or any ISO-8601 string) into an aware UTC datetime."""
    if not value:
        return None
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MemoryTier(str, Enum):
    """Memory granularities, lowest first."""
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'

    @property
    def source_tier(self) -> Optional['MemoryTier']:
        """The tier this one consolidates (None for daily, which reads raw records)."""
        order = list(MemoryTier)
        index = order.index(self)
        return order[index - 1] if index > 0 else None


class WrapupType(str, Enum):
    MORNING = 'morning'
    EVENING = 'evening'


class PromptType(str, Enum):
    """Stages whose default instructions an account may override."""
    EMAIL_ANALYZE = 'email_analyze'
    EMAIL_ACTIONS = 'email_actions'
    DAILY_REVIEW = 'daily_review'
    WEEKLY_SUMMARY = 'weekly_summary'
    MONTHLY_SUMMARY = 'monthly_summary'
    YEARLY_SUMMARY = 'yearly_summary'
    WRAPUP_REPORT = 'wrapup_report'


TIER_PROMPT_TYPES = {
    MemoryTier.DAILY: PromptType.DAILY_REVIEW,
    MemoryTier.WEEKLY: PromptType.WEEKLY_SUMMARY,
    MemoryTier.MONTHLY: PromptType.MONTHLY_SUMMARY,
    MemoryTier.YEARLY: PromptType.YEARLY_SUMMARY,
}


@dataclass
class Account:
    """
    A mailbox the agent triages.

    Owned by the account store. The core only mutates the credential fields
    (token refresh) and the sync cursor / last_checked_at (change detection).
    """
    id: int
    email: str
    access_token: str = ''
    refresh_token: str = ''
    token_expiry: Optional[datetime] = None
    is_active: bool = True
    last_checked_at: Optional[datetime] = None
    last_history_id: Optional[str] = None

    def token_expired(self, now: Optional[datetime] = None, skew_seconds: int = 60) -> bool:
        """True when the access token is missing or expires within skew_seconds."""
        if not self.access_token or self.token_expiry is None:
            return True
        now = now or utc_now()
        return (self.token_expiry - now).total_seconds() <= skew_seconds


@dataclass
class Label:
    """User-defined category with few-shot example reasons."""
    name: str
    description: str = ''
    reasons: List[str] = field(default_factory=list)
    id: Optional[int] = None
    account_id: Optional[int] = None


@dataclass
class PromptOverride:
    account_id: int
    prompt_type: PromptType
    content: str
    is_active: bool = True


@dataclass
class ParsedMessage:
    """A provider message reduced to what the pipeline needs."""
    id: str
    sender: str
    subject: str
    body: str
    label_ids: List[str] = field(default_factory=list)
    thread_id: Optional[str] = None
    internal_date: Optional[int] = None


@dataclass
class EmailAnalysis:
    """Output of the classification stage."""
    slug: str
    keywords: List[str]
    summary: str


@dataclass
class EmailActions:
    """Output of the decision stage."""
    labels: List[str]
    bypass_inbox: bool
    reasoning: str


@dataclass
class ProcessedMessage:
    """
    Immutable record of one triaged message.

    At most one exists per (account_id, message_id); the uniqueness constraint
    in the store is the pipeline's concurrency guard. Only human_feedback is
    ever changed after creation.
    """
    account_id: int
    message_id: str
    sender: str
    subject: str
    slug: str
    keywords: List[str]
    summary: str
    labels_applied: List[str]
    bypassed_inbox: bool
    reasoning: str
    processed_at: datetime
    human_feedback: str = ''

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['processed_at'] = format_timestamp(self.processed_at)
        return data


@dataclass
class Memory:
    """A tier summary covering the half-open window [start_date, end_date)."""
    account_id: int
    tier: MemoryTier
    content: str
    start_date: datetime
    end_date: datetime
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'tier': self.tier.value,
            'content': self.content,
            'start_date': format_timestamp(self.start_date),
            'end_date': format_timestamp(self.end_date),
            'created_at': format_timestamp(self.created_at) if self.created_at else None,
        }


@dataclass
class WrapupReport:
    account_id: int
    report_type: WrapupType
    email_count: int
    content: str
    generated_at: datetime
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'report_type': self.report_type.value,
            'email_count': self.email_count,
            'content': self.content,
            'generated_at': format_timestamp(self.generated_at),
        }
