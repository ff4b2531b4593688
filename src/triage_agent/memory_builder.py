"""
Hierarchical memory builder.

Four tiers, each consolidating the one below it:

    processed records ──► daily ──► weekly ──► monthly ──► yearly

For a tier build at time `now` (boundaries computed in the scheduler timezone):

    end     now truncated to the tier boundary (midnight, Monday 00:00,
            the 1st of the month, January 1st)
    start   end minus one tier unit; this is the stored window [start, end)
    cursor  the previous instance's end_date when one exists, else start.
            Source material is read from [cursor, end) so nothing already
            folded into the previous instance is counted twice.

If the previous instance already reaches `end` the period is built and the run
is a no-op. Empty source material is also a no-op: nothing is written, the
cursor stays put, and the next run retries the same range.

The daily tier reads ProcessedMessage records. If the calendar range is empty
it falls back to the 24 hours before `now` (bounded below by the cursor), so a
single missed nightly run does not lose a day.

build_all_tiers() runs daily, weekly, monthly and yearly in that order for one
account while holding the account's build lock; single-tier builds take the
same lock, so within one process a tier never reads a lower tier that is still
being written.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from triage_agent.llm_client import LLMClient
from triage_agent.config_schema import MemoryConfig
from triage_agent.models import (
    TIER_PROMPT_TYPES,
    Memory,
    MemoryTier,
    utc_now,
)
from triage_agent.prompt_renderer import render_consolidation_prompts, render_daily_memory_prompts
from triage_agent.storage import TriageStore

logger = logging.getLogger(__name__)

FALLBACK_LOOKBACK = timedelta(hours=24)


def _local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=tz).astimezone(timezone.utc)


def tier_window(tier: MemoryTier, now: datetime, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """
    The calendar window [start, end) a tier build at `now` covers, in UTC.

    Example:
        >>> tier_window(MemoryTier.WEEKLY, datetime(2025, 1, 13, 9, tzinfo=timezone.utc), ZoneInfo('UTC'))
        (datetime(2025, 1, 6, 0, 0, tzinfo=timezone.utc), datetime(2025, 1, 13, 0, 0, tzinfo=timezone.utc))
    """
    today = now.astimezone(tz).date()
    if tier == MemoryTier.DAILY:
        end_day = today
        start_day = end_day - timedelta(days=1)
    elif tier == MemoryTier.WEEKLY:
        end_day = today - timedelta(days=today.weekday())
        start_day = end_day - timedelta(days=7)
    elif tier == MemoryTier.MONTHLY:
        end_day = today.replace(day=1)
        start_day = (end_day - timedelta(days=1)).replace(day=1)
    elif tier == MemoryTier.YEARLY:
        end_day = date(today.year, 1, 1)
        start_day = date(today.year - 1, 1, 1)
    else:
        raise ValueError(f"Unknown memory tier: {tier}")
    return _local_midnight(start_day, tz), _local_midnight(end_day, tz)


@dataclass
class TierBuildResult:
    """
    Outcome of one tier build.

    Attributes:
        tier: The tier built
        memory: The created instance, None when skipped
        source_count: Records or lower-tier memories consumed
        skipped_reason: Why nothing was created
    """
    tier: MemoryTier
    memory: Optional[Memory] = None
    source_count: int = 0
    skipped_reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.memory is not None


class MemoryBuilder:
    """
    Builds memories for one account at a time.

    Args:
        store: Record and memory store
        llm: Language-model client
        config: Prompt limits
        timezone_name: IANA zone for tier boundaries
        max_tokens: Completion cap for memory generation
    """

    def __init__(
        self,
        store: TriageStore,
        llm: LLMClient,
        config: Optional[MemoryConfig] = None,
        timezone_name: str = 'UTC',
        max_tokens: Optional[int] = None
    ):
        self.store = store
        self.llm = llm
        self.config = config or MemoryConfig()
        self.tz = ZoneInfo(timezone_name)
        self.max_tokens = max_tokens
        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, account_id: int) -> threading.RLock:
        with self._locks_guard:
            if account_id not in self._locks:
                self._locks[account_id] = threading.RLock()
            return self._locks[account_id]

    def _generate(self, system_prompt: str, user_prompt: str) -> str:
        return self.llm.complete(system_prompt, user_prompt, max_tokens=self.max_tokens).strip()

    def _build_daily(
        self,
        account_id: int,
        cursor: datetime,
        end: datetime,
        now: datetime
    ) -> Tuple[Optional[str], int]:
        records = self.store.list_processed_between(account_id, cursor, end)
        if not records:
            # May read past end; the next daily starts at end and reads those records again
            fallback_start = max(now - FALLBACK_LOOKBACK, cursor)
            if fallback_start < now:
                records = self.store.list_processed_between(account_id, fallback_start, now)
                if records:
                    logger.info(f"Daily window empty, using {len(records)} record(s) from the last 24 hours")
        if not records:
            return None, 0

        system_prompt, user_prompt = render_daily_memory_prompts(
            records,
            self.store.list_labels(account_id),
            override=self.store.get_prompt_text(account_id, TIER_PROMPT_TYPES[MemoryTier.DAILY]),
            max_emails=self.config.max_emails_in_prompt,
        )
        return self._generate(system_prompt, user_prompt), len(records)

    def _build_consolidated(
        self,
        account_id: int,
        tier: MemoryTier,
        previous: Optional[Memory],
        cursor: datetime,
        end: datetime
    ) -> Tuple[Optional[str], int]:
        sources = self.store.list_memories_in_range(account_id, tier.source_tier, cursor, end)
        if not sources:
            return None, 0

        system_prompt, user_prompt = render_consolidation_prompts(
            tier, previous, sources,
            override=self.store.get_prompt_text(account_id, TIER_PROMPT_TYPES[tier]),
        )
        return self._generate(system_prompt, user_prompt), len(sources)

    def build_tier(self, account_id: int, tier: MemoryTier, now: Optional[datetime] = None) -> TierBuildResult:
        """
        Build one tier's memory for an account.

        Returns:
            TierBuildResult; memory is None when the period is already built or
            there was no source material

        Raises:
            TransientProviderError, LLMAPIError, MalformedModelResponse: From the model call
        """
        tier = MemoryTier(tier)
        now = now or utc_now()
        with self._account_lock(account_id):
            start, end = tier_window(tier, now, self.tz)
            previous = self.store.get_latest_memory(account_id, tier)
            if previous is not None and previous.end_date >= end:
                logger.debug(f"{tier.value} memory already covers up to {previous.end_date}, nothing to build")
                return TierBuildResult(tier, skipped_reason='up_to_date')

            cursor = previous.end_date if previous is not None else start

            if tier == MemoryTier.DAILY:
                content, source_count = self._build_daily(account_id, cursor, end, now)
            else:
                content, source_count = self._build_consolidated(account_id, tier, previous, cursor, end)

            if source_count == 0:
                logger.info(f"No source material for {tier.value} memory since {cursor}, skipping")
                return TierBuildResult(tier, skipped_reason='no_source_material')

            memory = self.store.create_memory(account_id, tier, content, start, end)
            logger.info(
                f"Created {tier.value} memory {memory.id} for [{start}, {end}) "
                f"from {source_count} source item(s)"
                + (" (evolved)" if previous is not None and tier != MemoryTier.DAILY else "")
            )
            return TierBuildResult(tier, memory=memory, source_count=source_count)

    def build_all_tiers(self, account_id: int, now: Optional[datetime] = None) -> List[TierBuildResult]:
        """Build every tier in order (daily first) under the account's build lock."""
        now = now or utc_now()
        with self._account_lock(account_id):
            return [self.build_tier(account_id, tier, now) for tier in MemoryTier]
