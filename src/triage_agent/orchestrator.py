"""
Sweep orchestration over active accounts.

A sweep runs one job for every active account (or an explicit subset):

    poll      change detection and enqueue
    morning   morning wrapup
    evening   evening wrapup, then the daily memory
    daily | weekly | monthly | yearly
              a single memory tier
    memories  every tier, in order, daily first

Accounts are an explicit list handed to a bounded thread pool
(scheduler.sweep_workers; 1 = one at a time). Each account runs with its own
logging context, and a failure is logged and recorded for that account only;
the sweep always visits every account.

Usage:
    >>> orchestrator = SweepOrchestrator(store, detector, providers, memory, wrapups)
    >>> result = orchestrator.run('evening')
    >>> print(result)
"""
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from triage_agent.change_detector import ChangeDetector
from triage_agent.error_handling import ErrorCode, log_error_with_context
from triage_agent.interfaces import ProviderFactory
from triage_agent.logging_context import set_correlation_id, with_account_context
from triage_agent.memory_builder import MemoryBuilder
from triage_agent.models import Account, MemoryTier, WrapupType, utc_now
from triage_agent.storage import TriageStore
from triage_agent.wrapup import WrapupReporter

logger = logging.getLogger(__name__)

JOBS = ('poll', 'morning', 'evening', 'daily', 'weekly', 'monthly', 'yearly', 'memories')


@dataclass
class AccountResult:
    """
    Attributes:
        success: The job completed for this account
        skipped: Nothing to do (account unknown/inactive, empty window, failed poll)
        detail: Short human-readable outcome
        error: Error message when the job failed
    """
    success: bool
    skipped: bool = False
    detail: str = ''
    error: Optional[str] = None


@dataclass
class SweepResult:
    """Summary of one sweep."""
    job: str
    correlation_id: str
    total_accounts: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    account_results: Dict[int, AccountResult] = field(default_factory=dict)
    total_time: float = 0.0

    def record(self, account_id: int, result: AccountResult) -> None:
        self.account_results[account_id] = result
        if not result.success:
            self.failed += 1
        elif result.skipped:
            self.skipped += 1
        else:
            self.successful += 1

    def __str__(self) -> str:
        return (
            f"Sweep '{self.job}' complete: {self.successful}/{self.total_accounts} accounts successful, "
            f"{self.skipped} skipped, {self.failed} failed, total time: {self.total_time:.2f}s"
        )


class SweepOrchestrator:
    """
    Args:
        store: Account store
        detector: Change detector (poll job)
        providers: Mail provider factory (poll job)
        memory: Memory builder
        wrapups: Wrapup reporter
        max_workers: Accounts processed concurrently
    """

    def __init__(
        self,
        store: TriageStore,
        detector: ChangeDetector,
        providers: ProviderFactory,
        memory: MemoryBuilder,
        wrapups: WrapupReporter,
        max_workers: int = 1
    ):
        self.store = store
        self.detector = detector
        self.providers = providers
        self.memory = memory
        self.wrapups = wrapups
        self.max_workers = max(1, max_workers)
        self._handlers: Dict[str, Callable[[Account, datetime], AccountResult]] = {
            'poll': self._poll,
            'morning': lambda account, now: self._wrapup(account, WrapupType.MORNING, now),
            'evening': self._evening,
            'daily': lambda account, now: self._tier(account, MemoryTier.DAILY, now),
            'weekly': lambda account, now: self._tier(account, MemoryTier.WEEKLY, now),
            'monthly': lambda account, now: self._tier(account, MemoryTier.MONTHLY, now),
            'yearly': lambda account, now: self._tier(account, MemoryTier.YEARLY, now),
            'memories': self._all_tiers,
        }

    # Job handlers

    def _poll(self, account: Account, now: datetime) -> AccountResult:
        provider = self.providers.for_account(account)
        poll = self.detector.sync_account(account, provider, now)
        if not poll.ok:
            return AccountResult(success=True, skipped=True, detail='poll failed, cursor unchanged')
        return AccountResult(
            success=True, skipped=not poll.message_ids,
            detail=f"{len(poll.message_ids)} new, {poll.enqueued} enqueued",
        )

    def _wrapup(self, account: Account, report_type: WrapupType, now: datetime) -> AccountResult:
        report = self.wrapups.generate(account.id, report_type, now)
        if report is None:
            return AccountResult(success=True, skipped=True, detail='no messages in window')
        return AccountResult(success=True, detail=f"{report.email_count} emails")

    def _tier(self, account: Account, tier: MemoryTier, now: datetime) -> AccountResult:
        built = self.memory.build_tier(account.id, tier, now)
        if not built.created:
            return AccountResult(success=True, skipped=True, detail=f"{tier.value}: {built.skipped_reason}")
        return AccountResult(success=True, detail=f"{tier.value}: {built.source_count} source item(s)")

    def _evening(self, account: Account, now: datetime) -> AccountResult:
        # The daily memory still runs when the wrapup fails; the account is reported failed afterwards
        wrapup_error = None
        try:
            wrapup = self._wrapup(account, WrapupType.EVENING, now)
        except Exception as e:
            log_error_with_context(e, ErrorCode.WRAPUP_FAILED, "Evening wrapup", include_traceback=False, log=logger)
            wrapup_error = e
        daily = self._tier(account, MemoryTier.DAILY, now)
        if wrapup_error is not None:
            raise wrapup_error
        return AccountResult(
            success=True,
            skipped=wrapup.skipped and daily.skipped,
            detail=f"wrapup: {wrapup.detail}; {daily.detail}",
        )

    def _all_tiers(self, account: Account, now: datetime) -> AccountResult:
        results = self.memory.build_all_tiers(account.id, now)
        created = [r.tier.value for r in results if r.created]
        return AccountResult(
            success=True, skipped=not created,
            detail=f"created: {', '.join(created) if created else 'none'}",
        )

    # Sweep

    def _select_accounts(self, account_ids: Optional[Sequence[int]]) -> List[Account]:
        if account_ids is None:
            return self.store.list_active_accounts()
        accounts = []
        for account_id in account_ids:
            account = self.store.get_account(account_id)
            if account is None or not account.is_active:
                logger.warning(f"Account {account_id} not found or inactive, skipping")
                continue
            accounts.append(account)
        return accounts

    def _run_account(self, job: str, account: Account, now: datetime, correlation_id: str) -> AccountResult:
        with with_account_context(account_id=account.id, correlation_id=correlation_id, job_id=job):
            start_time = time.time()
            try:
                result = self._handlers[job](account, now)
            except Exception as e:
                log_error_with_context(
                    e, ErrorCode.SWEEP_ACCOUNT_FAILED, f"Sweep job '{job}'",
                    context={'account_id': account.id}, log=logger,
                )
                return AccountResult(success=False, error=f"{type(e).__name__}: {e}")
            logger.info(f"Account {account.id} done in {time.time() - start_time:.2f}s: {result.detail}")
            return result

    def run(
        self,
        job: str,
        now: Optional[datetime] = None,
        account_ids: Optional[Sequence[int]] = None
    ) -> SweepResult:
        """
        Run a job across accounts.

        Args:
            job: One of JOBS
            now: Reference time (defaults to the current time)
            account_ids: Restrict the sweep to these accounts

        Returns:
            SweepResult with per-account outcomes

        Raises:
            ValueError: Unknown job name
        """
        if job not in self._handlers:
            raise ValueError(f"Unknown job '{job}'. Expected one of: {', '.join(JOBS)}")

        start_time = time.time()
        now = now or utc_now()
        correlation_id = str(uuid.uuid4())
        set_correlation_id(correlation_id)
        result = SweepResult(job=job, correlation_id=correlation_id)

        accounts = self._select_accounts(account_ids)
        result.total_accounts = len(accounts)
        logger.info(f"Starting sweep '{job}' over {len(accounts)} account(s) [correlation_id={correlation_id}]")

        if accounts:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(accounts))) as pool:
                outcomes = pool.map(lambda a: self._run_account(job, a, now, correlation_id), accounts)
                for account, outcome in zip(accounts, outcomes):
                    result.record(account.id, outcome)

        result.total_time = time.time() - start_time
        logger.info(str(result))
        if result.failed:
            for account_id, account_result in result.account_results.items():
                if not account_result.success:
                    logger.warning(f"  - account {account_id}: {account_result.error}")
        return result
