"""
Runtime wiring.

Builds the object graph (store, queue, model client, provider factory,
pipeline, builders, orchestrator) from an AppConfig. Components are created on
first use, so commands that only touch the database (init-db, queue-stats,
feedback) do not need API secrets in the environment.

Usage:
    >>> from triage_agent.runtime import TriageRuntime
    >>> runtime = TriageRuntime.from_settings()
    >>> runtime.orchestrator.run('poll')
"""
import logging
from functools import cached_property
from typing import Optional

from triage_agent.auth.credentials import CredentialManager
from triage_agent.change_detector import ChangeDetector
from triage_agent.classification import EmailAnalyzer
from triage_agent.config import require_env
from triage_agent.config_schema import AppConfig
from triage_agent.decision_logic import DecisionMaker
from triage_agent.gmail_client import GmailProviderFactory
from triage_agent.llm_client import LLMClient
from triage_agent.memory_builder import MemoryBuilder
from triage_agent.orchestrator import SweepOrchestrator
from triage_agent.processor import MessageProcessor
from triage_agent.queue_consumer import QueueConsumer
from triage_agent.storage import TriageStore
from triage_agent.work_queue import SQLiteWorkQueue
from triage_agent.wrapup import WrapupReporter

logger = logging.getLogger(__name__)


class TriageRuntime:
    """Lazily constructed components sharing one configuration."""

    def __init__(self, config: AppConfig, providers=None, llm: Optional[LLMClient] = None):
        self.config = config
        if providers is not None:
            self.__dict__['providers'] = providers
        if llm is not None:
            self.__dict__['llm'] = llm

    @classmethod
    def from_settings(cls) -> 'TriageRuntime':
        from triage_agent.settings import settings
        return cls(settings.config)

    @cached_property
    def store(self) -> TriageStore:
        logger.debug(f"Opening database {self.config.storage.database_path}")
        return TriageStore(self.config.storage.database_path)

    @cached_property
    def queue(self) -> SQLiteWorkQueue:
        return SQLiteWorkQueue(self.config.storage.database_path, self.config.queue)

    @cached_property
    def llm(self) -> LLMClient:
        return LLMClient(self.config.llm)

    @cached_property
    def providers(self) -> GmailProviderFactory:
        gmail = self.config.gmail
        credentials = CredentialManager(
            self.store,
            client_id=require_env(gmail.client_id_env),
            client_secret=require_env(gmail.client_secret_env),
            token_uri=gmail.token_uri,
        )
        return GmailProviderFactory(credentials, gmail)

    @cached_property
    def processor(self) -> MessageProcessor:
        pipeline = self.config.pipeline
        return MessageProcessor(
            self.store,
            EmailAnalyzer(self.llm, max_body_chars=pipeline.max_body_chars),
            DecisionMaker(self.llm),
            config=pipeline,
        )

    @cached_property
    def detector(self) -> ChangeDetector:
        return ChangeDetector(self.store, self.queue, self.config.pipeline)

    @cached_property
    def consumer(self) -> QueueConsumer:
        return QueueConsumer(self.store, self.queue, self.processor, self.providers, self.config.queue)

    @cached_property
    def memory(self) -> MemoryBuilder:
        return MemoryBuilder(
            self.store, self.llm, self.config.memory,
            timezone_name=self.config.scheduler.timezone,
            max_tokens=self.config.llm.memory_max_completion_tokens,
        )

    @cached_property
    def wrapups(self) -> WrapupReporter:
        return WrapupReporter(
            self.store, self.llm, self.config.wrapup,
            timezone_name=self.config.scheduler.timezone,
            max_tokens=self.config.llm.memory_max_completion_tokens,
        )

    @cached_property
    def orchestrator(self) -> SweepOrchestrator:
        # Providers resolve lazily: memory and wrapup sweeps never need Google secrets
        return SweepOrchestrator(
            self.store, self.detector, _LazyProviders(self), self.memory, self.wrapups,
            max_workers=self.config.scheduler.sweep_workers,
        )

    def close(self) -> None:
        if 'consumer' in self.__dict__:
            self.consumer.close()
        for name in ('store', 'queue'):
            if name in self.__dict__:
                self.__dict__[name].close()


class _LazyProviders:
    def __init__(self, runtime: TriageRuntime):
        self._runtime = runtime

    def for_account(self, account):
        return self._runtime.providers.for_account(account)

    def refresh_credentials(self, account, force: bool = False):
        return self._runtime.providers.refresh_credentials(account, force=force)
