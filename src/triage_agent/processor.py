"""
Per-message triage pipeline.

One work item (account, message id) runs, strictly in order:

    1. Idempotency guard: if a ProcessedMessage already exists, stop.
    2. Fetch the message from the mail provider.
    3. Classification stage (slug, keywords, summary).
    4. Decision stage (labels from the catalog, bypass_inbox, reasoning).
    5. Persist the ProcessedMessage record.
    6. Write-back (ensure labels, apply them, archive).

The (account_id, message_id) uniqueness constraint is the concurrency guard:
if two deliveries of the same item race past step 1, the loser's insert in
step 5 is rejected and it skips write-back, so side effects happen at most
once. Errors from any stage propagate to the caller, which reports the work
item as failed to the queue.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from triage_agent.classification import EmailAnalyzer
from triage_agent.config_schema import PipelineConfig
from triage_agent.decision_logic import DecisionMaker
from triage_agent.error_handling import ErrorCode, log_error_with_context
from triage_agent.interfaces import MailProvider
from triage_agent.models import Account, ProcessedMessage, PromptType, utc_now
from triage_agent.storage import TriageStore
from triage_agent.writeback import WriteBackApplier

logger = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    PROCESSED = 'processed'
    ALREADY_PROCESSED = 'already_processed'
    LOST_RACE = 'lost_race'


@dataclass
class ProcessResult:
    """
    Outcome of one work item.

    Attributes:
        outcome: What happened
        record: The stored record when this call created it
        processing_time: Seconds spent
    """
    outcome: ProcessOutcome
    record: Optional[ProcessedMessage] = None
    processing_time: float = 0.0


class MessageProcessor:
    """
    Runs the triage pipeline for single messages.

    Args:
        store: Account, label, prompt and record store
        analyzer: Classification stage
        decider: Decision stage
        writeback: Write-back applier
        config: Pipeline limits
    """

    def __init__(
        self,
        store: TriageStore,
        analyzer: EmailAnalyzer,
        decider: DecisionMaker,
        writeback: Optional[WriteBackApplier] = None,
        config: Optional[PipelineConfig] = None
    ):
        self.store = store
        self.analyzer = analyzer
        self.decider = decider
        self.writeback = writeback or WriteBackApplier()
        self.config = config or PipelineConfig()

    def process(self, account: Account, message_id: str, provider: MailProvider) -> ProcessResult:
        """
        Triage one message for an account.

        Raises:
            AuthExpired, NotFound, TransientProviderError, ProviderError:
                From the mail provider
            MalformedModelResponse: From either model stage
        """
        start_time = time.time()

        if self.store.message_exists(account.id, message_id):
            logger.info(f"Message {message_id} already processed, skipping")
            return ProcessResult(ProcessOutcome.ALREADY_PROCESSED, processing_time=time.time() - start_time)

        message = provider.get_message(message_id)
        logger.info(f"Processing message {message_id} from {message.sender}")

        past_slugs = self.store.get_past_slugs_from_sender(
            account.id, message.sender, limit=self.config.past_slug_limit
        )
        analysis = self.analyzer.analyze(
            message.sender,
            message.subject,
            message.body,
            past_slugs,
            prompt_override=self.store.get_prompt_text(account.id, PromptType.EMAIL_ANALYZE),
        )

        actions = self.decider.decide(
            message.sender,
            message.subject,
            analysis,
            label_catalog=self.store.list_labels(account.id),
            memories=self.store.get_memory_context(account.id, daily_limit=self.config.daily_context_limit),
            prompt_override=self.store.get_prompt_text(account.id, PromptType.EMAIL_ACTIONS),
        )

        record = ProcessedMessage(
            account_id=account.id,
            message_id=message_id,
            sender=message.sender,
            subject=message.subject,
            slug=analysis.slug,
            keywords=analysis.keywords,
            summary=analysis.summary,
            labels_applied=actions.labels,
            bypassed_inbox=actions.bypass_inbox,
            reasoning=actions.reasoning,
            processed_at=utc_now(),
        )
        if not self.store.insert_processed_message(record):
            logger.info(f"Message {message_id} was recorded by a concurrent delivery, skipping write-back")
            return ProcessResult(ProcessOutcome.LOST_RACE, processing_time=time.time() - start_time)

        try:
            self.writeback.apply(provider, message_id, actions.labels, actions.bypass_inbox)
        except Exception as e:
            # The record is already stored, so a redelivery will not repeat the write-back
            log_error_with_context(
                e, ErrorCode.WRITEBACK_FAILED, "Applying labels",
                context={'account_id': account.id, 'message_id': message_id,
                         'labels': actions.labels, 'archive': actions.bypass_inbox},
                include_traceback=False, log=logger,
            )
            raise

        processing_time = time.time() - start_time
        logger.info(
            f"Processed message {message_id} in {processing_time:.2f}s: slug={analysis.slug}, "
            f"labels={actions.labels}, archived={actions.bypass_inbox}"
        )
        return ProcessResult(ProcessOutcome.PROCESSED, record=record, processing_time=processing_time)
