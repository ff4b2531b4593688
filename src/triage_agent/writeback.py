"""
Write-back: apply a decision to the mail provider.

Runs only after the ProcessedMessage record is stored. Label names are resolved
to provider ids (creating missing labels), applied in one batched modify call,
and the message is archived with a separate call when the decision bypasses
the inbox.
"""
import logging
from typing import List, Sequence

from triage_agent.interfaces import MailProvider

logger = logging.getLogger(__name__)


class WriteBackApplier:
    """Applies labels and archiving for one message."""

    def apply(
        self,
        provider: MailProvider,
        message_id: str,
        labels: Sequence[str],
        bypass_inbox: bool
    ) -> List[str]:
        """
        Apply a decision.

        Args:
            provider: Mail provider bound to the message's account
            message_id: Provider message id
            labels: Label names (already filtered to the account's catalog)
            bypass_inbox: Archive the message

        Returns:
            The provider label ids that were applied
        """
        label_ids: List[str] = []
        for name in labels:
            label_id = provider.ensure_label(name)
            if label_id not in label_ids:
                label_ids.append(label_id)

        if label_ids:
            provider.apply_labels(message_id, label_ids)
            logger.info(f"Applied {len(label_ids)} label(s) to message {message_id}")

        if bypass_inbox:
            provider.archive(message_id)
            logger.info(f"Archived message {message_id}")

        return label_ids
