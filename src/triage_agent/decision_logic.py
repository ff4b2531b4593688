"""
Decision stage: second model call for a message.

Given the analysis, the account's label catalog and its memory context, the
model decides which labels to apply, whether to bypass the inbox (archive), and
why. The model is told to use catalog names only; filter_labels_to_catalog()
enforces that before anything reaches the mail provider.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, field_validator

from triage_agent.llm_client import LLMClient
from triage_agent.models import EmailActions, EmailAnalysis, Label, Memory
from triage_agent.prompt_renderer import (
    build_memory_context,
    format_label_catalog,
    render_actions_prompts,
)

logger = logging.getLogger(__name__)

ACTIONS_SCHEMA_NAME = 'email_actions'

ACTIONS_SCHEMA = {
    'type': 'object',
    'properties': {
        'labels': {'type': 'array', 'items': {'type': 'string'}},
        'bypass_inbox': {'type': 'boolean'},
        'reasoning': {'type': 'string'},
    },
    'required': ['labels', 'bypass_inbox', 'reasoning'],
    'additionalProperties': False,
}


class ActionsPayload(BaseModel):
    """Validated shape of the decision response."""
    model_config = ConfigDict(extra='forbid', strict=True)

    labels: List[str]
    bypass_inbox: bool
    reasoning: str

    @field_validator('reasoning')
    @classmethod
    def require_reasoning(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reasoning must not be empty")
        return v.strip()


@dataclass
class LabelFilterResult:
    """Catalog filtering outcome: what is kept and what was dropped."""
    labels: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


def filter_labels_to_catalog(labels: Sequence[str], catalog: Sequence[Label]) -> LabelFilterResult:
    """
    Keep only label names that exist in the catalog.

    Exact matches win; otherwise a case-insensitive match is mapped to the
    catalog's spelling. Duplicates are removed, model order is preserved.
    """
    exact = {label.name for label in catalog}
    folded = {}
    for label in catalog:
        folded.setdefault(label.name.strip().casefold(), label.name)

    result = LabelFilterResult()
    for name in labels:
        if name in exact:
            resolved = name
        else:
            resolved = folded.get(name.strip().casefold())
        if resolved is None:
            result.dropped.append(name)
        elif resolved not in result.labels:
            result.labels.append(resolved)
    return result


class DecisionMaker:
    """Runs the decision stage."""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    def decide(
        self,
        sender: str,
        subject: str,
        analysis: EmailAnalysis,
        label_catalog: Sequence[Label],
        memories: Sequence[Memory],
        prompt_override: Optional[str] = None
    ) -> EmailActions:
        """
        Decide labels and archiving for one analyzed message.

        Args:
            sender: From header
            subject: Subject header
            analysis: Output of the classification stage
            label_catalog: Account labels, in catalog order
            memories: Memory context (most recent instance per tier, recent dailies)
            prompt_override: Account's replacement for the default instructions

        Returns:
            EmailActions whose labels are a subset of the catalog and whose
            reasoning is non-empty

        Raises:
            MalformedModelResponse: Empty or invalid model output
        """
        system_prompt, user_prompt = render_actions_prompts(
            sender=sender,
            subject=subject,
            slug=analysis.slug,
            keywords=analysis.keywords,
            summary=analysis.summary,
            label_catalog=format_label_catalog(label_catalog),
            memory_context=build_memory_context(memories),
            override=prompt_override,
        )
        payload = self.llm.complete_structured(
            system_prompt, user_prompt, ActionsPayload,
            schema=ACTIONS_SCHEMA, schema_name=ACTIONS_SCHEMA_NAME,
        )

        filtered = filter_labels_to_catalog(payload.labels, label_catalog)
        if filtered.dropped:
            logger.warning(f"Dropped labels not in catalog: {filtered.dropped}")

        logger.info(f"Decision: labels={filtered.labels}, bypass_inbox={payload.bypass_inbox}")
        return EmailActions(
            labels=filtered.labels,
            bypass_inbox=payload.bypass_inbox,
            reasoning=payload.reasoning,
        )
