"""
Classification stage: first of the two model calls for a message.

Produces an EmailAnalysis (category slug, keywords, one-line summary) from the
sender, subject and truncated body. The slugs recently assigned to the same
sender are included as few-shot grounding so recurring senders classify
consistently.

The model is constrained with a strict JSON schema and the response is
validated with AnalysisPayload; anything that does not validate raises
MalformedModelResponse and fails the work item.
"""
import logging
import re
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, field_validator

from triage_agent.llm_client import LLMClient
from triage_agent.models import EmailAnalysis
from triage_agent.prompt_renderer import render_analyze_prompts

logger = logging.getLogger(__name__)

ANALYSIS_SCHEMA_NAME = 'email_analysis'

MIN_KEYWORDS = 3
MAX_KEYWORDS = 5
MAX_SUMMARY_CHARS = 100
TRUNCATION_SUFFIX = '...'

ANALYSIS_SCHEMA = {
    'type': 'object',
    'properties': {
        'slug': {'type': 'string'},
        'keywords': {
            'type': 'array',
            'items': {'type': 'string'},
            'minItems': MIN_KEYWORDS,
            'maxItems': MAX_KEYWORDS,
        },
        'summary': {'type': 'string'},
    },
    'required': ['slug', 'keywords', 'summary'],
    'additionalProperties': False,
}


class AnalysisPayload(BaseModel):
    """Validated shape of the classification response."""
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)

    slug: str
    keywords: List[str]
    summary: str

    @field_validator('slug')
    @classmethod
    def normalize_slug(cls, v: str) -> str:
        slug = re.sub(r'[^a-z0-9]+', '_', v.lower()).strip('_')
        if not slug:
            raise ValueError("slug must contain at least one letter or digit")
        return slug

    @field_validator('keywords')
    @classmethod
    def normalize_keywords(cls, v: List[str]) -> List[str]:
        seen = []
        for keyword in v:
            keyword = keyword.strip()
            if keyword and keyword not in seen:
                seen.append(keyword)
        if not MIN_KEYWORDS <= len(seen) <= MAX_KEYWORDS:
            raise ValueError(
                f"expected {MIN_KEYWORDS}-{MAX_KEYWORDS} distinct keywords, got {len(seen)}"
            )
        return seen

    @field_validator('summary')
    @classmethod
    def normalize_summary(cls, v: str) -> str:
        summary = ' '.join(v.split())
        if not summary:
            raise ValueError("summary must not be empty")
        return summary[:MAX_SUMMARY_CHARS]


def truncate_body(body: str, max_chars: int = 2000) -> str:
    """Cap the body sent to the model; longer bodies get a '...' marker."""
    if len(body) > max_chars:
        return body[:max_chars] + TRUNCATION_SUFFIX
    return body


class EmailAnalyzer:
    """
    Runs the classification stage.

    Args:
        llm: Language-model client
        max_body_chars: Body truncation length
    """

    def __init__(self, llm: LLMClient, max_body_chars: int = 2000):
        self.llm = llm
        self.max_body_chars = max_body_chars

    def analyze(
        self,
        sender: str,
        subject: str,
        body: str,
        recent_slugs: Sequence[str],
        prompt_override: Optional[str] = None
    ) -> EmailAnalysis:
        """
        Classify one message.

        Args:
            sender: From header
            subject: Subject header
            body: Plain-text body (truncated here)
            recent_slugs: Most recent distinct slugs used for this sender
            prompt_override: Account's replacement for the default instructions

        Returns:
            EmailAnalysis with normalized slug, 3-5 distinct keywords and a summary of at
            most 100 characters

        Raises:
            MalformedModelResponse: Empty or invalid model output
        """
        system_prompt, user_prompt = render_analyze_prompts(
            sender, subject, truncate_body(body, self.max_body_chars), recent_slugs, prompt_override
        )
        payload = self.llm.complete_structured(
            system_prompt, user_prompt, AnalysisPayload,
            schema=ANALYSIS_SCHEMA, schema_name=ANALYSIS_SCHEMA_NAME,
        )
        logger.info(f"Classified message from {sender}: slug={payload.slug}")
        return EmailAnalysis(slug=payload.slug, keywords=list(payload.keywords), summary=payload.summary)
