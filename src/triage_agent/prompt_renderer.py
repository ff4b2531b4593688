"""
Prompt rendering for every language-model call.

All prompts are Jinja2 templates kept in DEFAULT_TEMPLATES and rendered through
one Environment (StrictUndefined, no autoescaping). Each render_* function takes
the stage's inputs plus an optional per-account override; an override replaces
the stage's default instructions, while the material the model works on (the
email, the label catalog, the lower-tier memories) is always supplied.

Line formatting for lists (label catalog, email summaries, memory sections) is
done in Python so the exact line shapes are easy to test.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateError

from triage_agent.models import Label, Memory, MemoryTier, ProcessedMessage, WrapupType, format_timestamp

logger = logging.getLogger(__name__)


class PromptRendererError(Exception):
    """Base exception for prompt renderer errors."""
    pass


class PromptTemplateError(PromptRendererError):
    """Raised when a prompt template cannot be rendered."""
    pass


ANALYZE_SYSTEM = """\
You are an email classification assistant. Analyze the email and provide a JSON response with:
1. A snake_case_slug that categorizes this type of email (e.g., "marketing_newsletter", "invoice_due", "meeting_request")
2. An array of 3-5 keywords that describe the email content
3. A single line summary (max 100 chars)

Respond ONLY with valid JSON in this format:
{"slug": "example_slug", "keywords": ["word1", "word2", "word3"], "summary": "Brief summary here"}"""

ANALYZE_USER = """\
From: {{ sender }}
Subject: {{ subject }}

Body:
{{ body }}

Past slugs used from this sender: {{ past_slugs | json }}

Analyze this email and provide the slug, keywords, and summary."""

ACTIONS_SYSTEM = """\
{% if override %}
{{ override }}

Available labels:
{{ labels }}
{% else %}
You are an email automation assistant. Based on the email analysis and past learnings, determine what actions to take and respond with JSON.

Available labels:
{{ labels }}

Decide:
1. Which labels to apply (use exact label names from the list above, only when they clearly match)
2. Whether to bypass the inbox (archive immediately)
3. Brief reasoning for your decisions

Use the learnings from past email processing (provided below) to make better decisions about labeling and archiving.
{% endif %}"""

ACTIONS_USER = """\
From: {{ sender }}
Subject: {{ subject }}
Slug: {{ slug }}
Keywords: {{ keywords | json }}
Summary: {{ summary }}

{{ memory_context }}What actions should be taken for this email?"""

DAILY_SYSTEM = """\
{% if override %}
{{ override }}
{% else %}
You are an AI assistant creating learnings to improve future email processing decisions. Your goal is NOT to summarize what happened, but to extract insights that will help process emails better tomorrow.

Analyze the emails and their categorizations, then create a memory focused on:

**Key learnings for tomorrow:**
- Specific rules to apply (e.g., "emails from @company.com with 'invoice' should get Urgent label")
- Sender patterns to remember
- Content patterns that indicate specific labels

**What worked well:**
- Categorization decisions that seem correct and should be repeated
- Patterns successfully identified (e.g., "newsletters from X always get archived")
- Sender behaviors correctly recognized

**What to improve:**
- Emails that may have been miscategorized and why
- Patterns that were missed or incorrectly applied
- Better ways to handle similar emails in the future

IMPORTANT: Keep your response CONCISE - aim for around 100 words maximum. Be specific and actionable. Focus only on the most important insights that will directly improve future email processing. Format as concise bullet points.
{% endif %}
{% if labels %}

Available labels (ONLY reference these exact label names in your learnings):
{{ labels }}
{% endif %}"""

DAILY_USER = """\
Review these {{ total }} processed emails and extract learnings to improve future email handling:

{{ email_lines }}
{% if feedback_lines %}

**IMPORTANT - HUMAN FEEDBACK (PRIORITIZE THESE):**
The human provided explicit feedback on these emails. These instructions are CRITICAL and must be prominently included in your memory:

{{ feedback_lines }}

These human corrections should be given highest priority in your learnings.
{% endif %}

Focus on creating actionable insights that will help process similar emails better in the future. What patterns should be reinforced? What should be done differently?"""

CONSOLIDATE_FIRST_SYSTEM = """\
You are an AI assistant creating the first {{ period }} email processing memory. Review the provided memories and create insights focused on:

1. Identifying overarching patterns and trends
2. Highlighting important behavioral patterns
3. Noting recurring themes
4. Providing strategic insights for email management
5. Suggesting process improvements

IMPORTANT: Keep your response concise - aim for around 800 words maximum. Focus on the most important actionable patterns. Format as bullet points."""

CONSOLIDATE_EVOLVE_SYSTEM = """\
You are an AI assistant evolving a {{ period }} email processing memory. Your task is to UPDATE the existing memory by incorporating new insights from recent lower-level memories.

DO NOT write a new memory from scratch. Instead:

**Reinforce patterns:**
- Keep and strengthen insights that are still relevant and being validated by new data
- Note when patterns continue or become more pronounced

**Amend differences:**
- Update or refine insights when new data shows changes in patterns
- Add new learnings that weren't in the previous memory
- Remove or de-emphasize insights that are no longer relevant

**Maintain continuity:**
- Build on the existing memory's structure and insights
- Show evolution over time rather than replacement
- Keep the most valuable long-term learnings

IMPORTANT: Keep your response concise - aim for around 400 words maximum. Focus only on the most significant changes and patterns. The goal is an EVOLVED memory that's better than the previous one, not a brand new memory. Format as bullet points."""

CONSOLIDATE_FIRST_USER = """\
Create the first {{ period }} memory by consolidating these {{ count }} memories:

{{ memory_sections }}

Provide a concise {{ period }} summary with key patterns and strategic insights."""

CONSOLIDATE_EVOLVE_USER = """\
**CURRENT {{ period | upper }} MEMORY (to be evolved):**
Period: {{ previous_start }} to {{ previous_end }}
{{ previous_content }}

**NEW INSIGHTS FROM RECENT MEMORIES ({{ count }} new):**
{{ memory_sections }}

Task: Evolve the current memory by:
1. Reinforcing patterns that continue in the new memories
2. Updating insights where new data shows changes
3. Adding new learnings not present in current memory
4. Removing outdated insights

Output an evolved {{ period }} memory that builds on the current one."""

WRAPUP_SYSTEM = """\
You are an AI assistant creating an email processing summary report. Review the emails and provide a concise wrapup including:
1. Total number of emails processed
2. Most common senders and types
3. Most interesting or important emails (based on subject and sender) and why
4. Labels applied summary
5. Any notable patterns or important emails
6. Quick overview of what was archived vs kept in inbox

Keep it brief and actionable - this is a daily digest for quick review."""

WRAPUP_USER = """\
Create a {{ report_type }} wrapup report for these {{ total }} emails processed {{ timeframe }}:

{{ email_lines }}

Provide a brief, scannable summary."""

DEFAULT_TEMPLATES: Dict[str, str] = {
    'analyze_system': ANALYZE_SYSTEM,
    'analyze_user': ANALYZE_USER,
    'actions_system': ACTIONS_SYSTEM,
    'actions_user': ACTIONS_USER,
    'daily_system': DAILY_SYSTEM,
    'daily_user': DAILY_USER,
    'consolidate_first_system': CONSOLIDATE_FIRST_SYSTEM,
    'consolidate_evolve_system': CONSOLIDATE_EVOLVE_SYSTEM,
    'consolidate_first_user': CONSOLIDATE_FIRST_USER,
    'consolidate_evolve_user': CONSOLIDATE_EVOLVE_USER,
    'wrapup_system': WRAPUP_SYSTEM,
    'wrapup_user': WRAPUP_USER,
}


def _json_filter(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _build_environment() -> Environment:
    env = Environment(
        loader=DictLoader(DEFAULT_TEMPLATES),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=False,
    )
    env.filters['json'] = _json_filter
    return env


_environment = _build_environment()


def render(template_name: str, **context: Any) -> str:
    """
    Render one of DEFAULT_TEMPLATES.

    Raises:
        PromptTemplateError: If the template is unknown or rendering fails
    """
    try:
        rendered = _environment.get_template(template_name).render(**context)
    except TemplateError as e:
        raise PromptTemplateError(f"Failed to render prompt template '{template_name}': {e}") from e
    return rendered.strip()


# Line formatting

def format_label_catalog(labels: Sequence[Label]) -> str:
    """
    Render the label catalog, one label per line, in catalog order.

    Example line: - "Finance": Bills and invoices (e.g. invoice due, receipt)
    """
    lines = []
    for label in labels:
        line = f'- "{label.name}"'
        if label.description:
            line += f": {label.description}"
        if label.reasons:
            line += f" (e.g. {', '.join(label.reasons)})"
        lines.append(line)
    return '\n'.join(lines)


def format_label_names(labels: Sequence[Label]) -> str:
    """Label list for memory prompts: '- name: description'."""
    return '\n'.join(
        f"- {label.name}: {label.description}" if label.description else f"- {label.name}"
        for label in labels
    )


def build_memory_context(memories: Sequence[Memory]) -> str:
    """
    Concatenate memories into the decision stage's context block.

    Each memory becomes a section tagged with its tier; an empty sequence gives
    an empty string so the user prompt carries no context header.
    """
    if not memories:
        return ''
    context = 'Past learnings from email processing:\n\n'
    for memory in memories:
        context += f"**{memory.tier.value.upper()} Memory:**\n{memory.content}\n\n"
    return context


def _date(value) -> str:
    return format_timestamp(value)[:10]


# Stage prompts

def render_analyze_prompts(
    sender: str,
    subject: str,
    body: str,
    past_slugs: Sequence[str],
    override: Optional[str] = None
) -> Tuple[str, str]:
    system_prompt = override if override else render('analyze_system')
    user_prompt = render(
        'analyze_user', sender=sender, subject=subject, body=body, past_slugs=list(past_slugs)
    )
    return system_prompt, user_prompt


def render_actions_prompts(
    sender: str,
    subject: str,
    slug: str,
    keywords: Sequence[str],
    summary: str,
    label_catalog: str,
    memory_context: str,
    override: Optional[str] = None
) -> Tuple[str, str]:
    system_prompt = render('actions_system', override=override or '', labels=label_catalog)
    user_prompt = render(
        'actions_user', sender=sender, subject=subject, slug=slug,
        keywords=list(keywords), summary=summary, memory_context=memory_context,
    )
    return system_prompt, user_prompt


def render_daily_memory_prompts(
    records: Sequence[ProcessedMessage],
    labels: Sequence[Label],
    override: Optional[str] = None,
    max_emails: int = 50
) -> Tuple[str, str]:
    """
    Prompts for turning a day's processed records into learnings.

    Human feedback is collected from every listed record into its own
    high-priority section rather than left inline with the email lines.
    """
    email_lines: List[str] = []
    feedback_lines: List[str] = []
    for record in records[:max_emails]:
        reasoning = f" | AI Reasoning: {record.reasoning}" if record.reasoning else ''
        email_lines.append(
            f"- From: {record.sender} | Subject: {record.subject} | Slug: {record.slug} "
            f"| Labels: {_json_filter(record.labels_applied)} "
            f"| Archived: {'true' if record.bypassed_inbox else 'false'} "
            f"| Keywords: {_json_filter(record.keywords)}{reasoning}"
        )
        if record.human_feedback:
            feedback_lines.append(
                f"- Email from {record.sender} (Subject: {record.subject}): {record.human_feedback}"
            )
    if len(records) > max_emails:
        email_lines.append(f"... and {len(records) - max_emails} more emails")

    system_prompt = render('daily_system', override=override or '', labels=format_label_names(labels))
    user_prompt = render(
        'daily_user', total=len(records),
        email_lines='\n'.join(email_lines), feedback_lines='\n'.join(feedback_lines),
    )
    return system_prompt, user_prompt


def render_consolidation_prompts(
    tier: MemoryTier,
    previous: Optional[Memory],
    new_memories: Sequence[Memory],
    override: Optional[str] = None
) -> Tuple[str, str]:
    """
    Prompts for consolidating lower-tier memories into a tier memory.

    With a previous instance of the tier the model is asked to evolve it;
    without one it synthesizes the first instance.
    """
    period = tier.value
    memory_sections = '\n\n'.join(
        f"New Memory {i} ({_date(m.start_date)} to {_date(m.end_date)}):\n{m.content}"
        for i, m in enumerate(new_memories, start=1)
    )

    if previous is not None:
        system_prompt = override or render('consolidate_evolve_system', period=period)
        user_prompt = render(
            'consolidate_evolve_user', period=period, count=len(new_memories),
            previous_start=_date(previous.start_date), previous_end=_date(previous.end_date),
            previous_content=previous.content, memory_sections=memory_sections,
        )
    else:
        system_prompt = override or render('consolidate_first_system', period=period)
        user_prompt = render(
            'consolidate_first_user', period=period, count=len(new_memories),
            memory_sections=memory_sections,
        )
    return system_prompt, user_prompt


def render_wrapup_prompts(
    records: Sequence[ProcessedMessage],
    report_type: WrapupType,
    override: Optional[str] = None,
    max_emails: int = 100
) -> Tuple[str, str]:
    email_lines = []
    for record in records[:max_emails]:
        archived = ' [ARCHIVED]' if record.bypassed_inbox else ''
        email_lines.append(
            f"- {record.sender}: {record.subject} | Labels: {_json_filter(record.labels_applied)}{archived}"
        )
    if len(records) > max_emails:
        email_lines.append(f"... and {len(records) - max_emails} more emails")

    timeframe = 'today' if report_type == WrapupType.EVENING else 'overnight'
    system_prompt = override or render('wrapup_system')
    user_prompt = render(
        'wrapup_user', report_type=WrapupType(report_type).value, total=len(records),
        timeframe=timeframe, email_lines='\n'.join(email_lines),
    )
    return system_prompt, user_prompt
