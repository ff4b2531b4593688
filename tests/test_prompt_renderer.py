"""
Tests for prompt rendering: stage prompts, overrides and line formatting.
"""
import pytest

from triage_agent.models import Label, Memory, MemoryTier, WrapupType
from triage_agent.prompt_renderer import (
    PromptTemplateError,
    build_memory_context,
    format_label_catalog,
    format_label_names,
    render,
    render_actions_prompts,
    render_analyze_prompts,
    render_consolidation_prompts,
    render_daily_memory_prompts,
    render_wrapup_prompts,
)
from conftest import make_record, utc


CATALOG = [
    Label(name='Finance', description='Bills and invoices', reasons=['invoice due', 'receipt']),
    Label(name='Newsletters'),
]


def _memory(tier, content, start, end):
    return Memory(account_id=7, tier=tier, content=content, start_date=start, end_date=end)


class TestFormatting:

    def test_label_catalog_lines(self):
        assert format_label_catalog(CATALOG) == (
            '- "Finance": Bills and invoices (e.g. invoice due, receipt)\n'
            '- "Newsletters"'
        )

    def test_label_names(self):
        assert format_label_names(CATALOG) == '- Finance: Bills and invoices\n- Newsletters'

    def test_memory_context_empty(self):
        assert build_memory_context([]) == ''

    def test_memory_context_sections(self):
        context = build_memory_context([
            _memory(MemoryTier.WEEKLY, 'weekly insight', utc(2025, 1, 6), utc(2025, 1, 13)),
            _memory(MemoryTier.DAILY, 'daily insight', utc(2025, 1, 12), utc(2025, 1, 13)),
        ])
        assert context == (
            'Past learnings from email processing:\n\n'
            '**WEEKLY Memory:**\nweekly insight\n\n'
            '**DAILY Memory:**\ndaily insight\n\n'
        )


class TestAnalyzePrompts:

    def test_default_prompts(self):
        system, user = render_analyze_prompts('a@b.com', 'Hello', 'Body text', ['invoice_due'])
        assert 'snake_case_slug' in system
        assert user.startswith('From: a@b.com\nSubject: Hello\n\nBody:\nBody text')
        assert 'Past slugs used from this sender: ["invoice_due"]' in user

    def test_override_replaces_system_prompt_only(self):
        system, user = render_analyze_prompts('a@b.com', 'Hello', 'Body', [], override='Custom rules')
        assert system == 'Custom rules'
        assert 'Past slugs used from this sender: []' in user

    def test_body_is_not_escaped(self):
        _system, user = render_analyze_prompts('a@b.com', 'Q&A <today>', '<p>hi</p>', [])
        assert 'Subject: Q&A <today>' in user
        assert '<p>hi</p>' in user


class TestActionsPrompts:

    def test_default_prompt_lists_catalog(self):
        system, user = render_actions_prompts(
            'a@b.com', 'Invoice', 'invoice_due', ['invoice'], 'Invoice due',
            label_catalog=format_label_catalog(CATALOG), memory_context='',
        )
        assert 'Available labels:\n- "Finance": Bills and invoices' in system
        assert 'Whether to bypass the inbox' in system
        assert user.endswith('Summary: Invoice due\n\nWhat actions should be taken for this email?')

    def test_override_still_gets_catalog(self):
        system, _user = render_actions_prompts(
            'a@b.com', 'Invoice', 'invoice_due', ['invoice'], 'Invoice due',
            label_catalog='- "Finance"', memory_context='', override='Only label, never archive.',
        )
        assert system == 'Only label, never archive.\n\nAvailable labels:\n- "Finance"'

    def test_memory_context_precedes_question(self):
        context = build_memory_context([_memory(MemoryTier.DAILY, 'archive promos', utc(2025, 1, 8), utc(2025, 1, 9))])
        _system, user = render_actions_prompts(
            'a@b.com', 's', 'promo', ['sale'], 'Sale', label_catalog='', memory_context=context,
        )
        assert '**DAILY Memory:**\narchive promos\n\nWhat actions should be taken' in user


class TestDailyPrompts:

    def test_email_lines_and_feedback_section(self):
        records = [
            make_record(message_id='a', labels=['Finance'], bypassed_inbox=True),
            make_record(message_id='b', human_feedback='Never archive invoices'),
        ]
        system, user = render_daily_memory_prompts(records, CATALOG)
        assert 'Available labels (ONLY reference these exact label names in your learnings):' in system
        assert user.startswith('Review these 2 processed emails')
        assert (
            '- From: billing@acme.com | Subject: Your invoice is due | Slug: invoice_due '
            '| Labels: ["Finance"] | Archived: true | Keywords: ["invoice", "billing", "payment"] '
            '| AI Reasoning: Billing email'
        ) in user
        assert '**IMPORTANT - HUMAN FEEDBACK (PRIORITIZE THESE):**' in user
        assert '- Email from billing@acme.com (Subject: Your invoice is due): Never archive invoices' in user

    def test_no_feedback_section_without_feedback(self):
        _system, user = render_daily_memory_prompts([make_record()], [])
        assert 'HUMAN FEEDBACK' not in user

    def test_override_keeps_label_list(self):
        system, _user = render_daily_memory_prompts([make_record()], CATALOG, override='Be brief.')
        assert system.startswith('Be brief.')
        assert '- Finance: Bills and invoices' in system

    def test_truncates_to_max_emails(self):
        records = [make_record(message_id=str(i)) for i in range(5)]
        _system, user = render_daily_memory_prompts(records, [], max_emails=2)
        assert user.count('- From: ') == 2
        assert '... and 3 more emails' in user
        assert user.startswith('Review these 5 processed emails')


class TestConsolidationPrompts:

    def test_first_instance(self):
        dailies = [
            _memory(MemoryTier.DAILY, 'one', utc(2025, 1, 6), utc(2025, 1, 7)),
            _memory(MemoryTier.DAILY, 'two', utc(2025, 1, 7), utc(2025, 1, 8)),
        ]
        system, user = render_consolidation_prompts(MemoryTier.WEEKLY, None, dailies)
        assert 'creating the first weekly email processing memory' in system
        assert user.startswith('Create the first weekly memory by consolidating these 2 memories:')
        assert 'New Memory 1 (2025-01-06 to 2025-01-07):\none' in user
        assert 'New Memory 2 (2025-01-07 to 2025-01-08):\ntwo' in user

    def test_evolve_previous(self):
        previous = _memory(MemoryTier.MONTHLY, 'old monthly', utc(2024, 12, 1), utc(2025, 1, 1))
        weeklies = [_memory(MemoryTier.WEEKLY, 'week', utc(2025, 1, 6), utc(2025, 1, 13))]
        system, user = render_consolidation_prompts(MemoryTier.MONTHLY, previous, weeklies)
        assert 'evolving a monthly email processing memory' in system
        assert '**CURRENT MONTHLY MEMORY (to be evolved):**\nPeriod: 2024-12-01 to 2025-01-01\nold monthly' in user
        assert '**NEW INSIGHTS FROM RECENT MEMORIES (1 new):**' in user

    def test_override_replaces_system_prompt(self):
        system, _user = render_consolidation_prompts(
            MemoryTier.YEARLY, None, [_memory(MemoryTier.MONTHLY, 'm', utc(2024, 1, 1), utc(2024, 2, 1))],
            override='Yearly rules',
        )
        assert system == 'Yearly rules'


class TestWrapupPrompts:

    def test_evening_report(self):
        records = [make_record(message_id='a', bypassed_inbox=True), make_record(message_id='b', labels=[])]
        system, user = render_wrapup_prompts(records, WrapupType.EVENING)
        assert 'email processing summary report' in system
        assert user.startswith('Create a evening wrapup report for these 2 emails processed today:')
        assert '- billing@acme.com: Your invoice is due | Labels: ["Finance"] [ARCHIVED]' in user
        assert '- billing@acme.com: Your invoice is due | Labels: []' in user

    def test_morning_report_timeframe(self):
        _system, user = render_wrapup_prompts([make_record()], WrapupType.MORNING)
        assert 'processed overnight:' in user


def test_unknown_template_raises():
    with pytest.raises(PromptTemplateError):
        render('no_such_template')


def test_missing_variable_raises():
    with pytest.raises(PromptTemplateError):
        render('analyze_user', sender='a')
