"""
Morning and evening wrapup reports.

Stateless digests over a fixed window ending now:

    morning   yesterday at wrapup.morning_since_hour (17:00) -> now
    evening   today at wrapup.evening_since_hour (08:00) -> now

Hours are interpreted in the scheduler timezone. An empty window produces no
report. Reports do not depend on earlier reports.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from triage_agent.config_schema import WrapupConfig
from triage_agent.llm_client import LLMClient
from triage_agent.models import PromptType, WrapupReport, WrapupType, utc_now
from triage_agent.prompt_renderer import render_wrapup_prompts
from triage_agent.storage import TriageStore

logger = logging.getLogger(__name__)


def wrapup_window(
    report_type: WrapupType,
    now: datetime,
    tz: ZoneInfo,
    config: Optional[WrapupConfig] = None
) -> Tuple[datetime, datetime]:
    """The [since, now) window a report of this type covers, in UTC."""
    config = config or WrapupConfig()
    local_now = now.astimezone(tz)
    if WrapupType(report_type) == WrapupType.MORNING:
        day = local_now.date() - timedelta(days=1)
        hour = config.morning_since_hour
    else:
        day = local_now.date()
        hour = config.evening_since_hour
    since = datetime(day.year, day.month, day.day, hour, tzinfo=tz)
    return since.astimezone(timezone.utc), now.astimezone(timezone.utc)


class WrapupReporter:
    """
    Args:
        store: Record and report store
        llm: Language-model client
        config: Window hours and prompt limits
        timezone_name: IANA zone for the window hours
        max_tokens: Completion cap for the report
    """

    def __init__(
        self,
        store: TriageStore,
        llm: LLMClient,
        config: Optional[WrapupConfig] = None,
        timezone_name: str = 'UTC',
        max_tokens: Optional[int] = None
    ):
        self.store = store
        self.llm = llm
        self.config = config or WrapupConfig()
        self.tz = ZoneInfo(timezone_name)
        self.max_tokens = max_tokens

    def generate(
        self,
        account_id: int,
        report_type: WrapupType,
        now: Optional[datetime] = None
    ) -> Optional[WrapupReport]:
        """
        Generate and store one report.

        Returns:
            The stored report, or None when the window held no processed messages
        """
        report_type = WrapupType(report_type)
        now = now or utc_now()
        since, until = wrapup_window(report_type, now, self.tz, self.config)

        records = self.store.list_processed_between(account_id, since, until)
        if not records:
            logger.info(f"No messages processed since {since}, skipping {report_type.value} wrapup")
            return None

        system_prompt, user_prompt = render_wrapup_prompts(
            records, report_type,
            override=self.store.get_prompt_text(account_id, PromptType.WRAPUP_REPORT),
            max_emails=self.config.max_emails_in_prompt,
        )
        content = self.llm.complete(system_prompt, user_prompt, max_tokens=self.max_tokens).strip()

        report = self.store.create_wrapup_report(account_id, report_type, len(records), content, now)
        logger.info(f"{report_type.value.capitalize()} wrapup created ({len(records)} emails)")
        return report
