"""
Configuration schema for the triage agent.

Pydantic models describing config/config.yaml. Every section has defaults, so an
empty file (or none at all, see ConfigLoader.allow_missing) yields a runnable
configuration as long as the referenced secrets are present in the environment.
"""
from typing import Any, Dict, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class LLMConfig(BaseModel):
    """OpenAI-compatible chat completion endpoint."""
    api_url: str = Field(default="https://api.openai.com/v1", description="Base URL; /chat/completions is appended")
    api_key_env: str = Field(default="OPENAI_API_KEY", description="Environment variable holding the API key")
    model: str = Field(default="gpt-4o-mini", description="Model used for every stage")
    temperature: Optional[float] = Field(default=None, description="Sampling temperature (omitted when unset)")
    max_completion_tokens: int = Field(default=10000, description="Token cap for structured stages")
    memory_max_completion_tokens: int = Field(default=20000, description="Token cap for memory/wrapup generation")
    timeout_seconds: float = Field(default=60.0, description="Per-request timeout")
    retry_attempts: int = Field(default=3, description="Attempts for transient API failures")
    retry_delay_seconds: float = Field(default=1.0, description="Base delay for exponential backoff")

    @field_validator('temperature')
    @classmethod
    def validate_temperature(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not (0.0 <= v <= 2.0):
            raise ValueError(f"temperature must be between 0.0 and 2.0, got {v}")
        return v

    @field_validator('retry_attempts', 'max_completion_tokens', 'memory_max_completion_tokens')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {v}")
        return v


class GmailConfig(BaseModel):
    """Gmail API access and OAuth client used for token refresh."""
    client_id_env: str = Field(default="GOOGLE_CLIENT_ID")
    client_secret_env: str = Field(default="GOOGLE_CLIENT_SECRET")
    token_uri: str = Field(default="https://oauth2.googleapis.com/token")
    inbox_label: str = Field(default="INBOX", description="Label watched for additions and removed on archive")
    history_page_size: int = Field(default=500, ge=1, le=500)


class StorageConfig(BaseModel):
    database_path: str = Field(default="data/triage.db", description="SQLite file shared by the store and the work queue")


class PipelineConfig(BaseModel):
    """Per-message pipeline knobs."""
    max_body_chars: int = Field(default=2000, ge=1, description="Body truncation before classification")
    past_slug_limit: int = Field(default=5, ge=0, description="Recent slugs from the same sender used as few-shot hints")
    daily_context_limit: int = Field(default=7, ge=0, description="Daily memories included in the decision context")
    cursor_commit: Literal['before_enqueue', 'after_enqueue'] = Field(
        default='after_enqueue',
        description="Persist the new sync cursor before enqueuing (may drop a batch on crash) "
                    "or after (may re-detect a batch, absorbed by idempotency)",
    )


class QueueConfig(BaseModel):
    """Durable work queue and consumer pool."""
    max_attempts: int = Field(default=5, ge=1, description="Deliveries before an item is dead-lettered")
    visibility_timeout_seconds: int = Field(default=300, ge=1, description="Lease length; expired leases are redelivered")
    retry_base_delay_seconds: float = Field(default=30.0, ge=0)
    retry_max_delay_seconds: float = Field(default=3600.0, ge=0)
    batch_size: int = Field(default=10, ge=1)
    workers: int = Field(default=4, ge=1)

    @model_validator(mode='after')
    def validate_delays(self) -> 'QueueConfig':
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self


class MemoryConfig(BaseModel):
    max_emails_in_prompt: int = Field(default=50, ge=1)


class WrapupConfig(BaseModel):
    morning_since_hour: int = Field(default=17, ge=0, le=23, description="Morning window starts yesterday at this hour")
    evening_since_hour: int = Field(default=8, ge=0, le=23, description="Evening window starts today at this hour")
    max_emails_in_prompt: int = Field(default=100, ge=1)


class SchedulerConfig(BaseModel):
    timezone: str = Field(default="UTC", description="IANA zone used for day/week/month/year boundaries")
    sweep_workers: int = Field(default=1, ge=1, description="Accounts processed concurrently within one sweep")

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v


class AppConfig(BaseModel):
    """Complete configuration (config/config.yaml)."""
    llm: LLMConfig = Field(default_factory=LLMConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    wrapup: WrapupConfig = Field(default_factory=WrapupConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: Dict[str, Any] = Field(default_factory=dict, description="Passed to init_logging as overrides")
