"""
Configuration facade.

Central access point for configuration values. Modules that need configuration
receive the relevant section objects through their constructors; the facade is
what the CLI and runtime wiring use to obtain those sections and the secrets the
YAML only names.

Usage:
    >>> from triage_agent.settings import settings
    >>> settings.initialize('config/config.yaml', '.env')
    >>> settings.get_llm_config().model
    'gpt-4o-mini'
    >>> api_key = settings.get_llm_api_key()
"""
import logging
from typing import Optional

from triage_agent.config import ConfigError, ConfigLoader, load_env_vars, require_env
from triage_agent.config_schema import (
    AppConfig,
    GmailConfig,
    LLMConfig,
    MemoryConfig,
    PipelineConfig,
    QueueConfig,
    SchedulerConfig,
    StorageConfig,
    WrapupConfig,
)

logger = logging.getLogger(__name__)


class Settings:
    """
    Singleton configuration facade.

    All code outside the config package should go through this instance:
        from triage_agent.settings import settings
    """

    _instance: Optional['Settings'] = None
    _config: Optional[AppConfig] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def initialize(
        self,
        config_path: str = 'config/config.yaml',
        env_path: str = '.env',
        allow_missing: bool = False
    ) -> None:
        """
        Load configuration once at startup.

        Args:
            config_path: YAML configuration file
            env_path: Optional .env file with secrets
            allow_missing: Use schema defaults when config_path does not exist

        Raises:
            ConfigError: If loading or validation fails
        """
        if self._config is not None:
            logger.warning("Settings already initialized, ignoring re-initialization")
            return

        if load_env_vars(env_path):
            logger.info(f"Loaded environment variables from {env_path}")

        self._config = ConfigLoader(config_path, allow_missing=allow_missing).load()
        logger.info("Settings facade initialized successfully")

    def load_config(self, config: AppConfig) -> None:
        """Install an already validated configuration (tests, embedding)."""
        self._config = config

    def reset(self) -> None:
        """Forget the loaded configuration."""
        self._config = None

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    def _ensure_initialized(self) -> AppConfig:
        if self._config is None:
            logger.info("Settings not initialized, loading configuration lazily")
            self.initialize(allow_missing=True)
        return self._config

    @property
    def config(self) -> AppConfig:
        return self._ensure_initialized()

    # Section getters

    def get_llm_config(self) -> LLMConfig:
        return self._ensure_initialized().llm

    def get_gmail_config(self) -> GmailConfig:
        return self._ensure_initialized().gmail

    def get_storage_config(self) -> StorageConfig:
        return self._ensure_initialized().storage

    def get_pipeline_config(self) -> PipelineConfig:
        return self._ensure_initialized().pipeline

    def get_queue_config(self) -> QueueConfig:
        return self._ensure_initialized().queue

    def get_memory_config(self) -> MemoryConfig:
        return self._ensure_initialized().memory

    def get_wrapup_config(self) -> WrapupConfig:
        return self._ensure_initialized().wrapup

    def get_scheduler_config(self) -> SchedulerConfig:
        return self._ensure_initialized().scheduler

    def get_logging_overrides(self) -> dict:
        return dict(self._ensure_initialized().logging)

    # Secrets

    def get_llm_api_key(self) -> str:
        """
        API key for the language-model service.

        Raises:
            ConfigError: If the configured environment variable is not set
        """
        return require_env(self.get_llm_config().api_key_env)

    def get_google_client_id(self) -> str:
        return require_env(self.get_gmail_config().client_id_env)

    def get_google_client_secret(self) -> str:
        return require_env(self.get_gmail_config().client_secret_env)


settings = Settings()

__all__ = ['Settings', 'settings', 'ConfigError']
