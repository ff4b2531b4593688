"""
Configuration loading for the triage agent.

Configuration lives in a single YAML file (default: config/config.yaml). Secrets
are never stored in the YAML; it only names the environment variables that hold
them, and those variables may be pre-loaded from a .env file.

Environment overrides use the form TRIAGE_AGENT_<SECTION>_<KEY>, for example:
    TRIAGE_AGENT_LLM_MODEL=gpt-4o-mini  -> config['llm']['model']
    TRIAGE_AGENT_QUEUE_WORKERS=8        -> config['queue']['workers']

Values are passed to the pydantic schema as strings; pydantic coerces them to
the declared field types.

Usage:
    >>> from triage_agent.config import ConfigLoader
    >>> config = ConfigLoader('config/config.yaml').load()
    >>> config.pipeline.max_body_chars
    2000
"""
import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from triage_agent.config_schema import AppConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = 'TRIAGE_AGENT_'


class ConfigError(Exception):
    """
    Raised when configuration loading or validation fails.

    This exception is raised for:
    - Missing config files
    - Invalid YAML syntax
    - Schema validation failures
    - Missing required environment variables (secrets)
    """
    pass


def load_yaml_config(path: str) -> Dict[str, Any]:
    """
    Load and parse a YAML configuration file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Dictionary containing the parsed configuration (empty dict for an empty file)

    Raises:
        ConfigError: If the file doesn't exist or contains invalid YAML
    """
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"YAML parse error in {path}: {e}")
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return config


def load_env_vars(env_path: str) -> bool:
    """
    Load environment variables from a .env file if it exists.

    Existing environment variables are not overridden.

    Returns:
        True if a file was loaded, False if it does not exist
    """
    if not os.path.exists(env_path):
        return False
    load_dotenv(env_path, override=False)
    return True


def require_env(var_name: str) -> str:
    """
    Read a required secret from the environment.

    Raises:
        ConfigError: If the variable is unset or empty
    """
    value = os.environ.get(var_name)
    if not value:
        raise ConfigError(f"Required environment variable '{var_name}' is not set")
    return value


class ConfigLoader:
    """
    Loads config.yaml, applies TRIAGE_AGENT_* environment overrides and
    validates the result against AppConfig.

    Args:
        config_path: Path to the YAML configuration file. A missing file is an
            error unless allow_missing is True, in which case defaults are used.
        allow_missing: Fall back to schema defaults when the file does not exist
    """

    def __init__(self, config_path: str = 'config/config.yaml', allow_missing: bool = False):
        self.config_path = Path(config_path)
        self.allow_missing = allow_missing

    @staticmethod
    def _apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
        sections = set(AppConfig.model_fields.keys())
        applied = []
        for env_key, env_value in os.environ.items():
            if not env_key.startswith(ENV_PREFIX):
                continue
            remainder = env_key[len(ENV_PREFIX):].lower()
            section = next((s for s in sections if remainder.startswith(s + '_')), None)
            if section is None:
                logger.warning(f"Unknown configuration section in environment variable: {env_key}")
                continue
            key = remainder[len(section) + 1:]
            section_dict = config_dict.setdefault(section, {})
            if not isinstance(section_dict, dict):
                raise ConfigError(f"Config section '{section}' must be a mapping")
            section_dict[key] = env_value
            applied.append(f"{section}.{key}")
        if applied:
            logger.info(f"Applied {len(applied)} environment variable overrides: {', '.join(applied)}")
        return config_dict

    def load(self) -> AppConfig:
        """
        Load and validate the configuration.

        Raises:
            ConfigError: If the file cannot be read or validation fails
        """
        if self.config_path.exists():
            logger.info(f"Loading configuration from {self.config_path}")
            raw_config = load_yaml_config(str(self.config_path))
        elif self.allow_missing:
            logger.info(f"Configuration file {self.config_path} not found, using defaults")
            raw_config = {}
        else:
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        raw_config = self._apply_env_overrides(raw_config)
        return self.load_from_dict(raw_config)

    @staticmethod
    def load_from_dict(config_dict: Optional[Dict[str, Any]]) -> AppConfig:
        """
        Validate a configuration dictionary (useful for tests).

        Raises:
            ConfigError: If schema validation fails
        """
        try:
            return AppConfig(**(config_dict or {}))
        except ValidationError as e:
            problems = '; '.join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            error_msg = f"Configuration validation failed: {problems}"
            logger.error(error_msg)
            raise ConfigError(error_msg) from e
