"""
Logging configuration for the triage agent.

Initializes the application's logging once on startup so every component logs
with the same handlers and contextual fields (correlation_id, account_id,
job_id, message_id).

Configuration precedence (lowest to highest):
    1. DEFAULT_CONFIG
    2. Optional YAML file (a top-level `logging:` section or a bare mapping)
    3. Environment variables (LOG_LEVEL, LOG_FORMAT, LOG_FILE, ...)
    4. Runtime overrides (e.g. the CLI --log-level option)

Usage:
    >>> from triage_agent.logging_config import init_logging
    >>> init_logging(overrides={'level': 'DEBUG', 'format': 'json'})
    >>> import logging
    >>> logging.getLogger('triage_agent.processor').info("context is added automatically")
"""
import copy
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from triage_agent.logging_context import CONTEXT_FIELDS, get_logging_context

ROOT_LOGGER_NAME = 'triage_agent'

DEFAULT_CONFIG = {
    'level': 'INFO',
    'format': 'plain',  # 'plain' or 'json'
    'handlers': {
        'console': {
            'enabled': True,
            'level': 'INFO'
        },
        'file': {
            'enabled': True,
            'path': 'logs/triage_agent.log',
            'level': 'INFO',
            'max_bytes': 10 * 1024 * 1024,
            'backup_count': 5
        },
        'json_file': {
            'enabled': False,
            'path': 'logs/triage_agent.jsonl',
            'level': 'INFO'
        }
    }
}

ENV_VAR_MAPPING = {
    'LOG_LEVEL': ('level',),
    'LOG_FORMAT': ('format',),
    'LOG_FILE': ('handlers', 'file', 'path'),
    'LOG_CONSOLE': ('handlers', 'console', 'enabled'),
    'LOG_FILE_ENABLED': ('handlers', 'file', 'enabled'),
    'LOG_JSON_FILE': ('handlers', 'json_file', 'enabled'),
    'LOG_JSON_PATH': ('handlers', 'json_file', 'path'),
}

BOOLEAN_ENV_VARS = {'LOG_CONSOLE', 'LOG_FILE_ENABLED', 'LOG_JSON_FILE'}

PLAIN_FORMAT = '%(asctime)s %(levelname)-8s [%(correlation_id)s] [%(account_id)s] [%(component)s] %(message)s'


class JSONFormatter(logging.Formatter):
    """Formats records as one JSON object per line, context fields included."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'message': record.getMessage(),
            'component': getattr(record, 'component', record.name),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != 'N/A':
                log_data[field] = value
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data
        return json.dumps(log_data, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Adds the current logging context and a short component name to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_logging_context()
        for field in CONTEXT_FIELDS:
            setattr(record, field, context.get(field, 'N/A'))
        if not hasattr(record, 'component'):
            # 'processor' from 'triage_agent.processor'
            record.component = record.name.rsplit('.', 1)[-1]
        return True


def _load_config_from_file(config_path: Union[str, Path]) -> Dict[str, Any]:
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Logging config file not found: {config_path}")
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Logging config must be a mapping: {config_path}")
    return config.get('logging', config)


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    config = copy.deepcopy(config)
    for env_var, path in ENV_VAR_MAPPING.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        current = config
        for key in path[:-1]:
            current = current.setdefault(key, {})
        key = path[-1]
        if env_var in BOOLEAN_ENV_VARS:
            current[key] = env_value.lower() in ('true', '1', 'yes', 'on')
        elif key == 'level':
            current[key] = env_value.upper()
        elif key == 'format':
            current[key] = env_value.lower()
        else:
            current[key] = env_value
    return config


def _merge_config(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overrides into a copy of base."""
    result = copy.deepcopy(base)
    for key, value in overrides.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_config(result[key], value)
        else:
            result[key] = value
    return result


def _level(name: Optional[str]) -> int:
    return getattr(logging, str(name or 'INFO').upper(), logging.INFO)


def _formatter(log_format: str) -> logging.Formatter:
    if log_format == 'json':
        return JSONFormatter()
    return logging.Formatter(fmt=PLAIN_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def _setup_handlers(logger: logging.Logger, config: Dict[str, Any]) -> None:
    handlers_config = config.get('handlers', {})
    log_format = config.get('format', 'plain')
    default_level = config.get('level', 'INFO')
    context_filter = ContextFilter()

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_config = handlers_config.get('console', {})
    if console_config.get('enabled', True):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(_level(console_config.get('level', default_level)))
        console_handler.setFormatter(_formatter(log_format))
        console_handler.addFilter(context_filter)
        logger.addHandler(console_handler)

    file_config = handlers_config.get('file', {})
    if file_config.get('enabled', True):
        file_path = Path(file_config.get('path', 'logs/triage_agent.log'))
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(file_path),
            maxBytes=file_config.get('max_bytes', 10 * 1024 * 1024),
            backupCount=file_config.get('backup_count', 5),
            encoding='utf-8'
        )
        file_handler.setLevel(_level(file_config.get('level', default_level)))
        file_handler.setFormatter(_formatter(log_format))
        file_handler.addFilter(context_filter)
        logger.addHandler(file_handler)

    json_config = handlers_config.get('json_file', {})
    if json_config.get('enabled', False):
        json_path = Path(json_config.get('path', 'logs/triage_agent.jsonl'))
        json_path.parent.mkdir(parents=True, exist_ok=True)
        json_handler = logging.FileHandler(str(json_path), encoding='utf-8')
        json_handler.setLevel(_level(json_config.get('level', default_level)))
        json_handler.setFormatter(JSONFormatter())
        json_handler.addFilter(context_filter)
        logger.addHandler(json_handler)


def build_logging_config(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Return the effective logging configuration without installing it."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path:
        config = _merge_config(config, _load_config_from_file(config_path))
    config = _apply_env_overrides(config)
    if overrides:
        config = _merge_config(config, overrides)
    return config


def init_logging(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Initialize the application's logging configuration.

    Call this first at startup. Calling it again replaces the handlers.

    Args:
        config_path: Optional YAML file with a `logging:` section
        overrides: Optional runtime overrides, e.g. {'level': 'DEBUG'}

    Returns:
        The effective configuration dictionary

    Raises:
        FileNotFoundError: If config_path is given but does not exist
    """
    config = build_logging_config(config_path, overrides)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(_level(config.get('level')))
    _setup_handlers(root_logger, config)

    root_logger.debug(
        f"Logging initialized: level={config.get('level')}, format={config.get('format')}"
    )
    return config


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger under the application's root logger.

    Example:
        >>> get_logger('processor').name
        'triage_agent.processor'
    """
    if name == '__main__':
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + '.'):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
