"""
Tests for configuration loading, validation and the settings facade.
"""
import os
import pytest
from unittest.mock import patch

from triage_agent.config import (
    ConfigError,
    ConfigLoader,
    load_env_vars,
    load_yaml_config,
    require_env,
)
from triage_agent.config_schema import AppConfig, QueueConfig, SchedulerConfig
from triage_agent.settings import Settings


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "llm:\n"
        "  model: gpt-4o\n"
        "pipeline:\n"
        "  max_body_chars: 500\n"
        "  cursor_commit: before_enqueue\n"
        "scheduler:\n"
        "  timezone: Europe/Berlin\n",
        encoding='utf-8'
    )
    return path


@pytest.fixture
def clean_env():
    """Remove TRIAGE_AGENT_* variables for the duration of a test."""
    saved = {k: v for k, v in os.environ.items() if k.startswith('TRIAGE_AGENT_')}
    for key in saved:
        del os.environ[key]
    yield
    for key in [k for k in os.environ if k.startswith('TRIAGE_AGENT_')]:
        del os.environ[key]
    os.environ.update(saved)


def test_load_yaml_config_valid(config_file):
    config = load_yaml_config(str(config_file))
    assert config['llm']['model'] == 'gpt-4o'


def test_load_yaml_config_missing(tmp_path):
    with pytest.raises(ConfigError, match='not found'):
        load_yaml_config(str(tmp_path / 'missing.yaml'))


def test_load_yaml_config_invalid_yaml(tmp_path):
    path = tmp_path / 'bad.yaml'
    path.write_text("llm: [unclosed\n", encoding='utf-8')
    with pytest.raises(ConfigError, match='YAML parse error'):
        load_yaml_config(str(path))


def test_load_yaml_config_empty_file(tmp_path):
    path = tmp_path / 'empty.yaml'
    path.write_text("", encoding='utf-8')
    assert load_yaml_config(str(path)) == {}


def test_load_yaml_config_rejects_non_mapping(tmp_path):
    path = tmp_path / 'list.yaml'
    path.write_text("- a\n- b\n", encoding='utf-8')
    with pytest.raises(ConfigError, match='mapping'):
        load_yaml_config(str(path))


def test_config_loader_reads_file(config_file, clean_env):
    config = ConfigLoader(str(config_file)).load()
    assert isinstance(config, AppConfig)
    assert config.llm.model == 'gpt-4o'
    assert config.pipeline.max_body_chars == 500
    assert config.pipeline.cursor_commit == 'before_enqueue'
    assert config.scheduler.timezone == 'Europe/Berlin'
    # Untouched sections keep their defaults
    assert config.queue.max_attempts == 5
    assert config.wrapup.morning_since_hour == 17


def test_config_loader_missing_file_is_error(tmp_path, clean_env):
    with pytest.raises(ConfigError):
        ConfigLoader(str(tmp_path / 'nope.yaml')).load()


def test_config_loader_allow_missing_uses_defaults(tmp_path, clean_env):
    config = ConfigLoader(str(tmp_path / 'nope.yaml'), allow_missing=True).load()
    assert config.llm.model == 'gpt-4o-mini'
    assert config.storage.database_path == 'data/triage.db'
    assert config.pipeline.cursor_commit == 'after_enqueue'


def test_env_overrides_are_applied(config_file, clean_env):
    """TRIAGE_AGENT_<SECTION>_<KEY> overrides file values and is coerced by the schema."""
    os.environ['TRIAGE_AGENT_LLM_MODEL'] = 'override-model'
    os.environ['TRIAGE_AGENT_QUEUE_WORKERS'] = '8'
    config = ConfigLoader(str(config_file)).load()
    assert config.llm.model == 'override-model'
    assert config.queue.workers == 8


def test_env_override_for_unknown_section_is_ignored(config_file, clean_env):
    os.environ['TRIAGE_AGENT_BOGUS_VALUE'] = 'x'
    config = ConfigLoader(str(config_file)).load()
    assert config.llm.model == 'gpt-4o'


def test_validation_failure_raises_config_error(clean_env):
    with pytest.raises(ConfigError, match='queue.max_attempts'):
        ConfigLoader.load_from_dict({'queue': {'max_attempts': 0}})


def test_invalid_cursor_commit_rejected():
    with pytest.raises(ConfigError):
        ConfigLoader.load_from_dict({'pipeline': {'cursor_commit': 'sometimes'}})


def test_invalid_timezone_rejected():
    with pytest.raises(ValueError, match='Unknown timezone'):
        SchedulerConfig(timezone='Mars/Olympus_Mons')


def test_queue_delay_bounds_validated():
    with pytest.raises(ValueError):
        QueueConfig(retry_base_delay_seconds=100, retry_max_delay_seconds=10)


def test_load_env_vars(tmp_path):
    env_file = tmp_path / '.env'
    env_file.write_text("TRIAGE_TEST_SECRET=s3cret\n", encoding='utf-8')
    os.environ.pop('TRIAGE_TEST_SECRET', None)
    try:
        assert load_env_vars(str(env_file)) is True
        assert os.environ['TRIAGE_TEST_SECRET'] == 's3cret'
    finally:
        os.environ.pop('TRIAGE_TEST_SECRET', None)


def test_load_env_vars_missing_file(tmp_path):
    assert load_env_vars(str(tmp_path / '.env')) is False


def test_require_env():
    with patch.dict(os.environ, {'TRIAGE_TEST_KEY': 'value'}):
        assert require_env('TRIAGE_TEST_KEY') == 'value'
    with patch.dict(os.environ, {'TRIAGE_TEST_KEY': ''}):
        with pytest.raises(ConfigError, match='TRIAGE_TEST_KEY'):
            require_env('TRIAGE_TEST_KEY')


class TestSettings:
    """Tests for the settings facade."""

    def setup_method(self):
        Settings().reset()

    def teardown_method(self):
        Settings().reset()

    def test_singleton(self):
        assert Settings() is Settings()

    def test_load_config_and_section_getters(self):
        settings = Settings()
        settings.load_config(ConfigLoader.load_from_dict({'llm': {'model': 'm'}, 'queue': {'workers': 2}}))
        assert settings.is_initialized
        assert settings.get_llm_config().model == 'm'
        assert settings.get_queue_config().workers == 2
        assert settings.get_scheduler_config().timezone == 'UTC'

    def test_initialize_ignores_second_call(self, config_file, tmp_path, clean_env):
        settings = Settings()
        settings.initialize(str(config_file), str(tmp_path / '.env'))
        settings.initialize(str(tmp_path / 'other.yaml'), str(tmp_path / '.env'))
        assert settings.get_llm_config().model == 'gpt-4o'

    def test_secret_getters_read_named_variables(self):
        settings = Settings()
        settings.load_config(ConfigLoader.load_from_dict({'llm': {'api_key_env': 'MY_LLM_KEY'}}))
        with patch.dict(os.environ, {'MY_LLM_KEY': 'abc'}):
            assert settings.get_llm_api_key() == 'abc'
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigError):
                settings.get_google_client_id()
