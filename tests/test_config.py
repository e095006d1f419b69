#!/usr/bin/env python3
"""Tests for config.py - engine configuration and discovery.

Tests verify:
1. Built-in defaults
2. iac-engine.yaml discovery (work dir, IAC_ENGINE_CONFIG)
3. Environment overrides
4. CLI-style overrides and validation
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigError,
    EngineConfig,
    get_config_file,
    load_config,
    _parse_yaml,
)


class TestEngineConfig:
    """Test EngineConfig dataclass behavior."""

    def test_defaults(self, tmp_path):
        config = EngineConfig(work_dir=tmp_path)
        assert config.concurrency == 10
        assert config.timeout is None
        assert config.refresh is True
        assert config.resolved_state_path == tmp_path / '.states' / 'state.json'

    def test_absolute_state_path(self, tmp_path):
        config = EngineConfig(work_dir=tmp_path, state_path='/var/lib/engine/state.json')
        assert config.resolved_state_path == Path('/var/lib/engine/state.json')

    @pytest.mark.parametrize('value', [0, -1, True, 'ten'])
    def test_invalid_concurrency(self, value):
        with pytest.raises(ConfigError, match='concurrency'):
            EngineConfig(concurrency=value)

    def test_invalid_timeout(self):
        with pytest.raises(ConfigError, match='timeout'):
            EngineConfig(timeout=0)

    def test_invalid_log_level(self):
        with pytest.raises(ConfigError, match='log_level'):
            EngineConfig(log_level='LOUD')

    @pytest.mark.parametrize('value', [10, None])
    def test_non_string_log_level(self, value):
        with pytest.raises(ConfigError, match='log_level'):
            EngineConfig(log_level=value)

    @pytest.mark.parametrize('value', ['no', 0, None])
    def test_non_bool_refresh(self, value):
        with pytest.raises(ConfigError, match='refresh'):
            EngineConfig(refresh=value)

    def test_override_skips_none(self, tmp_path):
        config = EngineConfig(work_dir=tmp_path, concurrency=4)
        config.override(concurrency=None, timeout=30, state_path='custom.json')
        assert config.concurrency == 4
        assert config.timeout == 30
        assert config.state_path == Path('custom.json')

    def test_override_validates(self, tmp_path):
        config = EngineConfig(work_dir=tmp_path)
        with pytest.raises(ConfigError):
            config.override(concurrency=0)

    def test_override_unknown_setting(self, tmp_path):
        with pytest.raises(ConfigError, match='Unknown config setting'):
            EngineConfig(work_dir=tmp_path).override(colour='blue')


class TestLoadConfig:
    """Test config file and environment resolution."""

    def test_no_file(self, tmp_path):
        config = load_config(tmp_path)
        assert config.config_file is None
        assert config.work_dir == tmp_path

    def test_file_in_work_dir(self, tmp_path):
        (tmp_path / 'iac-engine.yaml').write_text(
            "state_path: state/prod.json\nconcurrency: 4\nrefresh: false\n")
        config = load_config(tmp_path)
        assert config.config_file == tmp_path / 'iac-engine.yaml'
        assert config.concurrency == 4
        assert config.refresh is False
        assert config.resolved_state_path == tmp_path / 'state' / 'prod.json'

    @pytest.mark.parametrize('content, setting', [
        ("log_level: 10\n", 'log_level'),
        ("refresh: \"no\"\n", 'refresh'),
    ])
    def test_file_value_types(self, tmp_path, content, setting):
        (tmp_path / 'iac-engine.yaml').write_text(content)
        with pytest.raises(ConfigError, match=setting):
            load_config(tmp_path)

    def test_unknown_file_key(self, tmp_path):
        (tmp_path / 'iac-engine.yaml').write_text("parallelism: 4\n")
        with pytest.raises(ConfigError, match='parallelism'):
            load_config(tmp_path)

    def test_env_overrides_file(self, tmp_path):
        (tmp_path / 'iac-engine.yaml').write_text("concurrency: 4\n")
        env = {'IAC_ENGINE_CONCURRENCY': '2', 'IAC_ENGINE_TIMEOUT': '1.5',
               'IAC_ENGINE_STATE': '/tmp/other.json'}
        with patch.dict(os.environ, env):
            config = load_config(tmp_path)
        assert config.concurrency == 2
        assert config.timeout == 1.5
        assert config.state_path == Path('/tmp/other.json')

    def test_env_not_a_number(self, tmp_path):
        with patch.dict(os.environ, {'IAC_ENGINE_CONCURRENCY': 'many'}):
            with pytest.raises(ConfigError, match='IAC_ENGINE_CONCURRENCY'):
                load_config(tmp_path)

    def test_config_env_var(self, tmp_path):
        other = tmp_path / 'elsewhere.yaml'
        other.write_text("log_level: DEBUG\n")
        with patch.dict(os.environ, {'IAC_ENGINE_CONFIG': str(other)}):
            assert get_config_file(tmp_path) == other
            assert load_config(tmp_path).log_level == 'DEBUG'

    def test_config_env_var_missing_raises(self, tmp_path):
        with patch.dict(os.environ, {'IAC_ENGINE_CONFIG': '/nonexistent/engine.yaml'}):
            with pytest.raises(ConfigError) as exc_info:
                get_config_file(tmp_path)
            assert 'does not exist' in str(exc_info.value)

    def test_parse_yaml_not_a_mapping(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match='must be a YAML object'):
            _parse_yaml(path)

    def test_parse_yaml_invalid(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("concurrency: [1\n")
        with pytest.raises(ConfigError, match='Invalid YAML'):
            _parse_yaml(path)
