"""Engine configuration management.

Configuration is merged from several sources, later sources winning:
1. Built-in defaults
2. iac-engine.yaml in the working directory ($IAC_ENGINE_CONFIG overrides the path)
3. Environment variables (IAC_ENGINE_STATE, IAC_ENGINE_CONCURRENCY, IAC_ENGINE_TIMEOUT)
4. CLI flags (applied by the caller via EngineConfig.override)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'iac-engine.yaml'
DEFAULT_STATE_PATH = Path('.states') / 'state.json'
DEFAULT_CONCURRENCY = 10

LOG_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR'}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class EngineConfig:
    """Runtime settings for plan/apply runs.

    Attributes:
        work_dir: Directory relative paths are resolved against
        state_path: Location of the JSON state snapshot
        concurrency: Maximum number of provider operations in flight
        timeout: Seconds after which apply stops dispatching new nodes (None = no limit)
        refresh: Read provider state during plan to detect drift
        log_level: Root log level name
        config_file: Path the file settings were read from, if any
    """
    work_dir: Path = field(default_factory=Path.cwd)
    state_path: Path = DEFAULT_STATE_PATH
    concurrency: int = DEFAULT_CONCURRENCY
    timeout: Optional[float] = None
    refresh: bool = True
    log_level: str = 'INFO'
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.work_dir, str):
            self.work_dir = Path(self.work_dir)
        if isinstance(self.state_path, str):
            self.state_path = Path(self.state_path)
        self.validate()

    def validate(self) -> None:
        """Check field values.

        Raises:
            ConfigError: If any value is out of range
        """
        if not isinstance(self.concurrency, int) or isinstance(self.concurrency, bool) \
                or self.concurrency < 1:
            raise ConfigError(f"concurrency must be a positive integer, got {self.concurrency!r}")
        if self.timeout is not None and (not isinstance(self.timeout, (int, float))
                                         or self.timeout <= 0):
            raise ConfigError(f"timeout must be a positive number, got {self.timeout!r}")
        if not isinstance(self.refresh, bool):
            raise ConfigError(f"refresh must be true or false, got {self.refresh!r}")
        if not isinstance(self.log_level, str) or self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(
                f"log_level must be one of {', '.join(sorted(LOG_LEVELS))}, got {self.log_level!r}"
            )

    @property
    def resolved_state_path(self) -> Path:
        """State path resolved against work_dir."""
        if self.state_path.is_absolute():
            return self.state_path
        return self.work_dir / self.state_path

    def override(self, **values: Any) -> 'EngineConfig':
        """Apply non-None overrides (typically CLI flags) and re-validate."""
        for key, value in values.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise ConfigError(f"Unknown config setting: {key}")
            if key in ('state_path', 'work_dir'):
                value = Path(value)
            setattr(self, key, value)
        self.validate()
        return self


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_config_file(work_dir: Path) -> Optional[Path]:
    """Discover the config file.

    Resolution order:
    1. $IAC_ENGINE_CONFIG environment variable (must exist)
    2. iac-engine.yaml in work_dir
    """
    if env_path := os.environ.get('IAC_ENGINE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"IAC_ENGINE_CONFIG={env_path} does not exist")

    candidate = work_dir / CONFIG_FILENAME
    if candidate.exists():
        return candidate
    return None


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def load_config(work_dir: Optional[Path] = None) -> EngineConfig:
    """Load engine configuration for a working directory.

    Args:
        work_dir: Directory to search for iac-engine.yaml. Default: cwd

    Returns:
        EngineConfig with file and environment settings applied

    Raises:
        ConfigError: If the config file or an environment value is invalid
    """
    work_dir = Path(work_dir) if work_dir else Path.cwd()
    settings: dict[str, Any] = {}

    config_file = get_config_file(work_dir)
    if config_file is not None:
        data = _parse_yaml(config_file)
        known = {'state_path', 'concurrency', 'timeout', 'refresh', 'log_level'}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown settings in {config_file}: {', '.join(sorted(unknown))}")
        settings.update(data)
        logger.debug(f"Loaded config from {config_file}")

    if state := os.environ.get('IAC_ENGINE_STATE'):
        settings['state_path'] = state
    if (concurrency := _env_int('IAC_ENGINE_CONCURRENCY')) is not None:
        settings['concurrency'] = concurrency
    if (timeout := _env_float('IAC_ENGINE_TIMEOUT')) is not None:
        settings['timeout'] = timeout

    return EngineConfig(work_dir=work_dir, config_file=config_file, **settings)
