"""Planner configuration management.

Settings are loaded from a YAML file:
- provider: Provider name ('memory' or 'http')
- provider_endpoint: Base URL for the http provider
- provider_token / provider_token_env: Bearer token (literal or env var name)
- provider_timeout: Request timeout in seconds
- verify_tls: Verify provider TLS certificates
- state_dir: Where execution state is persisted
- templates_dir: Where named templates are looked up

Resolution order for the settings file:
1. $IAC_PLANNER_CONFIG environment variable
2. ./iac-planner.yaml in the working directory
3. ~/.config/iac-planner/config.yaml

CLI flags override file values; $IAC_PLANNER_STATE_DIR overrides state_dir.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'iac-planner.yaml'

KNOWN_KEYS = {
    'provider',
    'provider_endpoint',
    'provider_token',
    'provider_token_env',
    'provider_timeout',
    'verify_tls',
    'state_dir',
    'templates_dir',
}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class Settings:
    """Resolved planner settings.

    Attributes:
        provider: Provider registry name
        provider_endpoint: Base URL of a remote provider (http provider only)
        provider_token: Bearer token for the remote provider
        provider_timeout: Seconds before a provider call is abandoned
        verify_tls: Verify remote provider certificates
        state_dir: Root directory for execution state files
        templates_dir: Directory holding named templates
        source_path: File the settings were loaded from (None = defaults)
    """
    provider: str = 'memory'
    provider_endpoint: str = ''
    provider_token: str = field(default='', repr=False)
    provider_timeout: int = 60
    verify_tls: bool = True
    state_dir: Path = field(default_factory=lambda: Path.cwd() / '.states')
    templates_dir: Path = field(default_factory=lambda: Path.cwd() / 'templates')
    source_path: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.templates_dir, str):
            self.templates_dir = Path(self.templates_dir)

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Settings':
        """Create Settings from a parsed YAML mapping.

        Relative directories are resolved against the settings file location.

        Raises:
            ConfigError: On unknown keys or wrongly typed values
        """
        unknown = set(data) - KNOWN_KEYS
        if unknown:
            raise ConfigError(f"Unknown settings key(s): {', '.join(sorted(unknown))}")

        base = source_path.parent if source_path else Path.cwd()
        settings = cls(source_path=source_path)

        if provider := data.get('provider'):
            settings.provider = str(provider)
        if endpoint := data.get('provider_endpoint'):
            settings.provider_endpoint = str(endpoint)

        # Token: literal value wins over env var indirection
        if token := data.get('provider_token'):
            settings.provider_token = str(token)
        elif token_env := data.get('provider_token_env'):
            settings.provider_token = os.environ.get(str(token_env), '')
            if not settings.provider_token:
                logger.warning(f"provider_token_env {token_env} is not set")

        if 'provider_timeout' in data:
            timeout = data['provider_timeout']
            if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
                raise ConfigError(f"provider_timeout must be a positive integer, got {timeout!r}")
            settings.provider_timeout = timeout

        if 'verify_tls' in data:
            if not isinstance(data['verify_tls'], bool):
                raise ConfigError(f"verify_tls must be true or false, got {data['verify_tls']!r}")
            settings.verify_tls = data['verify_tls']

        if state_dir := data.get('state_dir'):
            settings.state_dir = base / Path(state_dir).expanduser()
        if templates_dir := data.get('templates_dir'):
            settings.templates_dir = base / Path(templates_dir).expanduser()

        return settings


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file, returning {} for empty documents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must be a YAML object (dict)")
    return data


def discover_config_file() -> Optional[Path]:
    """Find the settings file.

    Resolution order:
    1. $IAC_PLANNER_CONFIG environment variable (must exist)
    2. ./iac-planner.yaml
    3. ~/.config/iac-planner/config.yaml

    Returns:
        Path to the settings file, or None when no file exists
    """
    if env_path := os.environ.get('IAC_PLANNER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"IAC_PLANNER_CONFIG={env_path} does not exist")

    local = Path.cwd() / CONFIG_FILENAME
    if local.exists():
        return local

    user = Path.home() / '.config' / 'iac-planner' / 'config.yaml'
    if user.exists():
        return user

    return None


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load settings from an explicit file or by discovery.

    Args:
        config_file: Explicit settings path (overrides discovery)

    Returns:
        Settings instance (defaults when no file is found)

    Raises:
        ConfigError: If the file is missing or invalid
    """
    if config_file:
        path: Optional[Path] = Path(config_file)
        if not path.exists():
            raise ConfigError(f"Settings file not found: {path}")
    else:
        path = discover_config_file()

    if path is None:
        logger.debug("No settings file found, using defaults")
        settings = Settings()
    else:
        logger.debug(f"Loading settings from {path}")
        settings = Settings.from_dict(_parse_yaml(path), source_path=path)

    if env_state := os.environ.get('IAC_PLANNER_STATE_DIR'):
        settings.state_dir = Path(env_state)

    return settings
