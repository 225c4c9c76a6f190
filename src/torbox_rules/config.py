"""
Configuration loader with environment variable expansion and universal _FILE support

Resolution order (highest to lowest priority):
1. CLI arguments
2. Environment variable _FILE variant (reads from file)
3. Environment variable (direct value)
4. Config file
5. Default value
"""

import os
import re
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from torbox_rules.errors import ConfigurationError


# Maps config keys to environment variable names
ENV_VAR_MAP = {
    # TorBox API
    'torbox.api_token': 'TORBOX_RULES_TORBOX_API_TOKEN',
    'torbox.base_url': 'TORBOX_RULES_TORBOX_BASE_URL',
    'torbox.timeout': 'TORBOX_RULES_TORBOX_TIMEOUT',

    # Rule storage
    'storage.backend': 'TORBOX_RULES_STORAGE_BACKEND',
    'storage.sqlite_path': 'TORBOX_RULES_STORAGE_SQLITE_PATH',
    'storage.redis_url': 'TORBOX_RULES_STORAGE_REDIS_URL',

    # Scheduler
    'scheduler.tick_seconds': 'TORBOX_RULES_SCHEDULER_TICK_SECONDS',
    'scheduler.manual_cooldown_seconds': 'TORBOX_RULES_SCHEDULER_MANUAL_COOLDOWN_SECONDS',

    # Notifications
    'notifications.file': 'TORBOX_RULES_NOTIFICATIONS_FILE',

    # Server
    'server.host': 'TORBOX_RULES_SERVER_HOST',
    'server.port': 'TORBOX_RULES_SERVER_PORT',
    'server.api_key': 'TORBOX_RULES_SERVER_API_KEY',

    # Logging
    'logging.level': 'TORBOX_RULES_LOG_LEVEL',
    'logging.file': 'TORBOX_RULES_LOG_FILE',
    'logging.trace_mode': 'TORBOX_RULES_LOG_TRACE_MODE',
}

DEFAULT_BASE_URL = 'https://api.torbox.app/v1/api'


def get_nested_config(config: Dict[str, Any], key: str) -> Optional[Any]:
    """
    Get nested configuration value using dot notation

    Examples:
        >>> config = {'server': {'host': 'localhost', 'port': 5000}}
        >>> get_nested_config(config, 'server.host')
        'localhost'
        >>> get_nested_config(config, 'server.missing')
        None
    """
    value = config

    for k in key.split('.'):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return None

    return value


def parse_bool(value: Any) -> bool:
    """
    Parse boolean from various formats

    Examples:
        >>> parse_bool('true')
        True
        >>> parse_bool(0)
        False
        >>> parse_bool(None)
        False
    """
    if value is None:
        return False

    if isinstance(value, bool):
        return value

    if isinstance(value, int):
        return value != 0

    if isinstance(value, str):
        return value.lower() in ('true', '1', 'yes', 'on')

    return bool(value)


def parse_int(value: Any, default: int = 0) -> int:
    """Parse integer from various formats, falling back to default"""
    if value is None:
        return default

    if isinstance(value, bool):
        return int(value)

    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def parse_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Parse float from various formats, falling back to default"""
    if value is None or value == '':
        return default

    try:
        return float(value)
    except (ValueError, TypeError):
        return default


def resolve_config(
    cli_value: Optional[Any],
    env_var: str,
    config: Dict[str, Any],
    config_key: str,
    default: Optional[Any] = None
) -> Any:
    """
    Universal configuration resolver with _FILE support

    Resolution order:
    1. CLI argument (if provided)
    2. Environment variable _FILE variant (reads file content)
    3. Environment variable (direct value)
    4. Config file value
    5. Default value

    Args:
        cli_value: Value from CLI argument (None if not provided)
        env_var: Environment variable name (without _FILE suffix)
        config: Loaded configuration dictionary
        config_key: Dot-notation key for config file (e.g., 'server.port')
        default: Default value if no source provides a value

    Returns:
        Resolved configuration value
    """
    if cli_value is not None:
        return cli_value

    file_var = f"{env_var}_FILE"
    if file_var in os.environ:
        file_path = os.environ[file_var]
        try:
            with open(file_path, 'r') as f:
                content = f.read().strip()
            logging.debug(f"Loaded config from file: {file_var}={file_path}")
            return content
        except FileNotFoundError:
            logging.warning(f"File not found for {file_var}: {file_path}")
        except PermissionError:
            logging.warning(f"Permission denied reading {file_var}: {file_path}")
        except OSError as e:
            logging.warning(f"Error reading {file_var} from {file_path}: {e}")

    if env_var in os.environ:
        logging.debug(f"Loaded config from env: {env_var}")
        return os.environ[env_var]

    if config:
        value = get_nested_config(config, config_key)
        if value is not None:
            logging.debug(f"Loaded config from file: {config_key}")
            return value

    logging.debug(f"Using default config: {config_key}={default}")
    return default


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand environment variables in configuration values

    Supports format: ${VAR_NAME:-default_value}

    Examples:
        >>> os.environ['TEST_VAR'] = 'hello'
        >>> expand_env_vars('${TEST_VAR:-default}')
        'hello'
        >>> expand_env_vars('${MISSING_VAR:-default}')
        'default'
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ''
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replacer, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file with error handling

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML as dictionary (empty when the file is empty)

    Raises:
        ConfigurationError: If file cannot be read or parsed
    """
    try:
        with open(file_path, 'r') as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(str(file_path), "File does not exist")
    except yaml.YAMLError as e:
        raise ConfigurationError(str(file_path), f"Invalid YAML syntax: {str(e)}")
    except PermissionError:
        raise ConfigurationError(str(file_path), "Permission denied - cannot read file")
    except OSError as e:
        raise ConfigurationError(str(file_path), f"Cannot read file: {str(e)}")

    if content is None:
        return {}

    if not isinstance(content, dict):
        raise ConfigurationError(str(file_path), "Top level must be a mapping")

    return content


class Config:
    """Configuration manager"""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize configuration

        Args:
            config_dir: Directory containing config.yml (defaults to CONFIG_DIR or /config)
        """
        if config_dir is None:
            config_dir = Path(os.environ.get('CONFIG_DIR', '/config'))

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / 'config.yml'
        self.rules_file = self.config_dir / 'rules.yml'

        self._load_config()

    def _load_config(self):
        """Load config.yml with environment variable expansion"""
        if not self.config_file.exists():
            logging.debug(f"No config file at {self.config_file}, using defaults and environment")
            self.config = {}
            return

        logging.debug(f"Loading config from {self.config_file}")
        self.config = expand_env_vars(load_yaml_file(self.config_file))
        logging.debug("Configuration loaded successfully")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key"""
        value = get_nested_config(self.config, key)
        return default if value is None else value

    def resolve(self, key: str, default: Any = None, cli_value: Any = None) -> Any:
        """Resolve a key through CLI, environment and config file"""
        return resolve_config(cli_value, ENV_VAR_MAP.get(key, ''), self.config, key, default)

    def _resolve_path(self, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = self.config_dir / path
        return path

    def get_torbox_config(self) -> Dict[str, Any]:
        """Get TorBox API connection configuration"""
        return {
            'api_token': self.resolve('torbox.api_token', ''),
            'base_url': self.resolve('torbox.base_url', DEFAULT_BASE_URL),
            'timeout': parse_float(self.resolve('torbox.timeout')),
        }

    def get_storage_config(self) -> Dict[str, Any]:
        """Get rule storage backend configuration"""
        return {
            'backend': self.resolve('storage.backend', 'yaml'),
            'rules_path': self.rules_file,
            'sqlite_path': self._resolve_path(self.resolve('storage.sqlite_path', 'torbox-rules.db')),
            'redis_url': self.resolve('storage.redis_url', 'redis://localhost:6379/0'),
        }

    def get_scheduler_config(self) -> Dict[str, int]:
        """Get scheduler cadence configuration"""
        return {
            'tick_seconds': parse_int(self.resolve('scheduler.tick_seconds', 30), 30),
            'manual_cooldown_seconds': parse_int(self.resolve('scheduler.manual_cooldown_seconds', 30), 30),
        }

    def get_notifications_file(self) -> Path:
        """Get path of the local notification list"""
        return self._resolve_path(self.resolve('notifications.file', 'notifications.json'))

    def get_server_config(self, host: Optional[str] = None, port: Optional[int] = None,
                          api_key: Optional[str] = None) -> Dict[str, Any]:
        """Get HTTP server configuration, CLI values first"""
        return {
            'host': self.resolve('server.host', '0.0.0.0', cli_value=host),
            'port': parse_int(self.resolve('server.port', 5000, cli_value=port), 5000),
            'api_key': self.resolve('server.api_key', None, cli_value=api_key),
        }

    def get_log_level(self) -> str:
        """Get logging level"""
        return os.environ.get('LOG_LEVEL', self.resolve('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Path:
        """
        Get log file path

        Relative paths are relative to CONFIG_DIR.
        """
        return self._resolve_path(self.resolve('logging.file', 'logs/torbox-rules.log'))

    def get_trace_mode(self) -> bool:
        """Check if trace mode is enabled (detailed logging with module/function/line)"""
        env_trace = os.environ.get('TRACE_MODE', '').lower()
        if env_trace in ('true', '1', 'yes', 'on'):
            return True
        elif env_trace in ('false', '0', 'no', 'off'):
            return False

        return parse_bool(self.resolve('logging.trace_mode', False))


def load_config(config_dir: Optional[Path] = None) -> Config:
    """Load configuration from directory"""
    return Config(config_dir)
