"""
Configuration loading and management for TFS User Sync.

This module handles loading the optional YAML settings file and environment
variables, with validation and defaults. Server addresses come from the
command line; the file only carries connection and logging settings.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'tfs_sync.yaml'

DEFAULT_EXCLUDED_IDENTITY_TYPES = [
    'Microsoft.TeamFoundation.UnauthenticatedIdentity',
    'Microsoft.TeamFoundation.ServiceIdentity',
]

AUTH_METHODS = ('basic', 'token', 'pat', 'bearer')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be read."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'source.auth.password': 'TFS_SOURCE_PASSWORD',
        'source.auth.token': 'TFS_SOURCE_TOKEN',
        'target.auth.password': 'TFS_TARGET_PASSWORD',
        'target.auth.token': 'TFS_TARGET_TOKEN',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses TFS_SYNC_CONFIG env var
                or 'tfs_sync.yaml' in the working directory
        """
        self.explicit = bool(config_path or os.getenv('TFS_SYNC_CONFIG'))
        self.config_path = config_path or os.getenv('TFS_SYNC_CONFIG', DEFAULT_CONFIG_PATH)
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        A missing default file is not an error: every setting has a default.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If a named config file is missing or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
            logger.info(f"Configuration loaded from {self.config_path}")
        except FileNotFoundError:
            if self.explicit:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using defaults")
            self.config = {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_defaults()
        self._apply_env_overrides()
        self._validate()

        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        # Credentials without an explicit method pick the matching one
        for side in ('source', 'target'):
            auth = self.config[side]['auth']
            if auth.get('method'):
                continue
            if auth.get('token'):
                auth['method'] = 'pat'
            elif auth.get('username') and auth.get('password'):
                auth['method'] = 'basic'

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if current.get(key) is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate configuration values."""
        errors = []

        for side in ('source', 'target'):
            server_config = self.config[side]
            auth = server_config['auth']
            method = (auth.get('method') or '').lower()
            if method and method not in AUTH_METHODS:
                errors.append(f"Unknown auth method '{method}' for {side}")
            if method == 'basic' and not (auth.get('username') and auth.get('password')):
                errors.append(f"Basic auth for {side} requires username and password")
            if method in ('token', 'pat', 'bearer') and not auth.get('token'):
                errors.append(f"Token auth for {side} requires a token")

            for field in ('timeout_seconds', 'batch_size'):
                value = server_config.get(field)
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(f"{side}.{field} must be a positive integer")

        sync_config = self.config.get('sync', {})
        if not sync_config.get('valid_users_group'):
            errors.append("sync.valid_users_group must not be empty")
        if not isinstance(sync_config.get('excluded_identity_types'), list):
            errors.append("sync.excluded_identity_types must be a list")

        retention = self.config.get('logging', {}).get('retention_days')
        if not isinstance(retention, int) or retention < 0:
            errors.append("logging.retention_days must be a non-negative integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        server_defaults = {
            'api_version': '2.0',
            'verify_ssl': True,
            'timeout_seconds': 30,
            'batch_size': 100,
        }
        for side in ('source', 'target'):
            server_config = self._section(side)
            for key, value in server_defaults.items():
                server_config.setdefault(key, value)
            if server_config.get('auth') is None:
                server_config['auth'] = {}
            elif not isinstance(server_config['auth'], dict):
                raise ConfigurationError(f"{side}.auth must be a mapping")

        sync_defaults = {
            'valid_users_group': 'Project Collection Valid Users',
            'excluded_identity_types': list(DEFAULT_EXCLUDED_IDENTITY_TYPES),
        }
        sync_config = self._section('sync')
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

    def _section(self, name: str) -> Any:
        """Return a top-level section, replacing an empty YAML key with a mapping."""
        if self.config.get(name) is None:
            self.config[name] = {}
        if not isinstance(self.config[name], dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        return self.config[name]


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
