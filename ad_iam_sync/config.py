"""
Configuration loading and management for AD/IAM Group Sync.

This module handles loading configuration from YAML (or JSON) files and
environment variables, validates it, applies defaults and converts the result
into a typed SyncConfig.
"""

import os
import yaml
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ControllerMode(Enum):
    """Which system is the source of truth for a run."""

    DIRECTORY = 'directory'
    CLOUD = 'cloud'

    @classmethod
    def parse(cls, value: Any) -> 'ControllerMode':
        """
        Parse a controller value from configuration.

        Raises:
            ConfigurationError: If the value names no known controller
        """
        if isinstance(value, cls):
            return value

        aliases = {
            'directory': cls.DIRECTORY,
            'ad': cls.DIRECTORY,
            'cloud': cls.CLOUD,
            'aws': cls.CLOUD,
        }
        mode = aliases.get(str(value).strip().lower()) if value is not None else None
        if mode is None:
            raise ConfigurationError(
                f"Unrecognized controller value '{value}' (expected 'directory' or 'cloud')"
            )
        return mode


@dataclass(frozen=True)
class GroupMapping:
    """Pairs one directory group with one IAM group."""

    directory_group: str
    cloud_group: str


@dataclass(frozen=True)
class SyncConfig:
    """Validated configuration for a sync run."""

    controller_mode: ControllerMode
    group_mappings: Tuple[GroupMapping, ...]
    bypass_user_validation: bool = False
    abort_on_validation_failure: bool = True
    directory: Dict[str, Any] = field(default_factory=dict)
    cloud: Dict[str, Any] = field(default_factory=dict)
    logging_config: Dict[str, Any] = field(default_factory=dict)
    audit: Dict[str, Any] = field(default_factory=dict)
    error_handling: Dict[str, Any] = field(default_factory=dict)
    concurrency: Dict[str, Any] = field(default_factory=dict)
    notifications: Dict[str, Any] = field(default_factory=dict)

    @property
    def max_workers(self) -> int:
        return int(self.concurrency.get('max_workers', 1))

    @property
    def run_deadline_seconds(self) -> float:
        return float(self.error_handling.get('run_deadline_seconds', 0) or 0)

    @property
    def isolate_fetch_errors(self) -> bool:
        return bool(self.error_handling.get('isolate_fetch_errors', False))


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    VALIDATION_POLICIES = ('abort', 'skip')

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> SyncConfig:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated SyncConfig

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return build_sync_config(self.config)

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        cloud_config = self.config.get('cloud')
        if isinstance(cloud_config, dict) and not cloud_config.get('profile') and os.getenv('AWS_PROFILE'):
            cloud_config['profile'] = os.getenv('AWS_PROFILE')
            logger.debug("Applied AWS_PROFILE for cloud.profile")

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
        """Validate required configuration fields."""
        errors = []

        try:
            ControllerMode.parse(self.config.get('controller'))
        except ConfigurationError as e:
            errors.append(str(e))

        directory_config = self.config.get('directory', {})
        if not isinstance(directory_config, dict):
            errors.append("directory must be a mapping")
            directory_config = {}
        for field_name in ['server_url', 'bind_dn', 'bind_password']:
            if not directory_config.get(field_name):
                errors.append(f"Missing required directory field: {field_name}")

        cloud_config = self.config.get('cloud', {})
        if not isinstance(cloud_config, dict):
            errors.append("cloud must be a mapping")

        mappings = self.config.get('group_mappings', [])
        if not isinstance(mappings, list) or not mappings:
            errors.append("At least one group mapping must be configured")
            mappings = []

        for i, mapping in enumerate(mappings):
            prefix = f"group_mappings[{i}]"
            if not isinstance(mapping, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            for field_name in ['directory_group', 'cloud_group']:
                value = mapping.get(field_name)
                if not isinstance(value, str) or not value.strip():
                    errors.append(f"Missing {field_name} for {prefix}")

        validation_config = self.config.get('validation', {}) or {}
        if not isinstance(validation_config, dict):
            errors.append("validation must be a mapping")
        else:
            policy = validation_config.get('on_failure', 'abort')
            if policy not in self.VALIDATION_POLICIES:
                errors.append(f"validation.on_failure must be one of {', '.join(self.VALIDATION_POLICIES)}")
            bypass = validation_config.get('bypass', {}) or {}
            if not isinstance(bypass, dict):
                errors.append("validation.bypass must be a mapping")
            elif not isinstance(bypass.get('user', False), bool):
                errors.append("validation.bypass.user must be true or false")

        max_workers = (self.config.get('concurrency', {}) or {}).get('max_workers', 1)
        if not isinstance(max_workers, int) or max_workers < 1:
            errors.append("concurrency.max_workers must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'user_base_dn': '',
            'group_base_dn': '',
            'user_filter': '(&(objectCategory=person)(objectClass=user))',
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
            'page_size': 1000
        }
        self._merge_defaults('directory', directory_defaults)

        cloud_defaults = {
            'profile': None,
            'region': 'us-east-1',
            'connect_timeout': 10,
            'read_timeout': 30
        }
        self._merge_defaults('cloud', cloud_defaults)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self._merge_defaults('logging', logging_defaults)

        audit_defaults = {
            'enabled': True,
            'log_dir': logging_config['log_dir']
        }
        self._merge_defaults('audit', audit_defaults)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 1.0,
            'run_deadline_seconds': 0,
            'isolate_fetch_errors': False
        }
        self._merge_defaults('error_handling', error_defaults)

        self._merge_defaults('concurrency', {'max_workers': 1})

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        self._merge_defaults('notifications', notification_defaults)

        validation_config = self.config.setdefault('validation', {}) or {}
        self.config['validation'] = validation_config
        validation_config.setdefault('on_failure', 'abort')
        bypass = validation_config.setdefault('bypass', {}) or {}
        validation_config['bypass'] = bypass
        bypass.setdefault('user', False)

    def _merge_defaults(self, section: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
        section_config = self.config.get(section) or {}
        for key, value in defaults.items():
            section_config.setdefault(key, value)
        self.config[section] = section_config
        return section_config


def build_sync_config(config: Dict[str, Any]) -> SyncConfig:
    """
    Convert a validated configuration dictionary into a SyncConfig.

    Args:
        config: Configuration dictionary with defaults applied

    Returns:
        Typed configuration
    """
    mappings = tuple(
        GroupMapping(
            directory_group=mapping['directory_group'].strip(),
            cloud_group=mapping['cloud_group'].strip()
        )
        for mapping in config.get('group_mappings', [])
    )
    validation_config = config.get('validation', {}) or {}

    return SyncConfig(
        controller_mode=ControllerMode.parse(config.get('controller')),
        group_mappings=mappings,
        bypass_user_validation=bool((validation_config.get('bypass') or {}).get('user', False)),
        abort_on_validation_failure=validation_config.get('on_failure', 'abort') == 'abort',
        directory=config.get('directory', {}),
        cloud=config.get('cloud', {}),
        logging_config=config.get('logging', {}),
        audit=config.get('audit', {}),
        error_handling=config.get('error_handling', {}),
        concurrency=config.get('concurrency', {}),
        notifications=config.get('notifications', {})
    )


def load_config(config_path: Optional[str] = None) -> SyncConfig:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader(config_path)
    return loader.load()
