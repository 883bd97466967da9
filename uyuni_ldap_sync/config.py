"""
Configuration loading and management for Uyuni LDAP Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.bind_password': 'LDAP_BIND_PASSWORD',
        'spacewalk.password': 'UYUNI_PASSWORD',
        'spacewalk.truststore_password': 'UYUNI_TRUSTSTORE_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    DEFAULT_LDAP_PORT = 389

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._normalize_directory()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if current.get(key) is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _normalize_directory(self):
        """Build the LDAP server URL from host/port when no URL is given."""
        directory = self.config.get('directory')
        if not isinstance(directory, dict):
            return

        if not directory.get('server_url') and directory.get('host'):
            port = directory.get('port') or self.DEFAULT_LDAP_PORT
            scheme = 'ldaps' if directory.get('use_ssl') else 'ldap'
            directory['server_url'] = f"{scheme}://{directory['host']}:{port}"

        # Empty YAML sections come back as None
        for key in ('roles', 'groups', 'attrmap'):
            if directory.get(key) is None:
                directory[key] = {}

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Validate directory configuration
        directory = self.config.get('directory') or {}
        for field in ['server_url', 'bind_dn', 'bind_password', 'allusers']:
            if not directory.get(field):
                errors.append(f"Missing required directory field: {field}")

        frozen = directory.get('frozen')
        if not frozen or not isinstance(frozen, list):
            errors.append("directory.frozen must list at least one frozen account "
                          "holding the 'org_admin' role")
        elif not all(isinstance(uid, str) and uid for uid in frozen):
            errors.append("directory.frozen entries must be non-empty strings")

        roles = directory.get('roles') or {}
        groups = directory.get('groups') or {}
        if not roles and not groups:
            errors.append("At least one of directory.roles or directory.groups must be configured")

        for section, mapping in (('roles', roles), ('groups', groups)):
            if not isinstance(mapping, dict):
                errors.append(f"directory.{section} must map DNs to lists of Uyuni roles")
                continue
            for dn, uyuni_roles in mapping.items():
                if not isinstance(uyuni_roles, list) or not all(isinstance(r, str) for r in uyuni_roles):
                    errors.append(f"directory.{section}[{dn}] must be a list of role names")

        attrmap = directory.get('attrmap') or {}
        if not isinstance(attrmap, dict):
            errors.append("directory.attrmap must map base DNs to attribute overrides")
        else:
            for base_dn, fields in attrmap.items():
                if not isinstance(fields, dict):
                    errors.append(f"directory.attrmap[{base_dn}] must be a mapping")

        # Validate Uyuni API configuration
        spacewalk = self.config.get('spacewalk') or {}
        for field in ['url', 'user', 'password']:
            if not spacewalk.get(field):
                errors.append(f"Missing required spacewalk field: {field}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'use_ssl': self.config['directory']['server_url'].lower().startswith('ldaps://'),
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
        }
        directory = self.config['directory']
        for key, value in directory_defaults.items():
            directory.setdefault(key, value)

        spacewalk_defaults = {
            'checkssl': True,
            'timeout': 30,
        }
        spacewalk = self.config['spacewalk']
        for key, value in spacewalk_defaults.items():
            spacewalk.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


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

