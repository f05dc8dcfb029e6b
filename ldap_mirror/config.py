"""
Configuration loading and management for LDAP Mirror.

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
        'source.bind_password': 'SOURCE_BIND_PASSWORD',
    }

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
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        source_config = self.config.get('source') or {}
        for field in ['host', 'bind_dn', 'bind_password']:
            if not source_config.get(field):
                errors.append(f"Missing required source field: {field}")
        port = source_config.get('port')
        if port is not None and not self._is_positive_int(port):
            errors.append("source.port must be a positive integer")

        store_config = self.config.get('store') or {}
        base_dns = store_config.get('base_dns')
        if not base_dns or not isinstance(base_dns, list):
            errors.append("store.base_dns must list at least one base DN")
        store_port = store_config.get('port')
        if store_port is not None and not self._is_positive_int(store_port):
            errors.append("store.port must be a positive integer")

        for i, cred in enumerate(store_config.get('bind_credentials') or []):
            prefix = f"store.bind_credentials[{i}]"
            if not isinstance(cred, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            for field in ['bind_dn', 'password']:
                if not cred.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

        sync_config = self.config.get('sync') or {}
        queries = sync_config.get('queries', [])
        if not isinstance(queries, list):
            errors.append("sync.queries must be a list of filter strings")
        else:
            for i, query in enumerate(queries):
                if not isinstance(query, str) or not query.strip():
                    errors.append(f"sync.queries[{i}] must be a non-empty filter string")

        for field in ['page_size', 'max_results']:
            value = sync_config.get(field)
            if value is not None and not self._is_positive_int(value):
                errors.append(f"sync.{field} must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    @staticmethod
    def _is_positive_int(value) -> bool:
        return isinstance(value, int) and not isinstance(value, bool) and value > 0

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # Source defaults
        source_defaults = {
            'port': 389,
            'use_ssl': False,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
            'search_base': '',
            'attributes': ['*']
        }
        source_config = self.config.setdefault('source', {})
        for key, value in source_defaults.items():
            source_config.setdefault(key, value)

        # Store defaults
        store_defaults = {
            'host': 'localhost',
            'port': 44484,
            'bind_credentials': [],
            'schema_file': None,
            'hierarchy_file': None
        }
        store_config = self.config.setdefault('store', {})
        for key, value in store_defaults.items():
            store_config.setdefault(key, value)

        # Sync defaults
        sync_defaults = {
            'queries': [],
            'page_size': 250,
            'max_results': 10000,
            'denied_attributes': ['collectiveLanguage'],
            'diagnostic_attribute': 'uid'
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

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
