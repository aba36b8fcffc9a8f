"""
Configuration loading and management for AD Reconcile.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

SOURCE_KINDS = ('users', 'computers')
KEY_FORMATS = ('email', 'hostname')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    # Per-target secrets, read from <NAME>_<SUFFIX>
    TARGET_SECRET_OVERRIDES = {
        'TOKEN': 'token',
        'PASSWORD': 'password',
        'APP_TOKEN': 'app_token',
        'USER_TOKEN': 'user_token',
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

        for i, reconciliation in enumerate(self.config.get('reconciliations') or []):
            if not isinstance(reconciliation, dict):
                continue
            target = reconciliation.get('target')
            if not isinstance(target, dict):
                continue
            if target.get('auth') is None:
                target['auth'] = {}
            if not isinstance(target['auth'], dict):
                continue
            prefix = env_prefix(reconciliation.get('name', f'reconciliation_{i}'))
            for suffix, auth_key in self.TARGET_SECRET_OVERRIDES.items():
                env_value = os.getenv(f"{prefix}_{suffix}")
                if env_value:
                    target['auth'][auth_key] = env_value
                    logger.debug(f"Applied environment override for {prefix} {auth_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields, collecting every error."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        reconciliations = self.config.get('reconciliations') or []
        if not reconciliations:
            errors.append("At least one reconciliation must be configured")

        names = set()
        for i, reconciliation in enumerate(reconciliations):
            prefix = f"reconciliations[{i}]"
            if not isinstance(reconciliation, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            name = reconciliation.get('name')
            if not name:
                errors.append(f"Missing required field {prefix}.name")
            elif name in names:
                errors.append(f"Duplicate reconciliation name: {name}")
            names.add(name)

            errors.extend(self._validate_source(reconciliation.get('source'), f"{prefix}.source"))
            errors.extend(self._validate_target(reconciliation.get('target'), f"{prefix}.target"))
            errors.extend(self._validate_mappings(reconciliation.get('mappings') or [], f"{prefix}.mappings"))

            max_changes = reconciliation.get('max_changes')
            if max_changes is not None and not _is_non_negative_int(max_changes):
                errors.append(f"{prefix}.max_changes must be a non-negative integer")

        run_config = self.config.get('run') or {}
        if run_config.get('max_changes') is not None and not _is_non_negative_int(run_config['max_changes']):
            errors.append("run.max_changes must be a non-negative integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_source(self, source: Any, prefix: str) -> List[str]:
        if not isinstance(source, dict):
            return [f"Missing required section {prefix}"]

        errors = []
        kind = source.get('kind', 'users')
        if kind not in SOURCE_KINDS:
            errors.append(f"{prefix}.kind must be one of {', '.join(SOURCE_KINDS)}")
        key_format = source.get('key_format')
        if key_format is not None and key_format not in KEY_FORMATS:
            errors.append(f"{prefix}.key_format must be one of {', '.join(KEY_FORMATS)}")
        groups = source.get('groups', [])
        if not isinstance(groups, list):
            errors.append(f"{prefix}.groups must be a list of group DNs")
        return errors

    def _validate_target(self, target: Any, prefix: str) -> List[str]:
        if not isinstance(target, dict):
            return [f"Missing required section {prefix}"]

        errors = []
        for field in ['module', 'base_url', 'key_attribute']:
            if not target.get(field):
                errors.append(f"Missing required field {prefix}.{field}")

        module = target.get('module')
        if module and not str(module).isidentifier():
            errors.append(f"{prefix}.module is not a valid module name: {module}")

        auth = target.get('auth')
        if auth is not None and not isinstance(auth, dict):
            errors.append(f"{prefix}.auth must be a mapping")
        return errors

    def _validate_mappings(self, mappings: Any, prefix: str) -> List[str]:
        if not isinstance(mappings, list):
            return [f"{prefix} must be a list"]

        errors = []
        for j, mapping in enumerate(mappings):
            mapping_prefix = f"{prefix}[{j}]"
            if not isinstance(mapping, dict) or not mapping.get('source'):
                errors.append(f"Missing source attribute for {mapping_prefix}")
                continue
            pattern = mapping.get('pattern')
            if pattern:
                try:
                    re.compile(pattern)
                except re.error as e:
                    errors.append(f"Invalid pattern for {mapping_prefix}: {e}")
        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'search_base': '',
            'use_ssl': str(self.config['ldap']['server_url']).lower().startswith('ldaps://'),
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 500,
            'connect_attempts': 1,
            'nested_groups': True,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'ledger_file': True,
        }
        logging_config = self.config.setdefault('logging', {}) or {}
        self.config['logging'] = logging_config
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {}) or {}
        self.config['notifications'] = notification_config
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

        run_config = self.config.setdefault('run', {}) or {}
        self.config['run'] = run_config
        run_config.setdefault('dry_run', False)
        run_config.setdefault('max_changes', None)

        for reconciliation in self.config['reconciliations']:
            reconciliation.setdefault('mappings', [])
            reconciliation.setdefault('strict_keys', False)
            reconciliation.setdefault('require_source_entities', True)
            reconciliation.setdefault('require_target_entities', False)
            reconciliation.setdefault('max_changes', None)

            source = reconciliation['source']
            source.setdefault('kind', 'users')
            source.setdefault('groups', [])
            source.setdefault('search_base', None)
            default_key = 'mail' if source['kind'] == 'users' else 'cn'
            source.setdefault('key_attribute', default_key)
            source.setdefault('key_format', 'email' if source['kind'] == 'users' else 'hostname')

            target = reconciliation['target']
            target.setdefault('auth', {})
            target.setdefault('id_attribute', 'id')
            target.setdefault('verify_ssl', True)
            target.setdefault('timeout', 30)


def env_prefix(name: str) -> str:
    """Environment variable prefix for a reconciliation name."""
    return re.sub(r'[^A-Za-z0-9]', '_', str(name)).upper()


def _is_non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


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
