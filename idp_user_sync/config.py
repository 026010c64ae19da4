"""
Configuration loading and management for IdP User Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. It also builds the typed, read-only
ImportConfiguration that drives a single reconciliation run.
"""

import os
import re
import yaml
import logging
from enum import Enum, IntEnum
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Pattern, Tuple

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class AuthType(IntEnum):
    """How a local account authenticates."""
    DB_LOCAL = 1
    MAIL = 2
    LDAP = 3
    EXTERNAL = 4


# Auth type given to accounts created by an import
PROVISIONED_AUTH_TYPE = AuthType.EXTERNAL


def auth_type_errors(auth_types: Any) -> List[str]:
    """
    Check the auth types an import treats as its own.

    Accounts the import creates must be found again by the next run, so the
    list has to contain the provisioned auth type.
    """
    if not isinstance(auth_types, (list, tuple)) or not auth_types:
        return [f"database.auth_types must be a non-empty list of integers: {auth_types!r}"]

    errors = [f"database.auth_types entries must be integers: {auth_type!r}"
              for auth_type in auth_types
              if not isinstance(auth_type, int) or isinstance(auth_type, bool)]
    if not errors and int(PROVISIONED_AUTH_TYPE) not in auth_types:
        errors.append(f"database.auth_types must include {int(PROVISIONED_AUTH_TYPE)} "
                      f"({PROVISIONED_AUTH_TYPE.name.lower()}), the auth type of imported accounts")
    return errors


class LocalField(Enum):
    """Local user attributes that can be fed from the IdP profile."""
    NAME = 'name'
    GIVEN_NAME = 'given_name'
    FAMILY_NAME = 'family_name'
    EMAIL = 'email'
    PHONE_NUMBER = 'phone_number'
    NICKNAME = 'nickname'


# IdP claim -> attribute of the remote user profile
REMOTE_ATTRIBUTES = {
    'sub': 'id',
    'name': 'displayName',
    'profile': 'profileUrl',
    'nickname': 'nickName',
    'family_name': 'lastName',
    'given_name': 'firstName',
    'email': 'email',
    'phone_number': 'mobilePhone',
    'preferred_username': 'login',
    'username': 'login',
    'manager': 'managerId',
}

# Local field -> IdP claim, in the order fields are processed
DEFAULT_FIELD_MAPPINGS = {
    'name': 'preferred_username',
    'given_name': 'given_name',
    'family_name': 'family_name',
    'email': 'email',
    'phone_number': 'phone_number',
}


@dataclass(frozen=True)
class FieldRule:
    """Mapping of one local field plus its optional normalize/filter patterns."""
    field: LocalField
    claim: str
    remote_attribute: str
    normalize: Optional[Pattern] = None
    filter: Optional[Pattern] = None


@dataclass(frozen=True)
class ImportConfiguration:
    """
    Effective import settings for one run.

    Built once from the ``import`` configuration section before any network
    call and passed by value into the reconciler.
    """
    duplicate_key: LocalField
    field_rules: Tuple[FieldRule, ...]
    use_group_regex: bool = False
    group_pattern: str = ''
    group: str = ''
    full_import: bool = False
    deactivate_unlisted: bool = False
    include_ldap_in_deactivation: bool = False
    count_rejected_as_listed: bool = False
    groups_field: Optional[str] = None

    def rule_for(self, field: LocalField) -> Optional[FieldRule]:
        for rule in self.field_rules:
            if rule.field is field:
                return rule
        return None

    def remote_attribute(self, field: LocalField) -> Optional[str]:
        rule = self.rule_for(field)
        return rule.remote_attribute if rule else None

    def group_selector(self) -> str:
        """
        Return the group-name pattern selecting the authorized groups.

        Exact-name selection is expressed as an anchored, escaped pattern so
        both modes go through the same case-insensitive matcher.
        """
        if self.use_group_regex:
            return self.group_pattern
        if not self.group:
            return ''
        return '^' + re.escape(self.group) + '$'

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> 'ImportConfiguration':
        """
        Build and validate an ImportConfiguration from the ``import`` section.

        Raises:
            ConfigurationError: On unknown fields or claims, an unmapped
                duplicate key or a pattern that does not compile
        """
        section = section or {}
        errors = []

        mappings = section.get('field_mappings') or DEFAULT_FIELD_MAPPINGS
        field_options = section.get('fields') or {}
        rules = []
        for field_name, claim in mappings.items():
            try:
                field = LocalField(field_name)
            except ValueError:
                errors.append(f"Unknown local field in field_mappings: {field_name}")
                continue
            if claim not in REMOTE_ATTRIBUTES:
                errors.append(f"Unknown IdP claim '{claim}' mapped to {field_name}")
                continue

            options = field_options.get(field_name) or {}
            normalize = _compile_option(field_name, 'normalize', options.get('normalize'), errors)
            filter_ = _compile_option(field_name, 'filter', options.get('filter'), errors)
            rules.append(FieldRule(field, claim, REMOTE_ATTRIBUTES[claim], normalize, filter_))

        for field_name in field_options:
            if field_name not in mappings:
                errors.append(f"Field options given for unmapped field: {field_name}")

        duplicate_name = section.get('duplicate_key', 'email')
        duplicate_key = None
        try:
            duplicate_key = LocalField(duplicate_name)
        except ValueError:
            errors.append(f"Unknown duplicate_key: {duplicate_name}")
        if duplicate_key and duplicate_key.value not in mappings:
            errors.append(f"duplicate_key '{duplicate_name}' has no field mapping")

        groups_field = section.get('groups_field') or None
        if groups_field in {f.value for f in LocalField}:
            errors.append(f"groups_field '{groups_field}' collides with a profile field")

        if errors:
            raise ConfigurationError("Import configuration invalid:\n" + "\n".join(f"  - {error}" for error in errors))

        return cls(
            duplicate_key=duplicate_key,
            field_rules=tuple(rules),
            use_group_regex=_as_bool(section.get('use_group_regex')),
            group_pattern=section.get('group_regex') or '',
            group=section.get('group') or '',
            full_import=_as_bool(section.get('full_import')),
            deactivate_unlisted=_as_bool(section.get('deactivate_unlisted')),
            include_ldap_in_deactivation=_as_bool(section.get('include_ldap_in_deactivation')),
            count_rejected_as_listed=_as_bool(section.get('count_rejected_as_listed')),
            groups_field=groups_field,
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _compile_option(field_name: str, kind: str, option: Optional[Dict[str, Any]],
                    errors: List[str]) -> Optional[Pattern]:
    if not option or not _as_bool(option.get('enabled')):
        return None
    pattern = option.get('pattern') or ''
    try:
        return re.compile(pattern)
    except re.error as e:
        errors.append(f"Invalid {kind} pattern for {field_name}: {e}")
        return None


# Flat key/value store names -> ``import`` section keys
FLAT_KEYS = {
    'duplicate': 'duplicate_key',
    'use_group_regex': 'use_group_regex',
    'group_regex': 'group_regex',
    'group': 'group',
    'full_import': 'full_import',
    'deactivate': 'deactivate_unlisted',
    'ldap_update': 'include_ldap_in_deactivation',
    'count_rejected': 'count_rejected_as_listed',
    'groups_field': 'groups_field',
}

_FIELD_KEY = re.compile(r'^(use_norm|norm|use_filter|filter)_(\w+)$')


def apply_flat_values(section: Dict[str, Any], values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay flat configuration store values onto an ``import`` section.

    Returns a new dictionary; ``section`` is left untouched.
    """
    merged = dict(section or {})
    fields = {name: {kind: dict(opts) for kind, opts in options.items()}
              for name, options in (merged.get('fields') or {}).items()}

    for key, value in values.items():
        if key in FLAT_KEYS:
            merged[FLAT_KEYS[key]] = value
            continue
        match = _FIELD_KEY.match(key)
        if not match:
            continue
        prefix, field_name = match.groups()
        kind = 'normalize' if prefix.endswith('norm') else 'filter'
        option = fields.setdefault(field_name, {}).setdefault(kind, {})
        if prefix.startswith('use_'):
            option['enabled'] = _as_bool(value)
        else:
            option['pattern'] = value or ''

    # Disabled options without a pattern would only add noise for unmapped fields
    mappings = merged.get('field_mappings') or DEFAULT_FIELD_MAPPINGS
    merged['fields'] = {name: options for name, options in fields.items()
                        if name in mappings or any(o.get('enabled') for o in options.values())}
    return merged


def encrypt_secret(value: str, secret_key: str) -> str:
    """Encrypt a secret for storage at rest."""
    return Fernet(secret_key.encode()).encrypt(value.encode()).decode()


def decrypt_secret(token: str, secret_key: Optional[str]) -> str:
    """
    Decrypt a secret stored at rest.

    Raises:
        ConfigurationError: If no key is available or the token is invalid
    """
    if not secret_key:
        raise ConfigurationError("An encrypted API key is configured but no secret key is available")
    try:
        return Fernet(secret_key.encode()).decrypt(token.encode()).decode()
    except (InvalidToken, ValueError) as e:
        raise ConfigurationError(f"Failed to decrypt API key: {e or 'invalid token'}")


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'idp.api_key': 'IDP_API_KEY',
        'idp.secret_key': 'IDP_SECRET_KEY',
        'database.url': 'DATABASE_URL',
        'notifications.smtp_password': 'SMTP_PASSWORD',
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

        idp_config = self.config.get('idp') or {}
        if not idp_config.get('base_url'):
            errors.append("Missing required IdP field: base_url")
        if idp_config.get('api_key_encrypted') and not idp_config.get('secret_key'):
            errors.append("idp.api_key_encrypted is set but no secret_key (or IDP_SECRET_KEY) is configured")

        database_config = self.config.get('database') or {}
        if not database_config.get('url'):
            errors.append("Missing required database field: url")

        if 'auth_types' in database_config:
            errors.extend(auth_type_errors(database_config['auth_types']))

        try:
            ImportConfiguration.from_dict(self.config.get('import'))
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        idp_defaults = {
            'auth_scheme': 'SSWS',
            'timeout_seconds': 30,
            'max_requests': None,
            'verify_ssl': True,
            'api_key_encrypted': False
        }
        idp_config = self.config.setdefault('idp', {})
        for key, value in idp_defaults.items():
            idp_config.setdefault(key, value)

        database_defaults = {
            'auth_types': [3, 4],
            'use_config_table': True
        }
        database_config = self.config.setdefault('database', {})
        for key, value in database_defaults.items():
            database_config.setdefault(key, value)

        self.config.setdefault('import', {})

        run_lock_config = self.config.setdefault('run_lock', {})
        run_lock_config.setdefault('enabled', True)
        run_lock_config.setdefault('path', 'idp_user_sync.lock')

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
            'retry_wait_seconds': 5
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
