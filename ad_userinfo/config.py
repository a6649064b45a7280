"""
Configuration loading and management for AD User Info.

Settings come from a YAML file. AD_* environment variables may replace the
bind identity, and validation reports every problem at once. Also defines
the immutable connection settings the directory service uses.
"""

import os
import copy
import yaml
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


AUTHENTICATION_METHODS = ('auto', 'simple', 'ntlm', 'kerberos')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Connection parameters for a directory service instance.

    The identity part is one of: nothing, a domain, a domain and container,
    a domain and credentials, or a domain, container and credentials. The
    remaining fields control the transport.
    """
    domain: Optional[str] = None
    container: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    server_url: Optional[str] = None
    use_ssl: bool = False
    start_tls: bool = False
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    authentication: str = 'auto'
    connection_timeout: int = 10
    receive_timeout: int = 30
    page_size: int = 1000

    def __post_init__(self):
        errors = validate_identity(self.domain, self.container, self.username, self.password)
        if self.authentication not in AUTHENTICATION_METHODS:
            errors.append(f"Unsupported authentication method: {self.authentication}")
        if errors:
            raise ConfigurationError("Invalid connection configuration:\n" + "\n".join(f"  - {e}" for e in errors))

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)

    @property
    def search_path(self) -> str:
        """LDAP path describing the search scope of this configuration."""
        if self.domain and self.container:
            return f"LDAP://{self.domain}/{self.container}"
        if self.domain:
            return f"LDAP://{self.domain}"
        return "LDAP://RootDSE"

    def __repr__(self):
        return (f"ConnectionConfig(domain={self.domain!r}, container={self.container!r}, "
                f"username={self.username!r}, server_url={self.server_url!r})")

    @classmethod
    def from_dict(cls, directory_config: Dict[str, Any]) -> 'ConnectionConfig':
        """
        Build a connection config from the ``directory`` section of the configuration.

        Args:
            directory_config: Directory configuration dictionary

        Returns:
            ConnectionConfig instance

        Raises:
            ConfigurationError: If the combination of fields is invalid
        """
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in (directory_config or {}).items()
                  if key in known and value is not None and (value != '' or key == 'password')}
        return cls(**values)


def validate_identity(domain: Optional[str], container: Optional[str],
                      username: Optional[str], password: Optional[str]) -> list:
    """Check the domain/container/credentials combination and return a list of errors."""
    errors = []
    if container and not domain:
        errors.append("A container requires a domain")
    if (username or password) and not domain:
        errors.append("Credentials require a domain")
    if username and password is None:
        errors.append("A username requires a password")
    if password and not username:
        errors.append("A password requires a username")
    return errors


DEFAULTS = {
    'directory': {
        'domain': None,
        'container': None,
        'username': None,
        'password': None,
        'server_url': None,
        'use_ssl': False,
        'start_tls': False,
        'verify_ssl': True,
        'ca_cert_file': None,
        'authentication': 'auto',
        'connection_timeout': 10,
        'receive_timeout': 30,
        'page_size': 1000,
    },
    'export': {
        'output_dir': 'exports',
    },
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
        'console_output': True,
        'console_level': 'WARNING',
        'audit_log': True,
    },
}


class ConfigLoader:
    """Loads config.yaml into a validated dictionary with every section present."""

    # Environment variable mappings for sensitive or deployment specific fields
    ENV_OVERRIDES = {
        'directory.domain': 'AD_DOMAIN',
        'directory.username': 'AD_BIND_USERNAME',
        'directory.password': 'AD_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: YAML file to read. Defaults to $AD_USERINFO_CONFIG, then 'config.yaml'
        """
        self.config_path = config_path or os.getenv('AD_USERINFO_CONFIG', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Read the file, apply environment overrides, validate and fill defaults.

        Returns:
            Configuration dictionary with directory, export and logging sections

        Raises:
            ConfigurationError: Missing or unparsable file, or any invalid setting
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
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Assign ``value`` at a dotted path such as ``directory.password``."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if current.get(key) is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Collect every problem before raising."""
        errors = []

        for section in ('directory', 'export', 'logging'):
            value = self.config.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Section '{section}' must be a mapping")

        directory = self.config.get('directory') or {}
        if isinstance(directory, dict):
            errors.extend(validate_identity(
                directory.get('domain'),
                directory.get('container'),
                directory.get('username'),
                directory.get('password'),
            ))

            method = directory.get('authentication', 'auto')
            if method not in AUTHENTICATION_METHODS:
                errors.append(f"Unsupported directory.authentication: {method}")

            for field in ('connection_timeout', 'receive_timeout', 'page_size'):
                value = directory.get(field)
                if value is not None and (not isinstance(value, int) or value <= 0):
                    errors.append(f"directory.{field} must be a positive integer")

        logging_config = self.config.get('logging') or {}
        if isinstance(logging_config, dict):
            for field in ('level', 'console_level'):
                level = str(logging_config.get(field, 'INFO')).upper()
                if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
                    errors.append(f"Invalid logging.{field}: {level}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        for section, defaults in DEFAULTS.items():
            section_config = self.config.get(section)
            if section_config is None:
                section_config = self.config[section] = {}
            for key, value in defaults.items():
                section_config.setdefault(key, value)


def default_config() -> Dict[str, Any]:
    """
    Return the default configuration, used when no configuration file exists.

    Environment overrides still apply.
    """
    loader = ConfigLoader()
    loader.config = copy.deepcopy(DEFAULTS)
    loader._apply_env_overrides()
    loader._validate()
    return loader.config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load and validate the configuration file; see :meth:`ConfigLoader.load`."""
    return ConfigLoader(config_path).load()
