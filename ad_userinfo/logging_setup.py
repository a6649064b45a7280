"""
Logging setup for AD User Info.

setup_logging() installs a rotating application log, an optional console
handler and a separate audit log fed by the ``security`` logger. Every
handler scrubs credentials from messages before they are written.
"""

import os
import re
import sys
import glob
import logging
import logging.handlers
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple


LOG_FILE_NAME = 'ad_userinfo.log'
AUDIT_FILE_NAME = 'security.log'
AUDIT_LOGGER_NAME = 'security'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
AUDIT_FORMAT = '%(asctime)s %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _level(name: Any, default: int) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'passwd', 'pwd', 'secret', 'token',
        'credential', 'unicodePwd', 'userPassword'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        keywords = '|'.join(re.escape(k) for k in self.SENSITIVE_KEYWORDS)
        # key=value and key: value
        self._assignment = re.compile(rf'\b((?:{keywords})\s*[=:]\s*)(?!["\'])[^\s,}}\]]+', re.IGNORECASE)
        # "key": "value" and 'key': 'value'
        self._quoted = re.compile(rf'(["\'](?:{keywords})["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE)

    def scrub(self, message: str) -> str:
        message = self._quoted.sub(r'\1****\2', message)
        return self._assignment.sub(r'\1****', message)

    def filter(self, record):
        """Replace the record's message with its scrubbed, fully formatted form."""
        if record.args:
            record.msg = self.scrub(record.getMessage())
            record.args = None
        else:
            record.msg = self.scrub(str(record.msg))
        return True


@dataclass(frozen=True)
class LoggingSettings:
    """The ``logging`` section of the configuration."""
    level: str = 'INFO'
    log_dir: str = 'logs'
    rotation: str = 'daily'
    retention_days: int = 7
    console_output: bool = True
    console_level: str = 'WARNING'
    audit_log: bool = True

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'LoggingSettings':
        known = cls.__dataclass_fields__
        return cls(**{key: value for key, value in (config or {}).items()
                      if key in known and value is not None})


class LoggingManager:
    """
    Installs and tracks the application's log handlers.

    Only handlers added by this manager are removed by :meth:`reset`.
    """

    def __init__(self):
        self.settings: Optional[LoggingSettings] = None
        self.log_dir: Optional[str] = None
        self._handlers: List[Tuple[logging.Logger, logging.Handler]] = []

    @property
    def configured(self) -> bool:
        return self.settings is not None

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging from the ``logging`` configuration section.

        Calling it again without :meth:`reset` has no effect.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        settings = LoggingSettings.from_dict(config)
        self.log_dir = self._prepare_directory(settings.log_dir)
        scrubber = SensitiveDataFilter()
        file_level = _level(settings.level, logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(file_level)
        root_logger.handlers.clear()

        file_handler = self._create_file_handler(LOG_FILE_NAME, settings)
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        self._attach(root_logger, file_handler, scrubber)

        if settings.console_output:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(settings.console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            self._attach(root_logger, console_handler, scrubber)

        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        audit_logger.setLevel(logging.INFO)
        if settings.audit_log:
            audit_handler = self._create_file_handler(AUDIT_FILE_NAME, settings)
            audit_handler.setFormatter(logging.Formatter(AUDIT_FORMAT, datefmt=DATE_FORMAT))
            self._attach(audit_logger, audit_handler, scrubber)

        # ldap3 traces every operation at DEBUG
        logging.getLogger('ldap3').setLevel(logging.WARNING)

        self.settings = settings
        removed = self.prune_rotated_logs()

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={settings.level}, dir={self.log_dir}, "
                    f"retention={settings.retention_days} days, console={settings.console_output}")
        if removed:
            logger.info(f"Removed {len(removed)} log files older than {settings.retention_days} days")

    def _attach(self, logger: logging.Logger, handler: logging.Handler, scrubber: logging.Filter) -> None:
        handler.addFilter(scrubber)
        logger.addHandler(handler)
        self._handlers.append((logger, handler))

    @staticmethod
    def _prepare_directory(log_dir: Optional[str]) -> str:
        """Create the log directory, falling back to the working directory."""
        if not log_dir:
            return '.'
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: could not create log directory {log_dir} ({e}), logging to the current directory",
                  file=sys.stderr)
            return '.'
        return log_dir

    def _create_file_handler(self, file_name: str, settings: LoggingSettings) -> logging.Handler:
        """Rotate at midnight for 'daily'/'midnight', otherwise append to one file."""
        path = os.path.join(self.log_dir, file_name)
        if str(settings.rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=path,
                when='midnight',
                backupCount=settings.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        return logging.FileHandler(path, encoding='utf-8')

    def prune_rotated_logs(self) -> List[str]:
        """Delete rotated log files older than the retention period and return their paths."""
        if not self.configured or self.settings.retention_days <= 0:
            return []

        cutoff = datetime.now() - timedelta(days=self.settings.retention_days)
        removed = []
        for file_name in (LOG_FILE_NAME, AUDIT_FILE_NAME):
            for path in glob.glob(os.path.join(self.log_dir, file_name + '.*')):
                try:
                    if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                        os.remove(path)
                        removed.append(path)
                except OSError as e:
                    logging.getLogger(__name__).warning(f"Could not remove old log file {path}: {e}")
        return removed

    def reset(self) -> None:
        """Remove and close the handlers this manager installed."""
        for logger, handler in self._handlers:
            logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        self.settings = None


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure application logging once per process."""
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class SecurityAuditLogger:
    """Writes directory access events to the ``security`` logger."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        """Record a credential validation; the password is never logged."""
        outcome = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {outcome}: {system} user={username}")

    def log_directory_bind(self, target: str, identity: str):
        self.logger.info(f"Directory bind: {target} as {identity}")

    def log_export(self, file_path: str, user_count: int):
        self.logger.info(f"Directory export: {user_count} users written to {file_path}")


security_logger = SecurityAuditLogger()
