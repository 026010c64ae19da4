"""
Logging setup and configuration for IdP User Sync.

Configures a daily-rotating log file with retention clean-up plus optional
console output, scrubs credentials from every record, and provides the audit
logger that records every change made to local accounts.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, Optional
from datetime import datetime, timedelta

LOG_FILE_NAME = 'idp_user_sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'smtp_password', 'token', 'secret', 'secret_key', 'api_key',
        'key', 'authorization', 'client_secret', 'access_token', 'pwd'
    ]

    # Authorization schemes the IdP accepts
    AUTH_SCHEME = re.compile(r'\b(SSWS|Bearer|Basic)(\s+)[^\s,}\]\'"]+', re.IGNORECASE)

    def __init__(self):
        super().__init__()
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            self._patterns.append((re.compile(rf'(\b{keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
            # "key": "value"
            self._patterns.append((re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
            # "key": value
            self._patterns.append((re.compile(rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])', re.IGNORECASE),
                                   r'\1****\3'))

    def scrub(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return self.AUTH_SCHEME.sub(r'\1\2****', text)

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for the IdP User Sync application.

    Provides file-based logging with rotation and retention policies, and
    console output for interactive runs.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]], force: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            force: Reconfigure even if logging was already set up
        """
        if self.configured and not force:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> list:
        """Get list of current log files."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], force: bool = False) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        force: Reconfigure even if logging was already set up
    """
    _logging_manager.setup_logging(config, force=force)


class AuditLogger:
    """Audit trail of changes made to local accounts."""

    def __init__(self, name: str = 'audit'):
        self.logger = logging.getLogger(name)

    def account_created(self, user_id: int, remote_id: str, login: str):
        self.logger.info(f"Account created: user={user_id} remote={remote_id} login={login}")

    def profile_overwritten(self, user_id: int, remote_id: str, fields):
        self.logger.info(f"Profile overwritten: user={user_id} remote={remote_id} fields={','.join(sorted(fields))}")

    def supervisor_linked(self, user_id: int, supervisor_id: int):
        self.logger.info(f"Supervisor linked: user={user_id} supervisor={supervisor_id}")

    def activation_changed(self, user_id: int, active: bool):
        state = "ACTIVATED" if active else "DEACTIVATED"
        self.logger.info(f"Account {state}: user={user_id}")

    def config_changed(self, keys):
        self.logger.info(f"Configuration saved: keys={','.join(keys)}")


audit_logger = AuditLogger()
