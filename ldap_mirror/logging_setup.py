"""
Logging setup and configuration for LDAP Mirror.

Configures the root logger once per process: a rotating log file, optional
console output and scrubbing of credentials from every message.
"""

import glob
import logging
import logging.handlers
import os
import re
from datetime import datetime, timedelta
from typing import Dict, Any, List


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'userPassword', 'secret', 'credential',
        'pwd', 'token', 'authorization'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value and key: value
            self._patterns.append((re.compile(rf'({keyword}\s*[=:]\s*)(?!["\s])[^\s,}}\]]+',
                                              re.IGNORECASE), r'\1****'))
            # "key": "value" in JSON or repr'd dicts
            self._patterns.append((re.compile(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])',
                                              re.IGNORECASE), r'\1****\2'))

    def scrub(self, message: str) -> str:
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            message = str(record.msg)
            if record.args:
                try:
                    message = message % record.args
                    record.args = None
                except (TypeError, ValueError):
                    pass
            record.msg = self.scrub(message)
        return True


class LoggingManager:
    """
    Manages logging configuration for the LDAP Mirror application.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: ``logging`` section of the configuration
        """
        if self.configured:
            return

        logging_config = config or {}
        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'INFO').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

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
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
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
        """
        log_file = os.path.join(self.log_dir, 'ldap-mirror.log')

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
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith('ldap-mirror.log'):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, 'ldap-mirror.log*')))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Special logger for security-related events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_bind_attempt(self, server: str, bind_dn: str, success: bool):
        """Log bind attempts against the source or the local store."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Bind {status}: {server} dn={bind_dn}")

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")


# Global security logger instance
security_logger = SecurityAuditLogger()
