"""
Logging setup and configuration for Uyuni LDAP Sync.

This module provides centralized logging configuration with file rotation,
retention policies, console output and scrubbing of credentials.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'truststore_password',
        'token', 'secret', 'session', 'credential', 'pass', 'pwd'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # key=value
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern = rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)'
                msg = re.sub(pattern, r'\1****\2', msg, flags=re.IGNORECASE)

            # 'key': 'value' as printed for dicts, or "key": "value" in JSON
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern = rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])'
                msg = re.sub(pattern, r'\1****\2', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for the Uyuni LDAP Sync application.

    Provides file-based logging with rotation, retention policies, and
    console output for cron and container runs.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

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
                # Fallback to current directory if log directory creation fails
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
        log_file = os.path.join(self.log_dir, 'app.log')

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

        for log_file in glob.glob(os.path.join(self.log_dir, 'app.log*')):
            if log_file.endswith('app.log'):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except (OSError, ValueError) as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        """Forget the current configuration so setup_logging can run again."""
        self.configured = False


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

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        """Log authentication attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} user={username}")

    def log_user_operation(self, operation: str, uid: str, success: bool):
        """Log user operations for audit trail."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"User operation {status}: {operation} user={uid}")

    def log_security_event(self, event: str, details: str = ""):
        """Log general security events."""
        message = f"Security event: {event}"
        if details:
            message += f" - {details}"
        self.logger.warning(message)


# Global security logger instance
security_logger = SecurityAuditLogger()
