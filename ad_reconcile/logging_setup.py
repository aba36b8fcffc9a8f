"""
Logging setup and configuration for AD Reconcile.

This module provides centralized logging configuration including file rotation,
retention cleanup, scrubbing of credentials, and the audit logger that mirrors
every ledger result into the log sink.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Any, Dict, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'api_key', 'app_token',
        'user_token', 'session_token', 'access_token'
    ]

    _ASSIGNMENT = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _JSON_QUOTED = [
        re.compile(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _AUTH_HEADER = re.compile(r'(Authorization:\s*(?:Bearer|Basic|token|user_token)\s+)[^\s,}\]]+', re.IGNORECASE)

    def filter(self, record):
        """Scrub sensitive values from the formatted message."""
        msg = record.getMessage()
        for pattern in self._ASSIGNMENT:
            msg = pattern.sub(r'\1****', msg)
        for pattern in self._JSON_QUOTED:
            msg = pattern.sub(r'\1****\2', msg)
        msg = self._AUTH_HEADER.sub(r'\1****', msg)

        record.msg = msg
        record.args = None
        return True


class LoggingManager:
    """
    Manages logging configuration for AD Reconcile.

    Provides file-based logging with rotation and retention, plus console
    output whose verbosity follows the ``--verbose`` flag.
    """

    LOG_FILE = 'app.log'
    FILE_FORMAT = ('%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s', '%Y-%m-%d %H:%M:%S')
    CONSOLE_FORMAT = ('%(asctime)s [%(levelname)s] %(message)s', '%H:%M:%S')

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
        self._scrubber = SensitiveDataFilter()

    def setup_logging(self, config: Optional[Dict[str, Any]], verbose: bool = False) -> None:
        """
        Install the file and console handlers on the root logger.

        Args:
            config: The ``logging`` section of the configuration
            verbose: Force DEBUG on the root logger and every handler
        """
        if self.configured:
            return

        settings = config or {}
        file_level = 'DEBUG' if verbose else str(settings.get('level', 'INFO')).upper()
        console_level = 'DEBUG' if verbose else str(settings.get('console_level', 'WARNING')).upper()
        with_console = settings.get('console_output', True)
        self.log_dir = settings.get('log_dir', 'logs')
        self.retention_days = settings.get('retention_days', 7)

        self._prepare_log_dir()

        handlers = [self._attach(self._file_handler(settings.get('rotation', 'daily')),
                                 file_level, self.FILE_FORMAT)]
        if with_console:
            handlers.append(self._attach(logging.StreamHandler(), console_level, self.CONSOLE_FORMAT))

        root = logging.getLogger()
        root.setLevel(getattr(logging, file_level, logging.INFO))
        root.handlers[:] = handlers

        self.purge_expired()
        self.configured = True

        logging.getLogger(__name__).info(
            "Logging ready: level=%s dir=%s retention=%sd console=%s",
            file_level, self.log_dir, self.retention_days, with_console)

    def _attach(self, handler: logging.Handler, level: str, fmt: tuple) -> logging.Handler:
        handler.setLevel(getattr(logging, level, logging.INFO))
        handler.setFormatter(logging.Formatter(fmt[0], datefmt=fmt[1]))
        handler.addFilter(self._scrubber)
        return handler

    def _prepare_log_dir(self) -> None:
        if not self.log_dir or os.path.isdir(self.log_dir):
            return
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: log directory {self.log_dir} unavailable ({e}), logging to current directory")
            self.log_dir = '.'

    def _file_handler(self, rotation: str) -> logging.Handler:
        """Rotate at midnight for 'daily'/'midnight'; anything else is a plain append file."""
        path = os.path.join(self.log_dir, self.LOG_FILE)
        if str(rotation).lower() not in ('daily', 'midnight'):
            return logging.FileHandler(path, encoding='utf-8')

        handler = logging.handlers.TimedRotatingFileHandler(
            path, when='midnight', backupCount=self.retention_days, encoding='utf-8')
        handler.suffix = '%Y-%m-%d'
        return handler

    def purge_expired(self) -> int:
        """Delete rotated logs and ledger files past the retention window. Returns the count removed."""
        if not self.log_dir or self.retention_days <= 0:
            return 0

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        candidates = glob.glob(os.path.join(self.log_dir, f'{self.LOG_FILE}.*'))
        candidates += glob.glob(os.path.join(self.log_dir, 'ledger-*.log'))

        removed = 0
        for path in candidates:
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    removed += 1
            except OSError as e:
                print(f"Warning: retention could not delete {path}: {e}")
        return removed

    def ledger_path(self, started_at: datetime) -> str:
        """Path of the timestamped ledger file for a run."""
        return os.path.join(self.log_dir or 'logs', f"ledger-{started_at.strftime('%Y%m%d-%H%M%S')}.log")

    def get_log_files(self) -> list:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, f'{self.LOG_FILE}*')))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], verbose: bool = False) -> None:
    """Convenience function to set up logging."""
    _logging_manager.setup_logging(config, verbose)


def ledger_path(started_at: datetime) -> str:
    return _logging_manager.ledger_path(started_at)


class AuditLogger:
    """Writes one log line per ledger result to the 'audit' logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_result(self, reconciliation: str, result) -> None:
        level = logging.WARNING if result.status.value == 'failed' else logging.INFO
        self.logger.log(level, f"[{reconciliation}] {result.status.value.upper()} "
                               f"{result.action.value} {result.subject_key}: {result.detail}")

    def log_authentication_attempt(self, system: str, principal: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} principal={principal}")


# Global audit logger instance
audit_logger = AuditLogger()
