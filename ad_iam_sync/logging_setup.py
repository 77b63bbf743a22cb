"""
Logging setup and the audit trail for AD/IAM Group Sync.

This module provides centralized logging configuration (file rotation,
retention and container-friendly console output) and the AuditSink, an
append-only, leveled record of every check and membership change a run makes.
"""

import os
import re
import sys
import glob
import logging
import logging.handlers
import threading
from typing import Dict, Any, Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

# Audit levels that have no standard logging equivalent
CALL = 15
MSSG = 25

logging.addLevelName(CALL, 'CALL')
logging.addLevelName(MSSG, 'MSSG')

AUDIT_LEVELS = {
    'CALL': CALL,
    'INFO': logging.INFO,
    'MSSG': MSSG,
    'WARN': logging.WARNING,
    'ERROR': logging.ERROR,
    'FATAL': logging.CRITICAL,
}


def _level(name: Optional[str], default: int) -> int:
    """Translate a configured level name (standard or audit) to a number."""
    if not name:
        return default
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else default


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in log records before any handler writes them."""

    SENSITIVE_KEYWORDS = (
        'bind_password', 'smtp_password', 'password', 'pwd',
        'aws_secret_access_key', 'aws_session_token', 'access_key',
        'token', 'secret', 'credential', 'authorization', 'bearer'
    )

    def __init__(self, name: str = ''):
        super().__init__(name)
        keys = '|'.join(self.SENSITIVE_KEYWORDS)
        self._patterns = [
            # key=value
            (re.compile(rf'((?:{keys})\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'),
            # "key": "value"
            (re.compile(rf'("(?:{keys})"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'),
            # "key": value
            (re.compile(rf'("(?:{keys})"\s*:\s*)[^",}}\s]+', re.IGNORECASE), r'\1****'),
        ]

    def scrub(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = self.scrub(message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = None
        return True


class LoggingManager:
    """
    Configures the root logger once per process.

    Application records go to ``app.log``, rotated at midnight and kept for
    ``retention_days``, and optionally to the console at its own level.
    """

    FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
    CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        config = config or {}
        level = _level(config.get('level'), logging.INFO)
        self.log_dir = self._prepare_directory(config.get('log_dir', 'logs'))
        self.retention_days = int(config.get('retention_days', 7))
        scrubber = SensitiveDataFilter()

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        file_handler = self._file_handler(config.get('rotation', 'daily'))
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(self.FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        file_handler.addFilter(scrubber)
        root_logger.addHandler(file_handler)

        console_enabled = config.get('console_output', True)
        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(config.get('console_level'), logging.WARNING))
            console_handler.setFormatter(logging.Formatter(self.CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            console_handler.addFilter(scrubber)
            root_logger.addHandler(console_handler)

        self._purge_expired_logs()
        self.configured = True

        logger.info(f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    @staticmethod
    def _prepare_directory(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: Could not create log directory {log_dir} ({e}); "
                  f"logging to the current directory", file=sys.stderr)
            return '.'
        return log_dir

    def _file_handler(self, rotation: str) -> logging.Handler:
        log_file = os.path.join(self.log_dir, 'app.log')

        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler

        return logging.FileHandler(log_file, encoding='utf-8')

    def _purge_expired_logs(self) -> None:
        """Delete rotated application logs older than the retention period."""
        if self.retention_days <= 0:
            return

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        for path in glob.glob(os.path.join(self.log_dir, 'app.log.*')):
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
            except OSError as e:
                print(f"Warning: Could not remove old log file {path}: {e}", file=sys.stderr)


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure process-wide logging (only the first call has any effect)."""
    _logging_manager.setup_logging(config)


class AuditSink:
    """
    Append-only audit trail for sync runs.

    Records go to ``audit.log`` in the configured directory and propagate to
    the application log. Sinks writing to the same file share one handler,
    which is closed when the last of them is closed. Writing never raises
    into the caller; failures are reported on standard error.
    """

    LOGGER_NAME = 'ad_iam_sync.audit'

    # audit.log path -> [handler, number of open sinks using it]
    _shared_handlers: Dict[str, list] = {}
    _shared_lock = threading.Lock()

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        audit_config = config or {}
        self.enabled = audit_config.get('enabled', True)
        self.log_dir = audit_config.get('log_dir')
        self.logger = logging.getLogger(self.LOGGER_NAME)
        self.logger.setLevel(CALL)
        self._handler = None
        self._path = None

        if self.enabled and self.log_dir:
            self._attach_file_handler()

    def _attach_file_handler(self):
        path = os.path.abspath(os.path.join(self.log_dir, 'audit.log'))

        with self._shared_lock:
            entry = self._shared_handlers.get(path)
            if entry is not None:
                entry[1] += 1
                self._handler, self._path = entry[0], path
                return

            try:
                os.makedirs(self.log_dir, exist_ok=True)
                handler = logging.FileHandler(path, mode='a', encoding='utf-8')
            except OSError as e:
                print(f"Warning: Could not open audit log in {self.log_dir}: {e}", file=sys.stderr)
                return

            handler.setLevel(CALL)
            handler.setFormatter(logging.Formatter('%(asctime)s [%(audit_level)s] %(message)s',
                                                   datefmt='%Y-%m-%d %H:%M:%S'))
            handler.addFilter(SensitiveDataFilter())
            self.logger.addHandler(handler)
            self._shared_handlers[path] = [handler, 1]
            self._handler, self._path = handler, path

    def log(self, level: str, message: str) -> None:
        """
        Record an audit event.

        Args:
            level: One of CALL, INFO, MSSG, WARN, ERROR, FATAL
            message: Event description
        """
        if not self.enabled:
            return

        name = level.upper() if level.upper() in AUDIT_LEVELS else 'INFO'
        try:
            self.logger.log(AUDIT_LEVELS[name], message, extra={'audit_level': name})
        except Exception as e:
            print(f"Audit write failed ({level}: {message}): {e}", file=sys.stderr)

    def call(self, message: str) -> None:
        self.log('CALL', message)

    def info(self, message: str) -> None:
        self.log('INFO', message)

    def message(self, message: str) -> None:
        self.log('MSSG', message)

    def warn(self, message: str) -> None:
        self.log('WARN', message)

    def error(self, message: str) -> None:
        self.log('ERROR', message)

    def fatal(self, message: str) -> None:
        self.log('FATAL', message)

    def close(self) -> None:
        """Release the audit file; the last sink using it closes the handler."""
        if self._handler is None:
            return

        with self._shared_lock:
            entry = self._shared_handlers.get(self._path)
            if entry is not None and entry[0] is self._handler:
                entry[1] -= 1
                if entry[1] <= 0:
                    del self._shared_handlers[self._path]
                    self.logger.removeHandler(self._handler)
                    self._handler.close()
            self._handler = None
            self._path = None
