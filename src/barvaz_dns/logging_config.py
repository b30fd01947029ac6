"""
Logging configuration for Barvaz DNS.

This module provides logging setup with support for console and rotating
file output, and changing the log level of a running service.
DuckDNS tokens are automatically masked in log messages.
"""

from __future__ import annotations

import logging
import logging.handlers
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path
    from typing import Final


# Pattern to match sensitive tokens in log messages
# Each tuple is (pattern, replacement)
# For partial masking, capture the prefix to keep and mask the rest
SENSITIVE_PATTERNS: Final[list[tuple[re.Pattern[str], str]]] = [
    # DuckDNS update URL query parameter: "...&token=<token>&..."
    # Keep first 6 characters, mask the rest
    (
        re.compile(r"(token=)(?![\"'])([^\s,\"&']{0,6})([^\s,\"&']*)", re.IGNORECASE),
        r"\1\2******",
    ),
    # TOML / repr forms: token = "<token>", token='<token>'
    (
        re.compile(r'(token\s*=\s*")(.{0,6})([^"]*)"', re.IGNORECASE),
        r'\1\2******"',
    ),
    (
        re.compile(r"(token\s*=\s*')(.{0,6})([^']*)'", re.IGNORECASE),
        r"\1\2******'",
    ),
]


# Constants
LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"
DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FILE_NAME: Final[str] = "service.log"
LOG_FILE_MAX_BYTES: Final[int] = 1024 * 1024
LOG_FILE_BACKUP_COUNT: Final[int] = 3

PACKAGE_LOGGER: Final[str] = "barvaz_dns"


class LoggingSetupError(Exception):
    """Exception raised when the log output cannot be initialized."""


class SensitiveFilter(logging.Filter):
    """
    A logging filter that masks sensitive information.

    This filter replaces DuckDNS tokens with asterisks to prevent
    credential leakage in log files.
    """

    @staticmethod
    def _mask_sensitive(value: str) -> str:
        """
        Apply all sensitive patterns to mask a string.

        Parameters
        ----------
        value : str
            The string to process.

        Returns
        -------
        str
            The string with sensitive data masked.
        """
        result = value
        for pattern, replacement in SENSITIVE_PATTERNS:
            result = pattern.sub(replacement, result)
        return result

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Filter and modify log record to mask sensitive data.

        Parameters
        ----------
        record : logging.LogRecord
            The log record to process.

        Returns
        -------
        bool
            Always returns True (record is always logged).
        """
        if record.msg:
            record.msg = self._mask_sensitive(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self._mask_sensitive(str(v)) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._mask_sensitive(str(arg)) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True


def normalize_level(level: str) -> str:
    """
    Normalize a log level name.

    Parameters
    ----------
    level : str
        Level name, case-insensitive ("debug", "Info", "warn", ...).

    Returns
    -------
    str
        Canonical level name (e.g. "WARNING").

    Raises
    ------
    ValueError
        If the level name is unknown.
    """
    name = level.strip().upper()
    if name == "WARN":
        name = "WARNING"
    if name not in LOG_LEVELS:
        msg = f'Invalid log level "{level}", expected one of: {", ".join(LOG_LEVELS)}'
        raise ValueError(msg)
    return name


def _configure_handler(handler: logging.Handler) -> None:
    """
    Configure a logging handler with formatter and sensitive filter.

    Parameters
    ----------
    handler : logging.Handler
        The handler to configure.
    """
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    sensitive_filter = SensitiveFilter()

    handler.setFormatter(formatter)
    handler.addFilter(sensitive_filter)


def setup_logging(level: str, log_dir: Path | None = None) -> None:
    """
    Set up logging for the package.

    Parameters
    ----------
    level : str
        Log level name.
    log_dir : Path | None, optional
        Directory of the rotating log file. No file logging if None.

    Raises
    ------
    LoggingSetupError
        If the level is invalid or the log file cannot be opened.
    """
    try:
        level_name = normalize_level(level)
    except ValueError as e:
        raise LoggingSetupError(str(e)) from e

    # Get the root logger for the package
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level_name)

    # Clear any existing handlers
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    # Console handler
    console_handler = logging.StreamHandler()
    _configure_handler(console_handler)
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_path = log_dir / LOG_FILE_NAME
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                str(log_path),
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as e:
            logger.critical("Failed to enable file logging: %s", e)
            msg = f'Cannot open log file "{log_path}": {e}'
            raise LoggingSetupError(msg) from e
        _configure_handler(file_handler)
        logger.addHandler(file_handler)
        logger.debug('File logging enabled: "%s".', log_path)

    # Prevent propagation to root logger
    logger.propagate = False


def set_log_level(level: str) -> str:
    """
    Change the log level of the package logger at runtime.

    Parameters
    ----------
    level : str
        New level name.

    Returns
    -------
    str
        The canonical level name that was applied.

    Raises
    ------
    ValueError
        If the level name is unknown.
    """
    level_name = normalize_level(level)
    logging.getLogger(PACKAGE_LOGGER).setLevel(level_name)
    return level_name
