"""
Logging configuration and utilities for spotterm
Keeps the terminal clean for the renderer: only user-facing messages reach the
console, technical detail goes to a rotating log file
"""

import asyncio
import functools
import logging
import logging.handlers
import re
import sys
import time
from pathlib import Path
from typing import Optional
import colorama
from colorama import Fore, Back, Style


# Initialize colorama for Windows compatibility
colorama.init()


EXTERNAL_LIBS = [
    'spotipy', 'spotipy.client', 'spotipy.oauth2', 'urllib3', 'requests',
    'urllib3.connectionpool', 'requests.packages.urllib3.connectionpool'
]

FILE_FORMAT = '%(asctime)s | %(name)-30s | %(levelname)-8s | %(funcName)-20s | %(message)s'


class ConsoleMessageFilter(logging.Filter):
    """
    Decides what reaches the terminal

    WARNING+ and records marked with console_output=True pass. While a live
    status line owns the terminal (see ConsoleSuspended) only records at or
    above `min_level` pass.
    """

    def __init__(self):
        super().__init__()
        self.min_level: Optional[int] = None

    def filter(self, record):
        if self.min_level is not None:
            return record.levelno >= self.min_level

        if record.levelno >= logging.WARNING:
            return True

        return bool(getattr(record, 'console_output', False))


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colored output for console"""

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.RED + Back.WHITE + Style.BRIGHT,
    }

    def __init__(self, fmt: Optional[str] = None, use_colors: bool = True):
        """
        Initialize colored formatter

        Args:
            fmt: Log format string
            use_colors: Whether to use colored output
        """
        super().__init__()
        self.use_colors = use_colors
        self.fmt = fmt or '%(message)s'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors"""
        formatter = logging.Formatter(self.fmt)
        if self.use_colors and record.levelname in self.COLORS:
            # Copy so other handlers see the plain level name
            record_copy = logging.makeLogRecord(record.__dict__)
            record_copy.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{Style.RESET_ALL}"
            if record.levelno >= logging.WARNING:
                record_copy.msg = f"{self.COLORS[record.levelname]}{record.getMessage()}{Style.RESET_ALL}"
                record_copy.args = None
            return formatter.format(record_copy)
        return formatter.format(record)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    console_output: bool = True,
    colored_output: bool = True,
    max_size: str = "10MB",
    backup_count: int = 3
) -> None:
    """
    Setup application logging configuration with separated console/file output

    Args:
        level: Logging level for the file handler (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (None to disable file logging)
        console_output: Enable console logging
        colored_output: Enable colored console output
        max_size: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture everything, filter at handler level

    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    # Console handler - only user-facing messages (WARNING+ or explicitly marked)
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)  # Let filter decide what to show
        console_handler.addFilter(ConsoleMessageFilter())
        console_handler.setFormatter(ColoredFormatter(fmt='%(message)s', use_colors=colored_output))
        root_logger.addHandler(console_handler)

    # File handler with full detail logging
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=parse_size(max_size),
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        root_logger.addHandler(file_handler)

    silence_external_loggers()

    logger = logging.getLogger('spotterm')
    logger.info(f"Logging initialized - Level: {level}, Console: {console_output}, File: {log_file}")


def silence_external_loggers() -> None:
    """Stop spotipy and the HTTP stack from writing over the terminal."""
    for lib in EXTERNAL_LIBS:
        logger = logging.getLogger(lib)
        logger.setLevel(logging.CRITICAL)
        logger.propagate = False


def get_current_log_file() -> Optional[Path]:
    """
    Get the current log file path from active file handlers

    Returns:
        Path to current log file or None if no file logging
    """
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            return Path(handler.baseFilename)
    return None


class ConsoleSuspended:
    """
    Context manager that keeps the console quiet while a live view redraws

    Records below `level` stay out of the terminal (they still reach the log
    file). The previous thresholds are restored on exit.
    """

    def __init__(self, level: str = "CRITICAL"):
        self.level = getattr(logging, level.upper())
        self._saved = []

    def __enter__(self):
        for handler in logging.getLogger().handlers:
            for log_filter in handler.filters:
                if isinstance(log_filter, ConsoleMessageFilter):
                    self._saved.append((log_filter, log_filter.min_level))
                    log_filter.min_level = self.level
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for log_filter, level in self._saved:
            log_filter.min_level = level
        self._saved = []


def parse_size(size_str: str) -> int:
    """
    Parse size string to bytes

    Args:
        size_str: Size string like "10MB", "1GB", "500KB"

    Returns:
        Size in bytes

    Raises:
        ValueError: If the string is not a number followed by a unit
    """
    size_str = size_str.upper().strip()

    multipliers = {
        'B': 1,
        'KB': 1024,
        'MB': 1024 ** 2,
        'GB': 1024 ** 3,
        'TB': 1024 ** 4,
    }

    match = re.match(r'^(\d+(?:\.\d+)?)\s*([KMGT]?B)$', size_str)
    if not match:
        raise ValueError(f"Invalid size format: {size_str}")

    number, unit = match.groups()
    return int(float(number) * multipliers[unit])


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance for a module

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance with a console_info helper attached
    """
    logger = logging.getLogger(name)

    def console_info(message: str):
        """Log message that should appear on console for user"""
        logger.info(message, extra={'console_output': True})

    logger.console_info = console_info

    return logger


def configure_from_settings() -> None:
    """Configure logging from application settings"""
    # spotterm.config imports this module
    from ..config.settings import get_settings

    settings = get_settings()

    log_file_path = None
    if settings.logging.file:
        if Path(settings.logging.file).is_absolute():
            log_file_path = settings.logging.file
        else:
            log_file_path = settings.get_config_directory() / settings.logging.file

    setup_logging(
        level=settings.logging.level,
        log_file=str(log_file_path) if log_file_path else None,
        console_output=settings.logging.console_output,
        colored_output=settings.logging.colored_output,
        max_size=settings.logging.max_size,
        backup_count=settings.logging.backup_count
    )


def log_performance(func):
    """Decorator to log call duration (to file only); works on sync and async functions"""
    logger = get_logger(func.__module__)

    if asyncio.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.debug(f"{func.__qualname__} failed after {time.monotonic() - start_time:.3f}s: {e}")
                raise
            logger.debug(f"{func.__qualname__} completed in {time.monotonic() - start_time:.3f}s")
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.debug(f"{func.__qualname__} failed after {time.monotonic() - start_time:.3f}s: {e}")
            raise
        logger.debug(f"{func.__qualname__} completed in {time.monotonic() - start_time:.3f}s")
        return result

    return wrapper
