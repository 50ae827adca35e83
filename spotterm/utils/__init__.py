"""
Utilities package
Logging setup and small formatting helpers
"""

from .logger import (
    get_logger,
    configure_from_settings,
    setup_logging,
    log_performance,
    get_current_log_file
)
from .helpers import (
    format_duration,
    format_position,
    backoff_delay,
    truncate_string
)

__all__ = [
    # Logger exports
    'get_logger',
    'configure_from_settings',
    'setup_logging',
    'log_performance',
    'get_current_log_file',

    # Helper exports
    'format_duration',
    'format_position',
    'backoff_delay',
    'truncate_string',
]
