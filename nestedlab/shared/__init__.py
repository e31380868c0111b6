"""
Shared utilities for the nestedlab controller.

Provides centralized status formatting used by every service and the CLI.
"""

from .logging_utils import (
    LogLevel,
    LogCategory,
    log_message,
    create_status_dict,
    create_error_dict,
    create_success_dict,
    get_icon,
)

__all__ = [
    "LogLevel",
    "LogCategory",
    "log_message",
    "create_status_dict",
    "create_error_dict",
    "create_success_dict",
    "get_icon",
]
