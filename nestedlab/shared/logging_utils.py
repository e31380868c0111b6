"""
Centralized Status Output - Single Source of Truth for Operator Messages

Every status line the operator sees (step start, created/exists, warnings,
failures) is built here. Icons and formatting are never hardcoded elsewhere.

Usage:
    from nestedlab.shared.logging_utils import log_message, LogLevel, LogCategory

    message = log_message("Creating VM switch LabSwitch", LogCategory.HYPERV, LogLevel.RUNNING)
    # Returns: "⏳ Creating VM switch LabSwitch"

    message = log_message("Rule WinRM-HTTPS", LogCategory.FIREWALL, LogLevel.EXISTS)
    # Returns: "= Rule WinRM-HTTPS"

Architecture:
    - LogLevel: Describes the state (SUCCESS, RUNNING, WARNING, CREATED, ...)
    - LogCategory: Describes the lab area (TERRAFORM, REMOTING, CLUSTER, ...)
    - log_message(): Maps (category, level) -> icon + formatting
    - create_*_dict(): Payloads for the JSON deploy report
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple


class LogLevel(str, Enum):
    """
    Describes the status/state of a message.

    Used to select appropriate icon.
    """
    SUCCESS = "success"          # ✅ Step completed
    CREATED = "created"          # ➕ Resource created
    EXISTS = "exists"            # = Resource already present, nothing done
    SKIPPED = "skipped"          # ⏭️ Step not needed / disabled

    RUNNING = "running"          # ⏳ Step in progress
    WAITING = "waiting"          # ⏸️ Waiting on a host or operator

    INFO = "info"                # ℹ️ Informational

    WARNING = "warning"          # ⚠️ Non-fatal issue, operator may continue
    ERROR = "error"              # ❌ Fatal


class LogCategory(str, Enum):
    """
    Describes the lab area emitting the message.
    """
    CONFIG = "config"
    TERRAFORM = "terraform"
    REMOTING = "remoting"
    FIREWALL = "firewall"
    WMI = "wmi"
    HYPERV = "hyperv"
    GUEST = "guest"
    CLUSTER = "cluster"
    STORAGE = "storage"
    DIAGNOSTICS = "diagnostics"
    WORKFLOW = "workflow"


LEVEL_ICONS: Dict[LogLevel, str] = {
    LogLevel.SUCCESS: "✅",
    LogLevel.CREATED: "➕",
    LogLevel.EXISTS: "=",
    LogLevel.SKIPPED: "⏭️",
    LogLevel.RUNNING: "⏳",
    LogLevel.WAITING: "⏸️",
    LogLevel.INFO: "ℹ️",
    LogLevel.WARNING: "⚠️",
    LogLevel.ERROR: "❌",
}

# Category-specific overrides: (LogCategory, LogLevel) -> icon
ICON_MAP: Dict[Tuple[LogCategory, LogLevel], str] = {
    (LogCategory.TERRAFORM, LogLevel.RUNNING): "🏗️",
    (LogCategory.REMOTING, LogLevel.WAITING): "📡",
    (LogCategory.STORAGE, LogLevel.RUNNING): "💾",
    (LogCategory.CLUSTER, LogLevel.RUNNING): "🔗",
    (LogCategory.DIAGNOSTICS, LogLevel.RUNNING): "🔍",
    (LogCategory.WORKFLOW, LogLevel.SUCCESS): "🎉",
}

# Default fallback for unmapped combinations
DEFAULT_ICON = "◆"


def get_icon(category: LogCategory, level: LogLevel) -> str:
    """
    Get the icon for a given category and level combination.

    Category overrides win over the per-level icon.
    """
    return ICON_MAP.get((category, level)) or LEVEL_ICONS.get(level, DEFAULT_ICON)


def log_message(
    message: str,
    category: LogCategory,
    level: LogLevel,
    include_icon: bool = True,
    icon_override: Optional[str] = None,
) -> str:
    """
    Generate a formatted status message with appropriate icon.

    Args:
        message: The message text (without icon)
        category: The lab area (LogCategory enum)
        level: The status/state (LogLevel enum)
        include_icon: Whether to prepend the icon (default True)
        icon_override: Optional custom icon

    Returns:
        Formatted message string with icon prefix if include_icon=True

    Examples:
        >>> log_message("Applying plan", LogCategory.TERRAFORM, LogLevel.RUNNING)
        '🏗️ Applying plan'

        >>> log_message("Cluster created", LogCategory.CLUSTER, LogLevel.SUCCESS)
        '✅ Cluster created'
    """
    if not include_icon:
        return message

    icon = icon_override or get_icon(category, level)
    return f"{icon} {message}"


def create_status_dict(
    message: str,
    category: LogCategory,
    level: LogLevel,
    done: bool = False,
) -> Dict[str, Any]:
    """
    Create a status entry for the JSON deploy report.

    Returns:
        Dict with "type": "status" and formatted "data"
    """
    return {
        "type": "status",
        "data": {
            "category": category.value,
            "level": level.value,
            "description": log_message(message, category, level),
            "done": done,
        },
    }


def create_error_dict(message: str, category: LogCategory, done: bool = True) -> Dict[str, Any]:
    """Create an error status entry (shorthand)."""
    return create_status_dict(message, category, LogLevel.ERROR, done=done)


def create_success_dict(message: str, category: LogCategory, done: bool = True) -> Dict[str, Any]:
    """Create a success status entry (shorthand)."""
    return create_status_dict(message, category, LogLevel.SUCCESS, done=done)
