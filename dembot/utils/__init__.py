"""
DemBot utilities module.
"""

from dembot.utils.config import (
    Settings,
    ensure_directories,
    get_project_root,
    get_settings,
    reset_settings,
    resolve_path,
)
from dembot.utils.logging import (
    LogContext,
    bind_context,
    configure_logging,
    ensure_logging_configured,
    get_logger,
)
from dembot.utils.metrics import (
    CommandMetrics,
    PerformanceMonitor,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reset_settings",
    "get_project_root",
    "resolve_path",
    "ensure_directories",
    # Logging
    "get_logger",
    "configure_logging",
    "ensure_logging_configured",
    "bind_context",
    "LogContext",
    # Metrics
    "PerformanceMonitor",
    "CommandMetrics",
]
