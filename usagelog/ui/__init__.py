"""Read-only dashboard for usage log databases."""

from usagelog.ui.server import (
    DashboardConfig,
    build_dashboard_url,
    create_dashboard_server,
    start_dashboard_server,
)

__all__ = [
    "DashboardConfig",
    "build_dashboard_url",
    "create_dashboard_server",
    "start_dashboard_server",
]
