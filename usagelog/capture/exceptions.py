"""Usage logger exceptions and side-channel warnings."""

import warnings


class UsageLogError(Exception):
    """Base class for usage logger errors."""


class ConfigError(UsageLogError):
    """Raised when logger configuration is invalid."""


class SinkError(UsageLogError):
    """Raised when the persistence sink cannot be opened."""


class DashboardError(UsageLogError):
    """Raised when the dashboard cannot serve the requested database."""


class UsageLogWarning(RuntimeWarning):
    """Side-channel warning for faults that must not reach the caller."""


def warn_usage_log(message: str, *, stacklevel: int = 2) -> bool:
    """Emit a ``UsageLogWarning``; return False if a filter escalated it."""
    try:
        warnings.warn(message, UsageLogWarning, stacklevel=stacklevel + 1)
    except Warning:
        # Escalated to an error by a warnings filter.
        return False
    return True
