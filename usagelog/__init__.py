"""LLM usage logger: records every model call to a local SQLite database."""

from usagelog.capture import (
    ConfigError,
    DashboardError,
    LLMCallRow,
    SinkError,
    UsageLogError,
    UsageLogWarning,
    intercept_language_model,
    wrap_language_model,
)
from usagelog.config import LoggerOptions
from usagelog.middleware import (
    PersistenceDiagnostic,
    UsageLoggerMiddleware,
    create_usage_logger_middleware,
)
from usagelog.storage import LogReader, SqliteSink

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "LoggerOptions",
    "UsageLoggerMiddleware",
    "PersistenceDiagnostic",
    "create_usage_logger_middleware",
    "wrap_language_model",
    "intercept_language_model",
    "LLMCallRow",
    "SqliteSink",
    "LogReader",
    "UsageLogError",
    "ConfigError",
    "SinkError",
    "DashboardError",
    "UsageLogWarning",
]
