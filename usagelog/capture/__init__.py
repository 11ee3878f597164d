"""Capture subsystem: field extraction, row building and stream aggregation."""

from usagelog.capture.exceptions import (
    ConfigError,
    DashboardError,
    SinkError,
    UsageLogError,
    UsageLogWarning,
    warn_usage_log,
)
from usagelog.capture.rows import (
    ABORTED_FINISH_REASON,
    ERROR_FINISH_REASON,
    LLMCallRow,
    build_error_row,
    build_response_row,
    build_success_row,
)
from usagelog.capture.stream import StreamAggregator
from usagelog.capture.usage import TokenUsage, normalize_usage
from usagelog.capture.wrap import (
    LanguageModel,
    LanguageModelMiddleware,
    WrappedLanguageModel,
    intercept_language_model,
    wrap_language_model,
)

__all__ = [
    "UsageLogError",
    "ConfigError",
    "SinkError",
    "DashboardError",
    "UsageLogWarning",
    "warn_usage_log",
    "LLMCallRow",
    "ERROR_FINISH_REASON",
    "ABORTED_FINISH_REASON",
    "build_success_row",
    "build_response_row",
    "build_error_row",
    "StreamAggregator",
    "TokenUsage",
    "normalize_usage",
    "LanguageModel",
    "LanguageModelMiddleware",
    "WrappedLanguageModel",
    "wrap_language_model",
    "intercept_language_model",
]
