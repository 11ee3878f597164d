"""SQLite persistence for usage log rows."""

from usagelog.storage.encoding import ensure_sqlite_compatible, safe_json_dumps, safe_parse_json
from usagelog.storage.redaction import (
    DEFAULT_REDACTION_POLICY,
    DISABLED_REDACTION_POLICY,
    RedactionPolicy,
    redact_keys,
)
from usagelog.storage.sqlite import (
    COLUMNS,
    DEFAULT_FILE_NAME,
    TABLE_NAME,
    LogReader,
    SqliteSink,
    row_values,
)

__all__ = [
    "safe_json_dumps",
    "safe_parse_json",
    "ensure_sqlite_compatible",
    "RedactionPolicy",
    "DEFAULT_REDACTION_POLICY",
    "DISABLED_REDACTION_POLICY",
    "redact_keys",
    "COLUMNS",
    "DEFAULT_FILE_NAME",
    "TABLE_NAME",
    "SqliteSink",
    "LogReader",
    "row_values",
]
