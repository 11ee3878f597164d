"""SQLite sink for log rows and the read-only reader used by the dashboard."""

from __future__ import annotations

import asyncio
from pathlib import Path
import sqlite3
import threading
from typing import TYPE_CHECKING, Any

from usagelog.capture.exceptions import DashboardError, SinkError
from usagelog.capture.rows import LLMCallRow
from usagelog.storage.encoding import ensure_sqlite_compatible, safe_json_dumps, safe_parse_json
from usagelog.storage.redaction import DEFAULT_REDACTION_POLICY, RedactionPolicy, redact_keys

if TYPE_CHECKING:
    from usagelog.config import LoggerOptions

DEFAULT_FILE_NAME = "llm-usage.db"
TABLE_NAME = "llm_calls"
PREVIEW_LENGTH = 140

_DDL = """
CREATE TABLE IF NOT EXISTS llm_calls (
    id                      TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
    timestamp               TEXT NOT NULL,
    model_id                TEXT,
    tags_json               TEXT,

    input_text              TEXT,
    input_json              TEXT,
    prompt_json             TEXT,

    output_text             TEXT,
    output_json             TEXT,
    content_json            TEXT,
    reasoning_text          TEXT,
    reasoning_json          TEXT,

    input_tokens            INTEGER,
    output_tokens           INTEGER,
    total_tokens            INTEGER,
    cached_input_tokens     INTEGER,
    reasoning_tokens        INTEGER,
    output_reasoning_tokens INTEGER,

    request_tools_json      TEXT,
    response_tools_json     TEXT,
    tool_count              INTEGER,
    tool_names_json         TEXT,
    parallel_tool_calls     INTEGER,

    temperature             REAL,
    top_p                   REAL,
    max_output_tokens       INTEGER,

    finish_reason           TEXT,
    latency_ms              INTEGER,
    warnings_json           TEXT,
    request_id              TEXT,
    response_id             TEXT,
    headers_json            TEXT,
    meta_json               TEXT,
    error_json              TEXT
);
CREATE INDEX IF NOT EXISTS llm_calls_time_idx  ON llm_calls (timestamp DESC);
CREATE INDEX IF NOT EXISTS llm_calls_model_idx ON llm_calls (model_id, timestamp DESC);
"""

COLUMNS = (
    "id",
    "timestamp",
    "model_id",
    "tags_json",
    "input_text",
    "input_json",
    "prompt_json",
    "output_text",
    "output_json",
    "content_json",
    "reasoning_text",
    "reasoning_json",
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "cached_input_tokens",
    "reasoning_tokens",
    "output_reasoning_tokens",
    "request_tools_json",
    "response_tools_json",
    "tool_count",
    "tool_names_json",
    "parallel_tool_calls",
    "temperature",
    "top_p",
    "max_output_tokens",
    "finish_reason",
    "latency_ms",
    "warnings_json",
    "request_id",
    "response_id",
    "headers_json",
    "meta_json",
    "error_json",
)

JSON_COLUMNS = frozenset(column for column in COLUMNS if column.endswith("_json"))

_INSERT = f"INSERT INTO {TABLE_NAME} ({', '.join(COLUMNS)}) VALUES ({', '.join('?' for _ in COLUMNS)})"


def row_values(
    row: LLMCallRow,
    *,
    redaction_policy: RedactionPolicy = DEFAULT_REDACTION_POLICY,
) -> tuple[Any, ...]:
    """Flatten a row into insert parameters, in ``COLUMNS`` order."""
    flat = {
        "id": row.id,
        "timestamp": row.timestamp,
        "model_id": row.model_id,
        "tags_json": safe_json_dumps(row.tags),
        "input_text": row.input_text,
        "input_json": safe_json_dumps(redact_keys(row.input_json, policy=redaction_policy)),
        "prompt_json": safe_json_dumps(row.prompt_json),
        "output_text": row.output_text,
        "output_json": safe_json_dumps(row.output_json),
        "content_json": safe_json_dumps(row.content_json),
        "reasoning_text": row.reasoning_text,
        "reasoning_json": safe_json_dumps(row.reasoning_json),
        "input_tokens": row.input_tokens,
        "output_tokens": row.output_tokens,
        "total_tokens": row.total_tokens,
        "cached_input_tokens": row.cached_input_tokens,
        "reasoning_tokens": row.reasoning_tokens,
        "output_reasoning_tokens": row.output_reasoning_tokens,
        "request_tools_json": safe_json_dumps(row.request_tools_json),
        "response_tools_json": safe_json_dumps(row.response_tools_json),
        "tool_count": row.tool_count,
        "tool_names_json": safe_json_dumps(row.tool_names),
        "parallel_tool_calls": row.parallel_tool_calls,
        "temperature": row.temperature,
        "top_p": row.top_p,
        "max_output_tokens": row.max_output_tokens,
        "finish_reason": row.finish_reason,
        "latency_ms": row.latency_ms,
        "warnings_json": safe_json_dumps(row.warnings),
        "request_id": row.request_id,
        "response_id": row.response_id,
        "headers_json": safe_json_dumps(redact_keys(row.headers_json, policy=redaction_policy)),
        "meta_json": safe_json_dumps(row.meta),
        "error_json": safe_json_dumps(row.error),
    }
    return tuple(ensure_sqlite_compatible(flat[column]) for column in COLUMNS)


class SqliteSink:
    """Append-only SQLite sink; one ``save`` per finalized row.

    Physical writes run in a worker thread and are serialized by a lock, so
    concurrent ``save`` calls from independent tasks never interleave.
    """

    def __init__(
        self,
        dir_path: Path | str,
        file_name: str = DEFAULT_FILE_NAME,
        *,
        wal: bool = True,
        redaction_policy: RedactionPolicy = DEFAULT_REDACTION_POLICY,
    ) -> None:
        self.db_path = Path(dir_path) / file_name
        self.redaction_policy = redaction_policy
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            if wal:
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_DDL)
            self._conn.commit()
        except (OSError, sqlite3.Error) as error:
            raise SinkError(f"cannot open usage log database at {self.db_path}: {error}") from error

    @classmethod
    def from_options(cls, options: LoggerOptions) -> "SqliteSink":
        return cls(
            options.dir_path,
            options.file_name,
            wal=options.sqlite_wal,
            redaction_policy=options.redaction_policy,
        )

    async def save(self, row: LLMCallRow) -> None:
        values = row_values(row, redaction_policy=self.redaction_policy)
        await asyncio.to_thread(self._insert, values)

    def save_sync(self, row: LLMCallRow) -> None:
        self._insert(row_values(row, redaction_policy=self.redaction_policy))

    def _insert(self, values: tuple[Any, ...]) -> None:
        with self._lock:
            self._conn.execute(_INSERT, values)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class LogReader:
    """Read-only access to a usage log database."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path).resolve()
        if not self.db_path.is_file():
            raise DashboardError(f'No SQLite database found at "{self.db_path}"')
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA query_only = ON")
        except sqlite3.Error as error:
            raise DashboardError(f"cannot open {self.db_path}: {error}") from error
        self._conn.row_factory = sqlite3.Row

    def list_entries(self, *, limit: int | None = None) -> list[dict[str, Any]]:
        query = (
            "SELECT id, timestamp, model_id, tags_json, input_text, output_text, "
            "total_tokens, latency_ms, finish_reason "
            f"FROM {TABLE_NAME} ORDER BY datetime(timestamp) DESC, timestamp DESC"
        )
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (max(0, limit),)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()

        entries = []
        for row in rows:
            tags = safe_parse_json(row["tags_json"])
            entries.append(
                {
                    "id": row["id"],
                    "timestamp": row["timestamp"],
                    "model_id": row["model_id"],
                    "tags": tags if isinstance(tags, list) else [],
                    "input_preview": truncate(row["input_text"], PREVIEW_LENGTH),
                    "output_preview": truncate(row["output_text"], PREVIEW_LENGTH),
                    "total_tokens": row["total_tokens"],
                    "latency_ms": row["latency_ms"],
                    "finish_reason": row["finish_reason"],
                }
            )
        return entries

    def get_entry(self, entry_id: str, *, decode_json: bool = True) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT * FROM {TABLE_NAME} WHERE id = ?",
                (entry_id,),
            ).fetchone()
        if row is None:
            return None
        entry = {key: row[key] for key in row.keys()}
        if decode_json:
            for column in JSON_COLUMNS.intersection(entry):
                entry[column] = safe_parse_json(entry[column])
        return entry

    def count(self) -> int:
        with self._lock:
            (total,) = self._conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()
        return int(total)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def truncate(text: str | None, length: int) -> str | None:
    if text is None:
        return None
    if len(text) <= length:
        return text
    return text[: length - 1] + "…"
