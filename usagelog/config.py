"""Logger configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Mapping

from usagelog.capture.exceptions import ConfigError
from usagelog.storage.redaction import DEFAULT_REDACTION_POLICY, RedactionPolicy
from usagelog.storage.sqlite import DEFAULT_FILE_NAME

DIR_ENV_VAR = "USAGELOG_DIR"
FILE_ENV_VAR = "USAGELOG_FILE"
WAL_ENV_VAR = "USAGELOG_WAL"
PERSIST_INCOMPLETE_ENV_VAR = "USAGELOG_PERSIST_INCOMPLETE"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(slots=True)
class LoggerOptions:
    """Where and how logged calls are persisted."""

    dir_path: Path
    file_name: str = DEFAULT_FILE_NAME
    sqlite_wal: bool = True
    persist_incomplete_streams: bool = False
    redaction_policy: RedactionPolicy = field(default_factory=lambda: DEFAULT_REDACTION_POLICY)

    def __post_init__(self) -> None:
        self.dir_path = Path(self.dir_path)
        name = (self.file_name or "").strip()
        if not name:
            raise ConfigError("file_name cannot be empty.")
        if "/" in name or "\\" in name:
            raise ConfigError("file_name must be a file name, not a path.")
        self.file_name = name

    @property
    def db_path(self) -> Path:
        return self.dir_path / self.file_name

    @classmethod
    def from_env(
        cls,
        *,
        default_dir: str | Path = ".usagelog",
        environ: Mapping[str, str] | None = None,
    ) -> "LoggerOptions":
        env = os.environ if environ is None else environ
        dir_value = env.get(DIR_ENV_VAR, "").strip()
        file_value = env.get(FILE_ENV_VAR, "").strip()
        return cls(
            dir_path=Path(dir_value) if dir_value else Path(default_dir),
            file_name=file_value or DEFAULT_FILE_NAME,
            sqlite_wal=_env_flag(env, WAL_ENV_VAR, default=True),
            persist_incomplete_streams=_env_flag(env, PERSIST_INCOMPLETE_ENV_VAR, default=False),
        )


def _env_flag(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be one of: 1, 0, true, false, yes, no, on, off (got {raw!r}).")
