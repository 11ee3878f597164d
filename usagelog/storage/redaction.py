"""Key-based masking for captured headers and request payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SENSITIVE_FIELD_NAMES = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "x-api-key",
        "api-key",
        "apikey",
        "api_key",
        "x-goog-api-key",
        "access_token",
        "refresh_token",
        "password",
        "secret",
        "set-cookie",
        "cookie",
    }
)


@dataclass(frozen=True, slots=True)
class RedactionPolicy:
    """Which keys are masked before a row is written."""

    enabled: bool = True
    mask: str = "[REDACTED]"
    sensitive_field_names: frozenset[str] = field(default_factory=lambda: SENSITIVE_FIELD_NAMES)

    def extend(self, *names: str) -> "RedactionPolicy":
        extra = {name.strip().lower() for name in names if name.strip()}
        return RedactionPolicy(
            enabled=self.enabled,
            mask=self.mask,
            sensitive_field_names=self.sensitive_field_names | frozenset(extra),
        )


DEFAULT_REDACTION_POLICY = RedactionPolicy()
DISABLED_REDACTION_POLICY = RedactionPolicy(enabled=False)


def redact_keys(value: Any, *, policy: RedactionPolicy = DEFAULT_REDACTION_POLICY) -> Any:
    """Return a copy of ``value`` with sensitive mapping keys masked at any depth."""
    if not policy.enabled:
        return value
    return _redact(value, policy)


def _redact(value: Any, policy: RedactionPolicy) -> Any:
    if isinstance(value, dict):
        redacted: dict[Any, Any] = {}
        for key, item in value.items():
            if str(key).lower() in policy.sensitive_field_names and item is not None:
                redacted[key] = policy.mask
            else:
                redacted[key] = _redact(item, policy)
        return redacted
    if isinstance(value, list):
        return [_redact(item, policy) for item in value]
    if isinstance(value, tuple):
        return [_redact(item, policy) for item in value]
    return value
