"""Token usage normalization.

Each canonical field resolves through a fixed precedence so downstream
consumers always see one source of truth per field:

1. the SDK-normalized usage object (camelCase names, then legacy aliases),
2. the raw provider body usage (snake_case names, then nested detail objects),
3. a derived value (``total_tokens = input + output`` when both are known;
   ``output_reasoning_tokens`` falls back to ``reasoning_tokens``),
4. otherwise ``None``. Absent counts are never coerced to zero.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from usagelog.capture.fields import as_count, pick

_PRECEDENCE: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "input_tokens": (
        ("inputTokens", "promptTokens", "input_tokens"),
        ("input_tokens", "prompt_tokens"),
    ),
    "output_tokens": (
        ("outputTokens", "completionTokens", "output_tokens"),
        ("output_tokens", "completion_tokens"),
    ),
    "total_tokens": (
        ("totalTokens", "total_tokens"),
        ("total_tokens",),
    ),
    "cached_input_tokens": (
        ("cachedInputTokens", "cachedPromptTokens", "inputTokens.cacheRead"),
        (
            "cached_input_tokens",
            "input_tokens_details.cached_tokens",
            "prompt_tokens_details.cached_tokens",
            "cache_read_input_tokens",
        ),
    ),
    "reasoning_tokens": (
        ("reasoningTokens", "reasoning_tokens", "outputTokens.reasoning"),
        ("reasoning_tokens",),
    ),
    "output_reasoning_tokens": (
        ("outputReasoningTokens",),
        (
            "output_tokens_details.reasoning_tokens",
            "completion_tokens_details.reasoning_tokens",
        ),
    ),
}


@dataclass(frozen=True, slots=True)
class TokenUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cached_input_tokens: int | None = None
    reasoning_tokens: int | None = None
    output_reasoning_tokens: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return asdict(self)


def normalize_usage(usage: Any = None, body_usage: Any = None) -> TokenUsage:
    """Reconcile an SDK usage object and a raw body usage object."""
    resolved = {
        field_name: _resolve(usage, body_usage, normalized_keys, body_keys)
        for field_name, (normalized_keys, body_keys) in _PRECEDENCE.items()
    }

    if resolved["total_tokens"] is None:
        if resolved["input_tokens"] is not None and resolved["output_tokens"] is not None:
            resolved["total_tokens"] = resolved["input_tokens"] + resolved["output_tokens"]

    if resolved["output_reasoning_tokens"] is None:
        resolved["output_reasoning_tokens"] = resolved["reasoning_tokens"]

    return TokenUsage(**resolved)


def _resolve(
    usage: Any,
    body_usage: Any,
    normalized_keys: tuple[str, ...],
    body_keys: tuple[str, ...],
) -> int | None:
    for source, keys in ((usage, normalized_keys), (body_usage, body_keys)):
        for key in keys:
            count = as_count(pick(source, key))
            if count is not None:
                return count
    return None
