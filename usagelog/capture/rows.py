"""Canonical log row and the builders that assemble it."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import time
import traceback
from typing import Any, Callable, TypeVar
import uuid

from usagelog.capture import fields
from usagelog.capture.usage import TokenUsage, normalize_usage

T = TypeVar("T")

ERROR_FINISH_REASON = "error"
ABORTED_FINISH_REASON = "aborted"


@dataclass(frozen=True, slots=True)
class LLMCallRow:
    """Immutable record persisted once per logical model call."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: utcnow_iso())
    model_id: str | None = None
    tags: list[str] | None = None

    input_text: str | None = None
    input_json: Any = None
    prompt_json: Any = None

    output_text: str | None = None
    output_json: Any = None
    content_json: Any = None
    reasoning_text: str | None = None
    reasoning_json: Any = None

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cached_input_tokens: int | None = None
    reasoning_tokens: int | None = None
    output_reasoning_tokens: int | None = None

    request_tools_json: Any = None
    response_tools_json: Any = None
    tool_count: int | None = None
    tool_names: list[str] | None = None
    parallel_tool_calls: bool | None = None

    temperature: int | float | None = None
    top_p: int | float | None = None
    max_output_tokens: int | None = None

    finish_reason: str | None = None
    latency_ms: int | None = None
    warnings: list[Any] | None = None
    request_id: str | None = None
    response_id: str | None = None
    headers_json: Any = None
    meta: Any = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def elapsed_ms(started_at: float | None) -> int | None:
    if started_at is None:
        return None
    return max(0, round((time.perf_counter() - started_at) * 1000))


def error_payload(error: Any) -> dict[str, Any]:
    """Render an exception (or an inline stream error value) as ``{message, stack}``."""
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return {"message": message, "type": error.__class__.__name__, "stack": stack}
    message = fields.pick(error, "message")
    if message is None:
        message = error if isinstance(error, str) else fields.render_json(error)
    payload: dict[str, Any] = {"message": str(message)}
    stack = fields.pick(error, "stack")
    if stack is not None:
        payload["stack"] = str(stack)
    return payload


def build_success_row(
    params: Any,
    result: Any,
    *,
    started_at: float | None,
    model_id: str | None = None,
) -> LLMCallRow:
    """Build the row for a one-shot call that returned ``result``."""
    body = _attempt(fields.pick, result, "response.body")
    content = _attempt(fields.pick, result, "content")

    output_text = _attempt(fields.extract_output_text, result)
    reasoning_text = _attempt(fields.extract_reasoning_text, result)
    body_text, body_reasoning = _attempt(fields.extract_text_from_body, body, default=(None, None))

    usage = _attempt(
        normalize_usage,
        _attempt(fields.pick, result, "usage"),
        _attempt(fields.pick, body, "usage"),
        default=TokenUsage(),
    )

    return build_response_row(
        params,
        result,
        body=body,
        output_text=output_text or body_text,
        reasoning_text=reasoning_text or body_reasoning,
        content=content,
        reasoning_json=_attempt(fields.extract_reasoning_parts, content),
        usage=usage,
        finish_reason=_attempt(fields.pick, result, "finishReason", "finish_reason"),
        warnings=_attempt(fields.extract_warnings, _attempt(fields.pick, result, "warnings")),
        meta=_attempt(fields.pick, result, "providerMetadata", "provider_metadata"),
        started_at=started_at,
        model_id=model_id,
    )


def build_response_row(
    params: Any,
    source: Any,
    *,
    body: Any,
    output_text: str | None,
    reasoning_text: str | None,
    content: Any,
    reasoning_json: Any,
    usage: TokenUsage,
    finish_reason: Any,
    warnings: list[Any] | None,
    meta: Any,
    started_at: float | None,
    model_id: str | None = None,
    tool_calls: list[Any] | None = None,
) -> LLMCallRow:
    """Assemble a successful row from pre-extracted response pieces.

    ``source`` is whatever exposes ``request``/``response`` envelopes: the
    one-shot result, or the stream result captured when the stream started.
    """
    request_body = _attempt(fields.pick, source, "request.body")
    tools = _attempt(
        fields.extract_tool_meta,
        params,
        source,
        body,
        tool_calls=tool_calls,
        default=fields.ToolMeta(),
    )
    sampling = _attempt(fields.pick_sampling_params, params, body, default=fields.SamplingParams())
    input_json = _attempt(fields.pick, source, "request.body", "request")

    return LLMCallRow(
        model_id=_attempt(fields.extract_model_id, params, source, body, fallback=model_id),
        tags=_attempt(fields.extract_tags, params),
        input_text=_attempt(fields.collate_input_text, params, request_body),
        input_json=params if input_json is None else input_json,
        prompt_json=_attempt(fields.extract_prompt, params),
        output_text=output_text or None,
        output_json=body,
        content_json=content,
        reasoning_text=reasoning_text or None,
        reasoning_json=reasoning_json,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
        cached_input_tokens=usage.cached_input_tokens,
        reasoning_tokens=usage.reasoning_tokens,
        output_reasoning_tokens=usage.output_reasoning_tokens,
        request_tools_json=tools.request_tools,
        response_tools_json=tools.response_tools,
        tool_count=tools.tool_count,
        tool_names=tools.tool_names,
        parallel_tool_calls=tools.parallel_tool_calls,
        temperature=sampling.temperature,
        top_p=sampling.top_p,
        max_output_tokens=sampling.max_output_tokens,
        finish_reason=None if finish_reason is None else str(finish_reason),
        latency_ms=elapsed_ms(started_at),
        warnings=warnings,
        request_id=_attempt(fields.extract_request_id, source),
        response_id=_attempt(fields.extract_response_id, source, body),
        headers_json=_attempt(fields.pick, source, "response.headers"),
        meta=meta,
        error=None,
    )


def build_error_row(
    params: Any,
    error: Any,
    *,
    started_at: float | None,
    model_id: str | None = None,
    source: Any = None,
    finish_reason: str = ERROR_FINISH_REASON,
) -> LLMCallRow:
    """Build the row for a failed call: request view plus error payload only."""
    request_body = _attempt(fields.pick, source, "request.body")
    tools = _attempt(fields.extract_tool_meta, params, default=fields.ToolMeta())
    sampling = _attempt(fields.pick_sampling_params, params, default=fields.SamplingParams())
    return LLMCallRow(
        model_id=_attempt(fields.extract_model_id, params, source, fallback=model_id),
        tags=_attempt(fields.extract_tags, params),
        input_text=_attempt(fields.collate_input_text, params, request_body),
        input_json=request_body if request_body is not None else params,
        prompt_json=_attempt(fields.extract_prompt, params),
        request_tools_json=tools.request_tools,
        tool_names=tools.tool_names,
        temperature=sampling.temperature,
        top_p=sampling.top_p,
        max_output_tokens=sampling.max_output_tokens,
        finish_reason=finish_reason,
        latency_ms=elapsed_ms(started_at),
        error=_attempt(error_payload, error, default={"message": repr(error)}),
    )


def _attempt(func: Callable[..., T], *args: Any, default: Any = None, **kwargs: Any) -> T | Any:
    try:
        return func(*args, **kwargs)
    except Exception:
        return default
