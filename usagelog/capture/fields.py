"""Best-effort field extraction over provider-shaped payloads.

Every function here is total: a missing or malformed field yields ``None``
instead of raising. Payloads may be mappings, attribute objects (SDK models,
dataclasses) or any mix of the two; lookups go through :func:`pick`, which
walks an ordered list of candidate paths and returns the first non-``None`` hit.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import json
from typing import Any

TAGS_NAMESPACES = ("usageLogger", "usage_logger")

_PRIMITIVES = (str, bytes, bytearray, int, float, bool)


def pick(source: Any, *paths: str | tuple[Any, ...], default: Any = None) -> Any:
    """Return the value at the first candidate path that resolves to non-``None``.

    A path is either a dotted string (``"response.body.usage"``) or a tuple of
    keys; integer keys and digit segments index into lists.
    """
    for path in paths:
        value = _lookup(source, path)
        if value is not None:
            return value
    return default


def header_value(headers: Any, name: str) -> str | None:
    """Case-insensitive single header lookup."""
    if not isinstance(headers, Mapping):
        items = getattr(headers, "items", None)
        if not callable(items):
            return None
        try:
            headers = dict(items())
        except Exception:
            return None
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted and value is not None:
            return str(value)
    return None


def as_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def as_count(value: Any) -> int | None:
    """Coerce a token count; nested ``{"total": n}`` objects are unwrapped."""
    if isinstance(value, Mapping):
        value = value.get("total")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def render_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=_json_default)
    except (TypeError, ValueError):
        return str(value)


# -- tags -------------------------------------------------------------------


def extract_tags(params: Any) -> list[str] | None:
    """Read caller tags from ``providerOptions.usageLogger.tags``.

    A single string becomes a one-element list. Absent tags stay ``None`` so an
    explicit empty list remains distinguishable.
    """
    bag = None
    for namespace in TAGS_NAMESPACES:
        bag = pick(
            params,
            ("providerOptions", namespace),
            ("provider_options", namespace),
            ("providerMetadata", namespace),
            ("provider_metadata", namespace),
        )
        if bag is not None:
            break
    raw = pick(bag, "tags")
    if raw is None:
        return None
    if isinstance(raw, (list, tuple, set, frozenset)):
        values = [str(item) for item in raw if item is not None]
    else:
        values = [str(raw)]
    return list(dict.fromkeys(values))


# -- input ------------------------------------------------------------------


def extract_prompt(params: Any) -> Any:
    return pick(params, "prompt", "messages")


def collate_input_text(params: Any, request_body: Any = None) -> str | None:
    """Render the call input as ``[ROLE] content`` lines.

    Structured prompts win over plain prompt strings; when neither exists the
    provider's echoed request body (``input`` or ``messages``) is used.
    """
    system = pick(params, "system")
    system_block = f"[SYSTEM]\n{_content_text(system)}\n" if system else ""

    prompt = pick(params, "prompt")
    if isinstance(prompt, (list, tuple)):
        return system_block + _render_messages(prompt)

    messages = pick(params, "messages")
    if isinstance(messages, (list, tuple)):
        return system_block + _render_messages(messages)

    if isinstance(prompt, str):
        return f"{system_block}[PROMPT]\n{prompt}"

    echoed = pick(request_body, "input", "messages")
    if isinstance(echoed, (list, tuple)):
        return _render_messages(echoed)
    if isinstance(echoed, str):
        return f"[PROMPT]\n{echoed}"
    return None


def _render_messages(messages: list[Any] | tuple[Any, ...]) -> str:
    lines = []
    for message in messages:
        role = pick(message, "role")
        label = str(role).upper() if role else "MESSAGE"
        lines.append(f"[{label}] {_content_text(pick(message, 'content'))}")
    return "\n".join(lines)


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (list, tuple)):
        parts = []
        for part in content:
            text = pick(part, "text")
            parts.append(text if isinstance(text, str) else render_json(_plain(part)))
        return " ".join(parts)
    return render_json(_plain(content))


# -- output -----------------------------------------------------------------


def extract_output_text(result: Any) -> str | None:
    text = pick(result, "text")
    if isinstance(text, str) and text:
        return text
    joined = _join_parts(pick(result, "content"), "text")
    return joined or None


def extract_reasoning_parts(content: Any) -> list[Any] | None:
    if not isinstance(content, (list, tuple)):
        return None
    parts = [part for part in content if pick(part, "type") == "reasoning"]
    return parts or None


def extract_reasoning_text(result: Any) -> str | None:
    reasoning = pick(result, "reasoningText", "reasoning_text")
    if isinstance(reasoning, str) and reasoning:
        return reasoning
    joined = _join_parts(pick(result, "content"), "reasoning")
    return joined or None


def extract_text_from_body(body: Any) -> tuple[str | None, str | None]:
    """Return ``(text, reasoning)`` from a raw provider response body.

    Understands Chat Completions (``choices[0].message``), the Responses API
    (``output[]``) and Messages-style ``content[]`` blocks.
    """
    if body is None:
        return None, None

    message = pick(body, "choices.0.message")
    if message is not None:
        content = pick(message, "content")
        text = content if isinstance(content, str) else _join_parts(content, "text")
        reasoning = pick(message, "reasoning_content", "reasoning")
        return text or None, reasoning if isinstance(reasoning, str) and reasoning else None

    output = pick(body, "output")
    if isinstance(output, (list, tuple)):
        texts: list[str] = []
        reasoning_parts: list[str] = []
        for item in output:
            item_type = pick(item, "type")
            if item_type == "message":
                for block in pick(item, "content", default=()) or ():
                    value = pick(block, "text")
                    if pick(block, "type") in ("output_text", "text") and isinstance(value, str):
                        texts.append(value)
            elif item_type == "reasoning":
                for block in pick(item, "summary", "content", default=()) or ():
                    value = pick(block, "text")
                    if isinstance(value, str):
                        reasoning_parts.append(value)
        return "".join(texts) or None, "".join(reasoning_parts) or None

    content = pick(body, "content")
    if isinstance(content, (list, tuple)):
        texts = []
        reasoning_parts = []
        for block in content:
            block_type = pick(block, "type")
            if block_type == "text" and isinstance(pick(block, "text"), str):
                texts.append(pick(block, "text"))
            elif block_type == "thinking" and isinstance(pick(block, "thinking"), str):
                reasoning_parts.append(pick(block, "thinking"))
        return "".join(texts) or None, "".join(reasoning_parts) or None

    output_text = pick(body, "output_text")
    if isinstance(output_text, str) and output_text:
        return output_text, None
    return None, None


def _join_parts(content: Any, part_type: str) -> str:
    if not isinstance(content, (list, tuple)):
        return ""
    texts = []
    for part in content:
        text = pick(part, "text")
        if pick(part, "type") == part_type and isinstance(text, str):
            texts.append(text)
    return "".join(texts)


# -- tools ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ToolMeta:
    request_tools: Any = None
    response_tools: Any = None
    tool_names: list[str] | None = None
    tool_count: int | None = None
    parallel_tool_calls: bool | None = None


def extract_tool_meta(
    params: Any,
    source: Any = None,
    body: Any = None,
    *,
    tool_calls: list[Any] | None = None,
) -> ToolMeta:
    """Collect declared tools, returned tool calls and the parallel-call flag.

    ``source`` is the one-shot result or the stream's response envelope.
    """
    request_tools = pick(params, "tools")
    if request_tools is None:
        request_tools = pick(source, "request.body.tools")

    response_tools: Any = pick(body, "tools")
    if not isinstance(response_tools, (list, tuple)):
        response_tools = tool_calls or _tool_call_parts(pick(source, "content"))
    if not response_tools:
        message_calls = pick(body, "choices.0.message.tool_calls")
        response_tools = message_calls if isinstance(message_calls, (list, tuple)) and message_calls else None

    names = _tool_names(request_tools)

    tool_count: int | None = None
    if isinstance(response_tools, (list, tuple)):
        tool_count = len(response_tools)
    elif isinstance(request_tools, (list, tuple, Mapping)):
        tool_count = len(request_tools)

    parallel: bool | None = None
    for candidate in (
        pick(body, "parallel_tool_calls"),
        pick(source, "request.body.parallel_tool_calls"),
        pick(params, "providerOptions.openai.parallelToolCalls", "parallel_tool_calls"),
    ):
        if isinstance(candidate, bool):
            parallel = candidate
            break

    return ToolMeta(
        request_tools=request_tools,
        response_tools=response_tools,
        tool_names=names or None,
        tool_count=tool_count,
        parallel_tool_calls=parallel,
    )


def _tool_names(tools: Any) -> list[str]:
    if isinstance(tools, Mapping):
        return [str(key) for key in tools]
    if not isinstance(tools, (list, tuple)):
        return []
    names = []
    for tool in tools:
        name = pick(tool, "name", "function.name", "toolName")
        if name:
            names.append(str(name))
    return names


def _tool_call_parts(content: Any) -> list[Any] | None:
    if not isinstance(content, (list, tuple)):
        return None
    calls = [part for part in content if pick(part, "type") == "tool-call"]
    return calls or None


# -- sampling parameters and identifiers ------------------------------------


@dataclass(frozen=True, slots=True)
class SamplingParams:
    temperature: int | float | None = None
    top_p: int | float | None = None
    max_output_tokens: int | None = None


def pick_sampling_params(params: Any, body: Any = None) -> SamplingParams:
    temperature = _first_number(params, body, ("temperature",), ("temperature",))
    top_p = _first_number(params, body, ("topP", "top_p"), ("top_p",))
    max_tokens = _first_number(
        params,
        body,
        ("maxOutputTokens", "max_output_tokens", "maxTokens", "max_tokens"),
        ("max_output_tokens", "max_completion_tokens", "max_tokens"),
    )
    return SamplingParams(
        temperature=temperature,
        top_p=top_p,
        max_output_tokens=as_count(max_tokens),
    )


def _first_number(
    params: Any,
    body: Any,
    param_keys: tuple[str, ...],
    body_keys: tuple[str, ...],
) -> int | float | None:
    for source, keys in ((params, param_keys), (body, body_keys)):
        for key in keys:
            number = as_number(pick(source, key))
            if number is not None:
                return number
    return None


def extract_request_id(source: Any) -> str | None:
    request_id = pick(source, "request.id")
    if request_id is not None:
        return str(request_id)
    headers = pick(source, "response.headers")
    return header_value(headers, "x-request-id") or header_value(headers, "request-id")


def extract_response_id(source: Any, body: Any = None) -> str | None:
    response_id = pick(source, "response.id")
    if response_id is None:
        response_id = pick(body, "id")
    return None if response_id is None else str(response_id)


def extract_model_id(
    params: Any,
    source: Any = None,
    body: Any = None,
    *,
    fallback: str | None = None,
) -> str | None:
    model_id = pick(source, "request.body.model", "response.modelId", "response.model_id")
    if model_id is None:
        model_id = pick(body, "model")
    if model_id is None:
        model_id = pick(params, "modelId", "model_id", "model")
    if model_id is None or not isinstance(model_id, (str, int, float)):
        return fallback
    return str(model_id)


def extract_warnings(value: Any) -> list[Any] | None:
    if isinstance(value, (list, tuple)) and value:
        return list(value)
    return None


# -- internals --------------------------------------------------------------


def _lookup(source: Any, path: str | tuple[Any, ...]) -> Any:
    keys = path.split(".") if isinstance(path, str) else path
    current = source
    for key in keys:
        if current is None:
            return None
        current = _step(current, key)
    return current


def _step(value: Any, key: Any) -> Any:
    try:
        if isinstance(value, Mapping):
            return value.get(key)
        if isinstance(value, (list, tuple)):
            index = key if isinstance(key, int) else int(key) if str(key).isdigit() else None
            if index is None or index >= len(value):
                return None
            return value[index]
        if isinstance(value, _PRIMITIVES) or not isinstance(key, str):
            return None
        attr = getattr(value, key, None)
        return None if callable(attr) else attr
    except Exception:
        return None


def _plain(value: Any) -> Any:
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        try:
            return dump()
        except Exception:
            return value
    return value


def _json_default(value: Any) -> Any:
    plain = _plain(value)
    if plain is not value:
        return plain
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)
