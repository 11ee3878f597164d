"""OpenAI Chat Completions language model over httpx."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import nullcontext
from datetime import datetime, timezone
import json
from typing import Any

import httpx

from usagelog.capture.fields import pick

DEFAULT_BASE_URL = "https://api.openai.com"

_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


class OpenAIProviderError(Exception):
    """Raised when the Chat Completions endpoint answers with an error status."""

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OpenAIChatLanguageModel:
    """Chat Completions client exposing ``do_generate``/``do_stream``.

    Pass ``client`` to reuse a caller-owned ``httpx.AsyncClient`` (never closed
    here) or ``transport`` to route a per-call client, e.g. through
    ``httpx.MockTransport``.
    """

    provider = "openai.chat"

    def __init__(
        self,
        model_id: str,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model_id = model_id
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1/chat/completions"

    async def do_generate(self, params: Any) -> dict[str, Any]:
        body = self.build_request_body(params, stream=False)
        async with self._client_scope() as client:
            response = await client.post(self.endpoint, headers=self._headers(), json=body)
            _raise_for_status(response, response.text)
            data = response.json()

        message = pick(data, "choices.0.message", default={})
        content: list[dict[str, Any]] = []
        reasoning = pick(message, "reasoning_content", "reasoning")
        if isinstance(reasoning, str) and reasoning:
            content.append({"type": "reasoning", "text": reasoning})
        text = pick(message, "content")
        if isinstance(text, str) and text:
            content.append({"type": "text", "text": text})
        for call in pick(message, "tool_calls", default=None) or []:
            content.append(
                {
                    "type": "tool-call",
                    "toolCallId": pick(call, "id"),
                    "toolName": pick(call, "function.name"),
                    "input": pick(call, "function.arguments", default=""),
                }
            )

        return {
            "content": content,
            "finishReason": map_finish_reason(pick(data, "choices.0.finish_reason")),
            "usage": convert_usage(pick(data, "usage")),
            "warnings": [],
            "request": {"body": body},
            "response": {
                "id": pick(data, "id"),
                "modelId": pick(data, "model"),
                "timestamp": _created_iso(pick(data, "created")),
                "headers": dict(response.headers),
                "body": data,
            },
        }

    async def do_stream(self, params: Any) -> dict[str, Any]:
        body = self.build_request_body(params, stream=True)
        owned = self._client is None
        client = self._client or self._new_client()
        try:
            request = client.build_request("POST", self.endpoint, headers=self._headers(), json=body)
            response = await client.send(request, stream=True)
            if response.is_error:
                await response.aread()
                await response.aclose()
                _raise_for_status(response, response.text)
        except BaseException:
            if owned:
                await client.aclose()
            raise

        return {
            "stream": self._iterate_stream(response, client if owned else None),
            "request": {"body": body},
            "response": {"headers": dict(response.headers)},
        }

    def build_request_body(self, params: Any, *, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model_id,
            "messages": convert_prompt(pick(params, "prompt"), system=pick(params, "system")),
        }
        for key, candidates in (
            ("temperature", ("temperature",)),
            ("top_p", ("topP", "top_p")),
            ("max_tokens", ("maxOutputTokens", "max_output_tokens", "maxTokens")),
            ("seed", ("seed",)),
            ("stop", ("stopSequences",)),
        ):
            value = pick(params, *candidates)
            if value is not None:
                body[key] = value

        tools = pick(params, "tools")
        if tools:
            body["tools"] = [convert_tool(tool) for tool in tools]
        parallel = pick(
            params,
            "providerOptions.openai.parallelToolCalls",
            "providerOptions.openai.parallel_tool_calls",
        )
        if isinstance(parallel, bool):
            body["parallel_tool_calls"] = parallel

        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    async def _iterate_stream(
        self,
        response: httpx.Response,
        owned_client: httpx.AsyncClient | None,
    ) -> AsyncIterator[dict[str, Any]]:
        tools: dict[int, dict[str, Any]] = {}
        finish_reason: Any = None
        usage: Any = None
        metadata_sent = False
        try:
            yield {"type": "stream-start", "warnings": []}
            async for payload in iter_sse_payloads(response):
                if isinstance(payload, str):
                    yield {"type": "raw", "rawValue": payload}
                    continue
                if not metadata_sent and pick(payload, "id") is not None:
                    metadata_sent = True
                    yield {
                        "type": "response-metadata",
                        "id": pick(payload, "id"),
                        "modelId": pick(payload, "model"),
                        "timestamp": _created_iso(pick(payload, "created")),
                    }
                if pick(payload, "error") is not None:
                    yield {"type": "error", "error": pick(payload, "error")}
                    continue
                if pick(payload, "usage") is not None:
                    usage = pick(payload, "usage")

                choice = pick(payload, "choices.0")
                if choice is None:
                    continue
                if pick(choice, "finish_reason") is not None:
                    finish_reason = pick(choice, "finish_reason")
                delta = pick(choice, "delta", default={})

                reasoning = pick(delta, "reasoning_content", "reasoning")
                if isinstance(reasoning, str) and reasoning:
                    yield {"type": "reasoning-delta", "id": "reasoning-0", "delta": reasoning}
                text = pick(delta, "content")
                if isinstance(text, str) and text:
                    yield {"type": "text-delta", "id": "text-0", "delta": text}

                for call in pick(delta, "tool_calls", default=None) or []:
                    index = pick(call, "index", default=len(tools))
                    entry = tools.get(index)
                    if entry is None:
                        entry = {
                            "id": pick(call, "id") or f"call_{index}",
                            "name": pick(call, "function.name"),
                            "arguments": "",
                        }
                        tools[index] = entry
                        yield {"type": "tool-input-start", "id": entry["id"], "toolName": entry["name"]}
                    arguments = pick(call, "function.arguments")
                    if isinstance(arguments, str) and arguments:
                        entry["arguments"] += arguments
                        yield {"type": "tool-input-delta", "id": entry["id"], "delta": arguments}

            for entry in tools.values():
                yield {"type": "tool-input-end", "id": entry["id"]}
                yield {
                    "type": "tool-call",
                    "toolCallId": entry["id"],
                    "toolName": entry["name"],
                    "input": entry["arguments"],
                }
            yield {
                "type": "finish",
                "finishReason": map_finish_reason(finish_reason),
                "usage": convert_usage(usage),
            }
        finally:
            await response.aclose()
            if owned_client is not None:
                await owned_client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds)

    def _client_scope(self) -> Any:
        if self._client is not None:
            return nullcontext(self._client)
        return self._new_client()


async def iter_sse_payloads(response: httpx.Response) -> AsyncIterator[dict[str, Any] | str]:
    """Yield decoded ``data:`` payloads of a server-sent event stream until ``[DONE]``.

    Payloads that are not a JSON object are yielded as their raw text.
    """
    async for line in response.aiter_lines():
        stripped = line.strip()
        if not stripped or not stripped.startswith("data:"):
            continue
        payload = stripped[5:].strip()
        if payload == "[DONE]":
            break
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            yield payload
            continue
        yield chunk if isinstance(chunk, dict) else payload


def convert_prompt(prompt: Any, *, system: Any = None) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if isinstance(system, str) and system:
        messages.append({"role": "system", "content": system})
    if isinstance(prompt, str):
        messages.append({"role": "user", "content": prompt})
        return messages
    for message in prompt or []:
        content = pick(message, "content")
        if isinstance(content, (list, tuple)):
            content = "".join(
                str(pick(part, "text", default="")) for part in content if pick(part, "type") in (None, "text")
            )
        messages.append({"role": pick(message, "role", default="user"), "content": content})
    return messages


def convert_tool(tool: Any) -> dict[str, Any]:
    if pick(tool, "function") is not None:
        return dict(tool) if isinstance(tool, Mapping) else {"type": "function", "function": pick(tool, "function")}
    function: dict[str, Any] = {"name": pick(tool, "name")}
    description = pick(tool, "description")
    if description is not None:
        function["description"] = description
    schema = pick(tool, "inputSchema", "parameters", "input_schema")
    if schema is not None:
        function["parameters"] = schema
    return {"type": "function", "function": function}


def convert_usage(usage: Any) -> dict[str, Any]:
    if usage is None:
        return {"inputTokens": None, "outputTokens": None, "totalTokens": None}
    converted = {
        "inputTokens": pick(usage, "prompt_tokens"),
        "outputTokens": pick(usage, "completion_tokens"),
        "totalTokens": pick(usage, "total_tokens"),
    }
    cached = pick(usage, "prompt_tokens_details.cached_tokens")
    if cached is not None:
        converted["cachedInputTokens"] = cached
    reasoning = pick(usage, "completion_tokens_details.reasoning_tokens")
    if reasoning is not None:
        converted["reasoningTokens"] = reasoning
    return converted


def map_finish_reason(value: Any) -> str:
    if value is None:
        return "unknown"
    return _FINISH_REASONS.get(str(value), "other")


def _created_iso(created: Any) -> str | None:
    if not isinstance(created, (int, float)) or isinstance(created, bool):
        return None
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _raise_for_status(response: httpx.Response, text: str) -> None:
    if not response.is_error:
        return
    try:
        body: Any = json.loads(text) if text else None
    except json.JSONDecodeError:
        body = text
    message = pick(body, "error.message") or text or response.reason_phrase
    raise OpenAIProviderError(
        f"OpenAI request failed with status {response.status_code}: {message}",
        status_code=response.status_code,
        body=body,
    )
