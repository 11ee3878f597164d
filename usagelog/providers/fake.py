"""Scripted language model for local deterministic runs."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

DEFAULT_USAGE = {"inputTokens": 12, "outputTokens": 7, "totalTokens": 19}


def text_stream_chunks(
    text: str,
    *,
    reasoning: str | None = None,
    usage: dict[str, Any] | None = None,
    finish_reason: str = "stop",
    chunk_size: int = 4,
) -> list[dict[str, Any]]:
    """Split ``text`` into ``text-delta`` chunks closed by a ``finish`` chunk."""
    chunks: list[dict[str, Any]] = [{"type": "stream-start", "warnings": []}]
    if reasoning:
        chunks.append({"type": "reasoning-start", "id": "r0"})
        chunks.append({"type": "reasoning-delta", "id": "r0", "delta": reasoning})
        chunks.append({"type": "reasoning-end", "id": "r0"})
    chunks.append({"type": "text-start", "id": "t0"})
    for index in range(0, len(text), max(1, chunk_size)):
        chunks.append({"type": "text-delta", "id": "t0", "delta": text[index : index + chunk_size]})
    chunks.append({"type": "text-end", "id": "t0"})
    chunks.append(
        {
            "type": "finish",
            "finishReason": finish_reason,
            "usage": dict(DEFAULT_USAGE if usage is None else usage),
        }
    )
    return chunks


@dataclass(slots=True)
class FakeLanguageModel:
    """Language model answering from a script instead of a network.

    ``error`` makes both calls raise before producing anything. ``chunks``
    overrides the streamed parts; ``stream_error`` is raised after they are
    exhausted, and ``chunk_delay`` sleeps between parts.
    """

    model_id: str = "fake-model"
    provider: str = "fake"
    text: str = "Hello from the fake model."
    reasoning: str | None = None
    usage: dict[str, Any] | None = None
    finish_reason: str = "stop"
    chunks: Sequence[Any] | None = None
    error: Exception | None = None
    stream_error: Exception | None = None
    chunk_delay: float = 0.0
    response_headers: dict[str, str] = field(default_factory=lambda: {"x-request-id": "req_fake"})
    calls: list[tuple[str, Any]] = field(default_factory=list)

    async def do_generate(self, params: Any) -> dict[str, Any]:
        self.calls.append(("generate", params))
        if self.error is not None:
            raise self.error
        content: list[dict[str, Any]] = []
        if self.reasoning:
            content.append({"type": "reasoning", "text": self.reasoning})
        content.append({"type": "text", "text": self.text})
        return {
            "content": content,
            "finishReason": self.finish_reason,
            "usage": dict(DEFAULT_USAGE if self.usage is None else self.usage),
            "warnings": [],
            "request": {"body": _request_body(self.model_id, params)},
            "response": {
                "id": f"resp_{len(self.calls)}",
                "modelId": self.model_id,
                "headers": dict(self.response_headers),
            },
        }

    async def do_stream(self, params: Any) -> dict[str, Any]:
        self.calls.append(("stream", params))
        if self.error is not None:
            raise self.error
        chunks = (
            list(self.chunks)
            if self.chunks is not None
            else text_stream_chunks(
                self.text,
                reasoning=self.reasoning,
                usage=self.usage,
                finish_reason=self.finish_reason,
            )
        )
        return {
            "stream": self._iterate(chunks),
            "request": {"body": _request_body(self.model_id, params)},
            "response": {"headers": dict(self.response_headers)},
        }

    async def _iterate(self, chunks: list[Any]) -> AsyncIterator[Any]:
        for chunk in chunks:
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error


def _request_body(model_id: str, params: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"model": model_id}
    if isinstance(params, dict):
        prompt = params.get("prompt")
        if prompt is not None:
            body["messages"] = prompt
        for key in ("temperature", "topP", "maxOutputTokens", "tools"):
            if key in params:
                body[key] = params[key]
    return body
