"""Per-call accumulator that folds stream chunks into one log row."""

from __future__ import annotations

from collections.abc import Mapping
import copy
from dataclasses import dataclass, field
from typing import Any

from usagelog.capture import fields
from usagelog.capture.rows import (
    ABORTED_FINISH_REASON,
    LLMCallRow,
    build_error_row,
    build_response_row,
)
from usagelog.capture.usage import normalize_usage

TEXT_DELTA = "text-delta"
REASONING_DELTA = "reasoning-delta"
TOOL_INPUT_START = "tool-input-start"
TOOL_INPUT_DELTA = "tool-input-delta"
TOOL_INPUT_END = "tool-input-end"
TOOL_CALL = "tool-call"
STREAM_START = "stream-start"
RESPONSE_METADATA = "response-metadata"
RAW = "raw"
ERROR = "error"
FINISH = "finish"


@dataclass(slots=True)
class StreamAggregator:
    """Mutable state for a single streamed call.

    One instance is created per call and owned by the stage that observes
    that call's chunks, so no locking is needed. ``feed`` returns the
    finalized row exactly once, on the finish chunk; every later chunk is
    ignored.
    """

    params: Any
    envelope: Any = None
    started_at: float | None = None
    model_id: str | None = None
    text_parts: list[str] = field(default_factory=list)
    reasoning_parts: list[str] = field(default_factory=list)
    tool_inputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    tool_calls: list[Any] = field(default_factory=list)
    warnings: list[Any] | None = None
    error: Any = None
    response_metadata: dict[str, Any] = field(default_factory=dict)
    unparsed: list[str] = field(default_factory=list)
    request_snapshot: Any = None
    finalized: bool = False

    def __post_init__(self) -> None:
        self.request_snapshot = fields.pick(self.envelope, "request")
        self.warnings = fields.extract_warnings(fields.pick(self.envelope, "warnings"))

    @property
    def output_text(self) -> str:
        return "".join(self.text_parts)

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning_parts)

    def feed(self, chunk: Any) -> LLMCallRow | None:
        if self.finalized:
            return None

        chunk_type = fields.pick(chunk, "type")
        if chunk_type == TEXT_DELTA:
            fragment = _fragment(chunk)
            if fragment:
                self.text_parts.append(fragment)
        elif chunk_type == REASONING_DELTA:
            fragment = _fragment(chunk)
            if fragment:
                self.reasoning_parts.append(fragment)
        elif chunk_type in (TOOL_INPUT_START, TOOL_INPUT_DELTA, TOOL_INPUT_END):
            self._record_tool_input(chunk_type, chunk)
        elif chunk_type == TOOL_CALL:
            self.tool_calls.append(_snapshot(chunk))
        elif chunk_type == STREAM_START:
            warnings = fields.pick(chunk, "warnings")
            if isinstance(warnings, (list, tuple)):
                self.warnings = list(warnings) or None
        elif chunk_type == RESPONSE_METADATA:
            for key in ("id", "modelId", "timestamp"):
                value = fields.pick(chunk, key)
                if value is not None:
                    self.response_metadata[key] = value
        elif chunk_type == ERROR:
            self.error = _snapshot(fields.pick(chunk, "error", default=chunk))
        elif chunk_type == RAW:
            raw_value = fields.pick(chunk, "rawValue")
            if isinstance(raw_value, str):
                self.unparsed.append(raw_value)
        elif chunk_type == FINISH:
            return self._finalize(chunk)

        if self.request_snapshot is None:
            self.request_snapshot = fields.pick(chunk, "request")
        return None

    def abort(self, error: BaseException) -> LLMCallRow | None:
        """Finalize as aborted after a transport failure, if not already finalized."""
        if self.finalized:
            return None
        self.finalized = True
        return build_error_row(
            self.params,
            error,
            started_at=self.started_at,
            model_id=self.model_id,
            source=self._source_view(),
            finish_reason=ABORTED_FINISH_REASON,
        )

    def _record_tool_input(self, chunk_type: str, chunk: Any) -> None:
        tool_id = str(fields.pick(chunk, "id", "toolCallId", default=""))
        entry = self.tool_inputs.setdefault(
            tool_id,
            {"id": tool_id, "toolName": None, "input": "", "complete": False},
        )
        if chunk_type == TOOL_INPUT_START:
            entry["toolName"] = fields.pick(chunk, "toolName")
        elif chunk_type == TOOL_INPUT_DELTA:
            fragment = _fragment(chunk)
            if fragment:
                entry["input"] += fragment
        else:
            entry["complete"] = True

    def _finalize(self, chunk: Any) -> LLMCallRow:
        self.finalized = True
        source = self._source_view()

        if self.error is not None:
            return build_error_row(
                self.params,
                self.error,
                started_at=self.started_at,
                model_id=self.model_id,
                source=source,
            )

        body = fields.pick(source, "response.body")
        chunk_usage = fields.pick(chunk, "usage")
        body_usage = fields.pick(body, "usage")
        usage = normalize_usage(chunk_usage, chunk_usage if body_usage is None else body_usage)

        output_text = self.output_text
        reasoning_text = self.reasoning_text
        content: list[dict[str, Any]] = []
        if reasoning_text:
            content.append({"type": "reasoning", "text": reasoning_text})
        if output_text:
            content.append({"type": "text", "text": output_text})
        content.extend(_plain_dict(call) for call in self.tool_calls)

        tool_trace = self.tool_calls or list(self.tool_inputs.values())

        return build_response_row(
            self.params,
            source,
            body=body,
            output_text=output_text,
            reasoning_text=reasoning_text,
            content=content or None,
            reasoning_json=[content[0]] if reasoning_text else None,
            usage=usage,
            finish_reason=_finish_reason(fields.pick(chunk, "finishReason", "finish_reason")),
            warnings=self._warnings_with_unparsed(),
            meta=fields.pick(chunk, "providerMetadata", "provider_metadata"),
            started_at=self.started_at,
            model_id=self.model_id,
            tool_calls=tool_trace or None,
        )

    def _warnings_with_unparsed(self) -> list[Any] | None:
        if not self.unparsed:
            return self.warnings
        recorded = [
            {"type": "other", "message": "unparsed stream payload", "raw": raw}
            for raw in self.unparsed
        ]
        return [*(self.warnings or []), *recorded]

    def _source_view(self) -> dict[str, Any]:
        response: dict[str, Any] = {}
        for key, candidates in (
            ("id", ("response.id",)),
            ("modelId", ("response.modelId", "response.model_id")),
            ("headers", ("response.headers",)),
            ("body", ("response.body",)),
        ):
            value = fields.pick(self.envelope, *candidates)
            if value is None:
                value = self.response_metadata.get(key)
            if value is not None:
                response[key] = value
        return {"request": self.request_snapshot, "response": response}


def _fragment(chunk: Any) -> str | None:
    value = fields.pick(chunk, "delta", "text", "textDelta")
    return value if isinstance(value, str) else None


def _finish_reason(value: Any) -> Any:
    if isinstance(value, Mapping) or (value is not None and not isinstance(value, str)):
        unified = fields.pick(value, "unified", "type")
        return unified if unified is not None else value
    return value


def _snapshot(value: Any) -> Any:
    # Rows are serialized after the chunk has been handed to the consumer.
    if isinstance(value, BaseException):
        return value
    try:
        return copy.deepcopy(_plain_dict(value))
    except Exception:
        return _plain_dict(value)


def _plain_dict(value: Any) -> Any:
    if isinstance(value, Mapping):
        return dict(value)
    return value
