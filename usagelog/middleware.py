"""Usage-logging middleware around one-shot and streaming model calls."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import aclosing, nullcontext
import copy
from dataclasses import dataclass, field, is_dataclass, replace
import inspect
import time
from typing import Any, Protocol

from usagelog.capture.exceptions import warn_usage_log
from usagelog.capture.fields import pick
from usagelog.capture.rows import LLMCallRow, build_error_row, build_success_row
from usagelog.capture.stream import StreamAggregator
from usagelog.config import LoggerOptions
from usagelog.storage.sqlite import SqliteSink

MAX_DIAGNOSTICS = 256


class RowSink(Protocol):
    def save(self, row: LLMCallRow) -> Awaitable[None] | None:
        """Persist one finalized row."""


@dataclass(frozen=True, slots=True)
class PersistenceDiagnostic:
    stage: str
    error_type: str
    message: str
    row_id: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
            "row_id": self.row_id,
        }


@dataclass(slots=True)
class UsageLoggerMiddleware:
    """Persists one row per model call without changing what the caller sees.

    One-shot calls are persisted before the result is returned. Streamed
    calls are observed chunk by chunk and their row is saved by a detached
    task once the finish chunk passes through; that task is never awaited
    by the stream, so its failures surface only as a ``UsageLogWarning`` and
    an entry in ``diagnostics``, which keeps the most recent
    ``MAX_DIAGNOSTICS`` faults. Call :meth:`flush` before shutting the event
    loop down to let pending saves complete.
    """

    sink: RowSink
    persist_incomplete_streams: bool = False
    diagnostics: deque[PersistenceDiagnostic] = field(
        default_factory=lambda: deque(maxlen=MAX_DIAGNOSTICS)
    )
    _pending: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)

    async def wrap_generate(
        self,
        *,
        do_generate: Callable[[], Awaitable[Any]],
        params: Any,
        model: Any = None,
    ) -> Any:
        started_at = time.perf_counter()
        model_id = _model_id(model)
        try:
            result = await do_generate()
        except Exception as error:
            await self._persist_error_row(params, error, started_at, model_id, stage="generate.error")
            raise

        try:
            row = build_success_row(params, result, started_at=started_at, model_id=model_id)
        except Exception as error:
            self._report("generate.build", error)
            return result
        await self._persist(row, stage="generate")
        return result

    async def wrap_stream(
        self,
        *,
        do_stream: Callable[[], Awaitable[Any]],
        params: Any,
        model: Any = None,
    ) -> Any:
        started_at = time.perf_counter()
        model_id = _model_id(model)
        try:
            result = await do_stream()
        except Exception as error:
            await self._persist_error_row(params, error, started_at, model_id, stage="stream.error")
            raise

        stream = pick(result, "stream")
        if stream is None or not hasattr(stream, "__aiter__"):
            return result

        aggregator = StreamAggregator(
            params=params,
            envelope=result,
            started_at=started_at,
            model_id=model_id,
        )
        return _with_stream(result, self._observe(stream, aggregator))

    async def flush(self) -> None:
        """Wait for every detached save scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_saves(self) -> int:
        return len(self._pending)

    async def _observe(
        self,
        stream: AsyncIterator[Any],
        aggregator: StreamAggregator,
    ) -> AsyncIterator[Any]:
        iterator = stream.__aiter__()
        closing = aclosing(iterator) if hasattr(iterator, "aclose") else nullcontext(iterator)
        try:
            async with closing:
                async for chunk in iterator:
                    row = self._feed(aggregator, chunk)
                    if row is not None:
                        self._schedule(row, stage="stream")
                    yield chunk
        except Exception as error:
            # GeneratorExit and CancelledError skip this branch.
            if self.persist_incomplete_streams:
                row = aggregator.abort(error)
                if row is not None:
                    self._schedule(row, stage="stream.aborted")
            raise

    def _feed(self, aggregator: StreamAggregator, chunk: Any) -> LLMCallRow | None:
        try:
            return aggregator.feed(chunk)
        except Exception as error:
            aggregator.finalized = True
            self._report("stream.observe", error)
            return None

    def _schedule(self, row: LLMCallRow, *, stage: str) -> None:
        task = asyncio.get_running_loop().create_task(self._persist(row, stage=stage))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist_error_row(
        self,
        params: Any,
        error: BaseException,
        started_at: float,
        model_id: str | None,
        *,
        stage: str,
    ) -> None:
        try:
            row = build_error_row(params, error, started_at=started_at, model_id=model_id)
        except Exception as build_error:
            self._report(stage, build_error)
            return
        await self._persist(row, stage=stage)

    async def _persist(self, row: LLMCallRow, *, stage: str) -> None:
        try:
            outcome = self.sink.save(row)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as error:
            self._report(stage, error, row_id=row.id)

    def _report(self, stage: str, error: Exception, *, row_id: str | None = None) -> None:
        diagnostic = PersistenceDiagnostic(
            stage=stage,
            error_type=error.__class__.__name__,
            message=str(error),
            row_id=row_id,
        )
        self.diagnostics.append(diagnostic)
        warn_usage_log(
            f"usage logger failure: stage={diagnostic.stage} "
            f"error={diagnostic.error_type}: {diagnostic.message}"
        )


def create_usage_logger_middleware(
    options: LoggerOptions | None = None,
    *,
    sink: RowSink | None = None,
) -> UsageLoggerMiddleware:
    """Build a middleware writing to SQLite per ``options`` (or the environment)."""
    resolved = options or LoggerOptions.from_env()
    if sink is None:
        sink = SqliteSink.from_options(resolved)
    return UsageLoggerMiddleware(
        sink=sink,
        persist_incomplete_streams=resolved.persist_incomplete_streams,
    )


def _model_id(model: Any) -> str | None:
    value = pick(model, "model_id", "modelId")
    return None if value is None else str(value)


def _with_stream(result: Any, stream: AsyncIterator[Any]) -> Any:
    if isinstance(result, Mapping):
        updated = dict(result)
        updated["stream"] = stream
        return updated
    if is_dataclass(result) and not isinstance(result, type):
        return replace(result, stream=stream)
    clone = copy.copy(result)
    setattr(clone, "stream", stream)
    return clone
