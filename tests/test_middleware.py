import asyncio
import time
from typing import Any
import warnings

import pytest

from usagelog import UsageLoggerMiddleware, UsageLogWarning, wrap_language_model
from usagelog.capture import LLMCallRow
from usagelog.middleware import MAX_DIAGNOSTICS
from usagelog.providers import FakeLanguageModel, text_stream_chunks


class _MemorySink:
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.rows: list[LLMCallRow] = []

    async def save(self, row: LLMCallRow) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.rows.append(row)


class _FailingSink:
    async def save(self, row: LLMCallRow) -> None:
        raise OSError("disk full")


class _SyncSink:
    def __init__(self) -> None:
        self.rows: list[LLMCallRow] = []

    def save(self, row: LLMCallRow) -> None:
        self.rows.append(row)


_PARAMS = {"prompt": [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]}


async def _drain(result: Any) -> list[Any]:
    return [chunk async for chunk in result["stream"]]


def test_one_row_per_one_shot_call_with_distinct_ids() -> None:
    sink = _MemorySink()
    middleware = UsageLoggerMiddleware(sink=sink)
    healthy = wrap_language_model(FakeLanguageModel(text="ok"), middleware)
    broken = wrap_language_model(FakeLanguageModel(error=RuntimeError("down")), middleware)

    async def scenario() -> int:
        failures = 0
        for index in range(6):
            model = broken if index % 3 == 0 else healthy
            try:
                await model.do_generate(_PARAMS)
            except RuntimeError:
                failures += 1
        return failures

    failures = asyncio.run(scenario())

    assert failures == 2
    assert len(sink.rows) == 6
    assert len({row.id for row in sink.rows}) == 6
    assert [row.finish_reason for row in sink.rows].count("error") == 2
    assert list(middleware.diagnostics) == []


def test_generate_returns_the_original_result_object() -> None:
    sink = _SyncSink()
    middleware = UsageLoggerMiddleware(sink=sink)
    sentinel = {"content": [{"type": "text", "text": "same"}], "usage": {"inputTokens": 1, "outputTokens": 1}}

    async def do_generate() -> dict:
        return sentinel

    result = asyncio.run(middleware.wrap_generate(do_generate=do_generate, params=_PARAMS, model=None))

    assert result is sentinel
    assert sink.rows[0].output_text == "same"
    assert sink.rows[0].total_tokens == 2


def test_error_path_reraises_original_and_persists_error_row() -> None:
    sink = _MemorySink()
    error = RuntimeError("boom")
    model = wrap_language_model(FakeLanguageModel(error=error), UsageLoggerMiddleware(sink=sink))

    with pytest.raises(RuntimeError) as excinfo:
        asyncio.run(model.do_generate(_PARAMS))

    assert excinfo.value is error
    assert str(excinfo.value) == "boom"
    assert len(sink.rows) == 1
    row = sink.rows[0]
    assert row.finish_reason == "error"
    assert row.error["message"] == "boom"
    assert row.model_id == "fake-model"
    assert row.input_text == "[USER] hi"
    assert row.output_text is None


def test_success_path_persistence_failure_is_a_warning_only() -> None:
    middleware = UsageLoggerMiddleware(sink=_FailingSink())
    model = wrap_language_model(FakeLanguageModel(text="still returned"), middleware)

    with pytest.warns(UsageLogWarning, match="stage=generate error=OSError: disk full"):
        result = asyncio.run(model.do_generate(_PARAMS))

    assert result["content"][-1]["text"] == "still returned"
    assert [item.stage for item in middleware.diagnostics] == ["generate"]
    assert middleware.diagnostics[0].row_id is not None


def test_error_row_persistence_failure_does_not_replace_original_error() -> None:
    middleware = UsageLoggerMiddleware(sink=_FailingSink())
    model = wrap_language_model(FakeLanguageModel(error=ValueError("bad request")), middleware)

    with pytest.warns(UsageLogWarning):
        with pytest.raises(ValueError, match="bad request"):
            asyncio.run(model.do_generate(_PARAMS))

    assert middleware.diagnostics[0].stage == "generate.error"


def test_stream_is_forwarded_unchanged_and_persistence_is_not_awaited() -> None:
    chunks = [{"type": "text-delta", "id": "t0", "delta": f"{index},"} for index in range(1000)]
    chunks.append({"type": "finish", "finishReason": "stop", "usage": {"inputTokens": 5, "outputTokens": 1000}})
    sink = _MemorySink(delay=1.0)
    middleware = UsageLoggerMiddleware(sink=sink)

    async def scenario() -> tuple[list[Any], list[Any], float, int, int]:
        raw = await _drain(await FakeLanguageModel(chunks=chunks).do_stream(_PARAMS))

        wrapped = wrap_language_model(FakeLanguageModel(chunks=chunks), middleware)
        started = time.perf_counter()
        observed = await _drain(await wrapped.do_stream(_PARAMS))
        elapsed = time.perf_counter() - started
        rows_before_flush = len(sink.rows)
        pending = middleware.pending_saves

        await middleware.flush()
        return raw, observed, elapsed, rows_before_flush, pending

    raw, observed, elapsed, rows_before_flush, pending = asyncio.run(scenario())

    assert observed == raw
    assert all(left is right for left, right in zip(observed, chunks))
    assert elapsed < sink.delay
    assert rows_before_flush == 0
    assert pending == 1
    assert len(sink.rows) == 1
    assert sink.rows[0].output_text == "".join(f"{index}," for index in range(1000))
    assert sink.rows[0].total_tokens == 1005


def test_stream_result_envelope_is_preserved() -> None:
    sink = _MemorySink()
    middleware = UsageLoggerMiddleware(sink=sink)
    model = wrap_language_model(FakeLanguageModel(text="Hello, world", reasoning="plan"), middleware)

    async def scenario() -> dict:
        result = await model.do_stream(_PARAMS)
        assert result["request"]["body"]["model"] == "fake-model"
        chunks = await _drain(result)
        await middleware.flush()
        return {"chunks": chunks}

    outcome = asyncio.run(scenario())

    assert outcome["chunks"][-1]["type"] == "finish"
    row = sink.rows[0]
    assert row.output_text == "Hello, world"
    assert row.reasoning_text == "plan"
    assert row.request_id == "req_fake"
    assert row.finish_reason == "stop"
    assert (row.input_tokens, row.output_tokens, row.total_tokens) == (12, 7, 19)


def test_incomplete_stream_persists_no_row_by_default() -> None:
    chunks = [{"type": "text-delta", "delta": "par"}, {"type": "text-delta", "delta": "tial"}]
    sink = _MemorySink()
    middleware = UsageLoggerMiddleware(sink=sink)
    model = wrap_language_model(
        FakeLanguageModel(chunks=chunks, stream_error=ConnectionError("connection reset")),
        middleware,
    )

    async def scenario() -> list[Any]:
        received: list[Any] = []
        result = await model.do_stream(_PARAMS)
        with pytest.raises(ConnectionError, match="connection reset"):
            async for chunk in result["stream"]:
                received.append(chunk)
        await middleware.flush()
        return received

    received = asyncio.run(scenario())

    assert received == chunks
    assert sink.rows == []


def test_stream_ending_without_finish_persists_no_row() -> None:
    sink = _MemorySink()
    middleware = UsageLoggerMiddleware(sink=sink, persist_incomplete_streams=True)
    model = wrap_language_model(FakeLanguageModel(chunks=[{"type": "text-delta", "delta": "x"}]), middleware)

    async def scenario() -> None:
        await _drain(await model.do_stream(_PARAMS))
        await middleware.flush()

    asyncio.run(scenario())

    assert sink.rows == []


def test_incomplete_stream_opt_in_persists_aborted_row() -> None:
    sink = _MemorySink()
    middleware = UsageLoggerMiddleware(sink=sink, persist_incomplete_streams=True)
    model = wrap_language_model(
        FakeLanguageModel(
            chunks=[{"type": "text-delta", "delta": "par"}],
            stream_error=ConnectionError("connection reset"),
        ),
        middleware,
    )

    async def scenario() -> None:
        result = await model.do_stream(_PARAMS)
        with pytest.raises(ConnectionError):
            await _drain(result)
        await middleware.flush()

    asyncio.run(scenario())

    assert len(sink.rows) == 1
    assert sink.rows[0].finish_reason == "aborted"
    assert sink.rows[0].error["message"] == "connection reset"
    assert sink.rows[0].output_text is None


def test_consumer_closing_the_stream_never_persists() -> None:
    sink = _MemorySink()
    middleware = UsageLoggerMiddleware(sink=sink, persist_incomplete_streams=True)
    model = wrap_language_model(FakeLanguageModel(chunks=text_stream_chunks("abcdefghijkl")), middleware)

    async def scenario() -> None:
        result = await model.do_stream(_PARAMS)
        stream = result["stream"]
        await stream.__anext__()
        await stream.__anext__()
        await stream.aclose()
        await middleware.flush()

    asyncio.run(scenario())

    assert sink.rows == []


def test_do_stream_failure_persists_error_row_and_reraises() -> None:
    sink = _MemorySink()
    model = wrap_language_model(FakeLanguageModel(error=TimeoutError("no answer")), UsageLoggerMiddleware(sink=sink))

    with pytest.raises(TimeoutError, match="no answer"):
        asyncio.run(model.do_stream(_PARAMS))

    assert [row.finish_reason for row in sink.rows] == ["error"]


def test_stream_persistence_failure_surfaces_as_warning() -> None:
    middleware = UsageLoggerMiddleware(sink=_FailingSink())
    model = wrap_language_model(FakeLanguageModel(text="abc"), middleware)

    async def scenario() -> list[Any]:
        chunks = await _drain(await model.do_stream(_PARAMS))
        await middleware.flush()
        return chunks

    with pytest.warns(UsageLogWarning, match="stage=stream"):
        chunks = asyncio.run(scenario())

    assert chunks[-1]["type"] == "finish"
    assert middleware.diagnostics[0].stage == "stream"


def test_stream_result_without_iterator_is_returned_untouched() -> None:
    middleware = UsageLoggerMiddleware(sink=_MemorySink())
    envelope = {"stream": None, "note": "no body"}

    async def do_stream() -> dict:
        return envelope

    result = asyncio.run(middleware.wrap_stream(do_stream=do_stream, params={}, model=None))

    assert result is envelope


def test_escalated_warnings_never_reach_the_caller() -> None:
    middleware = UsageLoggerMiddleware(sink=_FailingSink())
    failing = wrap_language_model(FakeLanguageModel(error=ValueError("boom")), middleware)
    healthy = wrap_language_model(FakeLanguageModel(text="kept"), middleware)

    async def stream_scenario() -> list[Any]:
        chunks = await _drain(await healthy.do_stream(_PARAMS))
        await middleware.flush()
        return chunks

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        with pytest.raises(ValueError, match="boom"):
            asyncio.run(failing.do_generate(_PARAMS))
        result = asyncio.run(healthy.do_generate(_PARAMS))
        chunks = asyncio.run(stream_scenario())

    assert result["content"][-1]["text"] == "kept"
    assert chunks[-1]["type"] == "finish"
    assert [item.stage for item in middleware.diagnostics] == ["generate.error", "generate", "stream"]


def test_diagnostics_keep_only_the_most_recent_faults() -> None:
    middleware = UsageLoggerMiddleware(sink=_FailingSink())
    model = wrap_language_model(FakeLanguageModel(text="ok"), middleware)

    async def scenario() -> None:
        for _ in range(MAX_DIAGNOSTICS + 10):
            await model.do_generate(_PARAMS)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UsageLogWarning)
        asyncio.run(scenario())

    assert len(middleware.diagnostics) == MAX_DIAGNOSTICS
    assert all(item.stage == "generate" for item in middleware.diagnostics)


def test_closing_the_stream_closes_the_provider_stream() -> None:
    closed: list[str] = []

    async def provider_chunks() -> Any:
        try:
            for chunk in text_stream_chunks("abcdefghijkl"):
                yield chunk
        finally:
            closed.append("provider")

    async def do_stream() -> dict:
        return {"stream": provider_chunks()}

    middleware = UsageLoggerMiddleware(sink=_MemorySink())

    async def scenario() -> list[str]:
        result = await middleware.wrap_stream(do_stream=do_stream, params=_PARAMS, model=None)
        stream = result["stream"]
        await stream.__anext__()
        await stream.aclose()
        return list(closed)

    assert asyncio.run(scenario()) == ["provider"]
