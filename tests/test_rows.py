import time

from usagelog.capture import LLMCallRow, build_error_row, build_success_row
from usagelog.capture.rows import error_payload


def _params() -> dict:
    return {
        "system": "You are helpful.",
        "prompt": [{"role": "user", "content": [{"type": "text", "text": "What is 2+2?"}]}],
        "temperature": 0.1,
        "topP": 0.8,
        "maxOutputTokens": 64,
        "tools": [{"type": "function", "name": "calculator"}],
        "providerOptions": {"usageLogger": {"tags": ["math", "eval"]}},
    }


def test_success_row_populates_request_response_and_usage() -> None:
    result = {
        "content": [
            {"type": "reasoning", "text": "add them"},
            {"type": "text", "text": "4"},
        ],
        "finishReason": "stop",
        "usage": {"inputTokens": 11},
        "warnings": [{"type": "unsupported-setting", "setting": "seed"}],
        "providerMetadata": {"openai": {"cached": False}},
        "request": {"body": {"model": "gpt-test", "messages": []}},
        "response": {
            "id": "resp_9",
            "headers": {"x-request-id": "req_9", "authorization": "Bearer secret"},
            "body": {"usage": {"input_tokens": 50, "output_tokens": 2}},
        },
    }

    row = build_success_row(_params(), result, started_at=time.perf_counter(), model_id="fallback")

    assert len(row.id) == 32
    assert row.timestamp.endswith("Z")
    assert row.model_id == "gpt-test"
    assert row.tags == ["math", "eval"]
    assert row.input_text == "[SYSTEM]\nYou are helpful.\n[USER] What is 2+2?"
    assert row.input_json == {"model": "gpt-test", "messages": []}
    assert row.prompt_json == _params()["prompt"]
    assert row.output_text == "4"
    assert row.reasoning_text == "add them"
    assert row.reasoning_json == [{"type": "reasoning", "text": "add them"}]
    assert row.content_json == result["content"]
    assert row.output_json == result["response"]["body"]
    assert (row.input_tokens, row.output_tokens, row.total_tokens) == (11, 2, 13)
    assert row.tool_names == ["calculator"]
    assert row.tool_count == 1
    assert (row.temperature, row.top_p, row.max_output_tokens) == (0.1, 0.8, 64)
    assert row.finish_reason == "stop"
    assert row.warnings == [{"type": "unsupported-setting", "setting": "seed"}]
    assert row.request_id == "req_9"
    assert row.response_id == "resp_9"
    assert row.meta == {"openai": {"cached": False}}
    assert row.latency_ms is not None and row.latency_ms >= 0
    assert row.error is None


def test_success_row_falls_back_to_body_text_and_params() -> None:
    result = {
        "response": {
            "body": {"choices": [{"message": {"content": "from body"}}], "id": "chatcmpl-1"},
        }
    }

    row = build_success_row({"prompt": "hi"}, result, started_at=None, model_id="m-1")

    assert row.output_text == "from body"
    assert row.response_id == "chatcmpl-1"
    assert row.input_json == {"prompt": "hi"}
    assert row.model_id == "m-1"
    assert row.latency_ms is None
    assert row.total_tokens is None


def test_success_row_survives_hostile_result() -> None:
    class Hostile:
        def __getattr__(self, name: str) -> object:
            raise RuntimeError(f"no {name}")

    row = build_success_row({"prompt": "x"}, Hostile(), started_at=None)

    assert isinstance(row, LLMCallRow)
    assert row.input_text == "[PROMPT]\nx"
    assert row.output_text is None


def test_error_row_carries_request_view_and_error_only() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError as error:
        row = build_error_row(_params(), error, started_at=time.perf_counter(), model_id="gpt-test")

    assert row.finish_reason == "error"
    assert row.error["message"] == "boom"
    assert row.error["type"] == "RuntimeError"
    assert "RuntimeError: boom" in row.error["stack"]
    assert row.model_id == "gpt-test"
    assert row.tags == ["math", "eval"]
    assert row.input_text.startswith("[SYSTEM]")
    assert row.temperature == 0.1
    assert row.output_text is None
    assert row.output_json is None
    assert row.input_tokens is None
    assert row.total_tokens is None
    assert row.latency_ms is not None


def test_error_payload_for_inline_stream_errors() -> None:
    assert error_payload({"message": "rate limited", "stack": "trace"}) == {
        "message": "rate limited",
        "stack": "trace",
    }
    assert error_payload("plain") == {"message": "plain"}
    assert error_payload({"code": 429}) == {"message": '{"code": 429}'}
