from types import SimpleNamespace

from usagelog.capture import TokenUsage, normalize_usage


def test_normalized_usage_wins_and_body_fills_gaps() -> None:
    usage = normalize_usage({"inputTokens": 10}, {"input_tokens": 99, "output_tokens": 5})

    assert usage.input_tokens == 10
    assert usage.output_tokens == 5
    assert usage.total_tokens == 15


def test_total_is_derived_only_when_both_sides_are_known() -> None:
    assert normalize_usage({"inputTokens": 10, "outputTokens": 5}).total_tokens == 15
    assert normalize_usage({"inputTokens": 10}).total_tokens is None
    assert normalize_usage({"inputTokens": 10, "outputTokens": 5, "totalTokens": 40}).total_tokens == 40


def test_legacy_aliases_and_nested_details_resolve() -> None:
    usage = normalize_usage(
        {"promptTokens": 7, "completionTokens": 3},
        {
            "prompt_tokens_details": {"cached_tokens": 4},
            "completion_tokens_details": {"reasoning_tokens": 2},
        },
    )

    assert usage == TokenUsage(
        input_tokens=7,
        output_tokens=3,
        total_tokens=10,
        cached_input_tokens=4,
        reasoning_tokens=None,
        output_reasoning_tokens=2,
    )


def test_structured_token_objects_and_attribute_usage() -> None:
    usage = normalize_usage(
        SimpleNamespace(
            inputTokens={"total": 20, "cacheRead": 6},
            outputTokens={"total": 8, "reasoning": 3},
        )
    )

    assert usage.input_tokens == 20
    assert usage.output_tokens == 8
    assert usage.total_tokens == 28
    assert usage.cached_input_tokens == 6
    assert usage.reasoning_tokens == 3
    assert usage.output_reasoning_tokens == 3


def test_absent_counts_stay_absent() -> None:
    usage = normalize_usage(None, None)

    assert usage.to_dict() == {
        "input_tokens": None,
        "output_tokens": None,
        "total_tokens": None,
        "cached_input_tokens": None,
        "reasoning_tokens": None,
        "output_reasoning_tokens": None,
    }
    assert normalize_usage({"inputTokens": "12", "outputTokens": True}).input_tokens is None
