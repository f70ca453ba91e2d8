from __future__ import annotations

import json

import pytest

from factories import summary_json
from push_notifier.errors import SummaryParseError
from push_notifier.llm.extractor import extract_completion_text
from push_notifier.llm.extractor import parse_code_summary
from push_notifier.llm.extractor import repair_truncated_json


def test_parse_plain_json() -> None:
    summary = parse_code_summary(summary_json())
    assert summary.summary == "Adds rate limiting to the login endpoint"
    assert summary.impact == "high"
    assert summary.category == "security"
    assert summary.details == "Limits repeated login attempts per IP."


def test_parse_fenced_json() -> None:
    summary = parse_code_summary(f"```json\n{summary_json(impact='low')}\n```")
    assert summary.impact == "low"


def test_parse_json_embedded_in_prose() -> None:
    text = (
        "Let me think about the {changes} first. The commit touches auth.\n"
        f"Here is the result: {summary_json(category='feature')}\nHope this helps."
    )
    summary = parse_code_summary(text)
    assert summary.category == "feature"


def test_parse_fenced_json_inside_reasoning() -> None:
    text = f"Reasoning... done.\n```json\n{summary_json(category='docs')}\n```\nThat is all."
    assert parse_code_summary(text).category == "docs"


def test_parse_truncated_json_mid_details() -> None:
    text = (
        '{"summary": "Adds login rate limiting", "impact": "high", "category": "feature", '
        '"details": "This change adds the limi'
    )
    summary = parse_code_summary(text)
    assert summary.summary == "Adds login rate limiting"
    assert summary.impact == "high"
    assert summary.category == "feature"
    # details 被截断丢弃后用 summary 兜底
    assert summary.details == "Adds login rate limiting"


def test_repair_is_deterministic() -> None:
    text = '{"summary": "Adds login", "impact": "low", "category": "docs", "details": "trunc'
    first = repair_truncated_json(text)
    assert first is not None
    assert first == repair_truncated_json(text)
    assert json.loads(first)["category"] == "docs"


def test_repair_ignores_complete_or_unrelated_text() -> None:
    assert repair_truncated_json('{"summary": "ok"}') is None
    assert repair_truncated_json('{"other": "trunc') is None
    assert repair_truncated_json("no json here") is None


def test_parse_unwraps_nested_summary() -> None:
    inner = json.loads(summary_json(impact="medium"))
    summary = parse_code_summary(json.dumps({"summary": inner}))
    assert summary.impact == "medium"
    assert summary.summary == inner["summary"]


def test_parse_normalizes_impact_and_category() -> None:
    summary = parse_code_summary(summary_json(impact="Critical", category="Feature"))
    assert summary.impact == "medium"
    assert summary.category == "feature"

    summary = parse_code_summary(summary_json(category="chore"))
    assert summary.category == "other"


def test_parse_missing_required_field_fails() -> None:
    with pytest.raises(SummaryParseError):
        parse_code_summary(json.dumps({"summary": "x", "impact": "low"}))


def test_parse_irrecoverable_text_fails() -> None:
    with pytest.raises(SummaryParseError):
        parse_code_summary("I am unable to summarize this push.")
    with pytest.raises(SummaryParseError):
        parse_code_summary("   ")


def test_extract_text_from_string_content() -> None:
    completion = {"choices": [{"message": {"role": "assistant", "content": "hello"}}]}
    assert extract_completion_text(completion) == "hello"


def test_extract_text_from_content_parts() -> None:
    completion = {
        "choices": [
            {
                "message": {
                    "content": [
                        {"type": "text", "text": '{"summary": '},
                        {"type": "image_url", "image_url": {"url": "x"}},
                        {"type": "text", "text": '"x"}'},
                    ]
                }
            }
        ]
    }
    assert extract_completion_text(completion) == '{"summary": "x"}'


def test_extract_text_falls_back_to_reasoning() -> None:
    completion = {"choices": [{"message": {"content": "", "reasoning": " thinking "}}]}
    assert extract_completion_text(completion) == "thinking"

    completion = {
        "choices": [
            {"message": {"content": None, "reasoning_details": [{"type": "reasoning.text", "text": "step one"}]}}
        ]
    }
    assert extract_completion_text(completion) == "step one"


def test_extract_text_without_choices_is_empty() -> None:
    assert extract_completion_text({"choices": []}) == ""
    assert extract_completion_text({}) == ""
