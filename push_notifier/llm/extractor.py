"""
LLM 文本输出 -> `CodeSummary`。

模型并不总是“听话”地只输出 JSON，常见情况：
- 包在 markdown 代码块里
- 推理型模型先输出一大段文字，JSON 夹在中间
- 撞到 max tokens，JSON 在字符串中间被截断

解析顺序（第一个成功的为准）：
1. 去掉首尾代码块后直接 json.loads
2. 在全文里找 fenced / 花括号包裹的对象（从最后一个 `}` 往前找 `{`）
3. 截断修复：回退到最后一个完整的字符串，补齐右花括号
4. 如果模型包了一层 `{"summary": {...}}`，拆掉一层
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping

from pydantic import ValidationError

from push_notifier.errors import SummaryParseError
from push_notifier.pipeline.models import CodeSummary

logger = logging.getLogger(__name__)

_LEADING_FENCE = re.compile(r"^```(?:json)?\s*")
_TRAILING_FENCE = re.compile(r"\s*```$")
_FENCED_OBJECT = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_TRAILING_COMMA = re.compile(r",(\s*)$")
# 截断位置落在 key 之后（`, "details"`）时，这个 key 没有 value，要一起去掉
_DANGLING_KEY = re.compile(r'([{,])\s*"(?:[^"\\]|\\.)*"\s*$')


def extract_completion_text(completion: Mapping[str, object]) -> str:
    """
    从 chat completion 里取文本。

    - 优先 `message.content`（字符串，或 `[{type: "text", text}]` 数组）
    - content 为空时，部分 provider 会把答案放在 `reasoning` / `reasoning_details`
    """
    choices = completion.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, Mapping):
        return ""

    content = message.get("content")
    text = ""
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        text = "".join(
            part["text"]
            for part in content
            if isinstance(part, Mapping) and part.get("type") == "text" and isinstance(part.get("text"), str)
        )
    if text.strip():
        return text

    reasoning = message.get("reasoning")
    if isinstance(reasoning, str) and reasoning.strip():
        return reasoning.strip()
    details = message.get("reasoning_details")
    if isinstance(details, list):
        return "\n".join(
            part["text"]
            for part in details
            if isinstance(part, Mapping) and part.get("type") == "reasoning.text" and isinstance(part.get("text"), str)
        ).strip()
    return text


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    return _TRAILING_FENCE.sub("", _LEADING_FENCE.sub("", stripped, count=1), count=1)


def _loads_object(candidate: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def find_embedded_summary_object(text: str) -> dict[str, object] | None:
    """在散文里找带 `summary` 的 JSON 对象：先找代码块，再从最后一个 `}` 往前逐个 `{` 试。"""
    for match in _FENCED_OBJECT.finditer(text):
        parsed = _loads_object(match.group(1).strip())
        if parsed is not None and "summary" in parsed:
            return parsed

    last_brace = text.rfind("}")
    if last_brace == -1:
        return None
    for start in range(last_brace, -1, -1):
        if text[start] != "{":
            continue
        parsed = _loads_object(text[start : last_brace + 1])
        if parsed is not None and "summary" in parsed:
            return parsed
    return None


def repair_truncated_json(raw: str) -> str | None:
    """
    修复在字符串中间被截断的 JSON。

    - 只处理以 `{` 开头且包含 `"summary"` 的文本
    - 没有以“未闭合字符串”结尾的文本不处理（返回 None）
    - 纯函数：同样的输入总是得到同样的输出
    """
    text = raw.strip()
    if not text.startswith("{") or '"summary"' not in text:
        return None

    in_string = False
    escape = False
    last_closing_quote = -1
    for i, char in enumerate(text):
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            if not in_string:
                last_closing_quote = i
    if not in_string or last_closing_quote < 0:
        return None

    truncated = text[: last_closing_quote + 1]
    dangling = _DANGLING_KEY.search(truncated)
    if dangling is not None:
        opener = dangling.group(1)
        truncated = truncated[: dangling.start()] + ("{" if opener == "{" else "")
    truncated = _TRAILING_COMMA.sub(r"\1", truncated).rstrip()

    opens, closes = _count_braces_outside_strings(truncated)
    return truncated + "}" * max(1, opens - closes)


def _count_braces_outside_strings(text: str) -> tuple[int, int]:
    opens = closes = 0
    in_string = False
    escape = False
    for char in text:
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
        elif not in_string and char == "{":
            opens += 1
        elif not in_string and char == "}":
            closes += 1
    return opens, closes


def _unwrap(parsed: dict[str, object]) -> dict[str, object]:
    inner = parsed.get("summary")
    if isinstance(inner, dict) and {"summary", "impact", "category"} <= inner.keys():
        return inner
    return parsed


def parse_code_summary(text: str) -> CodeSummary:
    """
    解析模型输出为 `CodeSummary`。

    - 失败：所有修复手段都失败，或缺少 summary/impact/category 时抛 `SummaryParseError`
    - details 缺失时用 summary 兜底
    """
    if not text.strip():
        raise SummaryParseError("Empty AI response")

    json_text = strip_code_fence(text)
    parsed = _loads_object(json_text)
    if parsed is None:
        parsed = find_embedded_summary_object(text)
    if parsed is None:
        repaired = repair_truncated_json(json_text)
        if repaired is not None:
            parsed = _loads_object(repaired)
            if parsed is not None:
                logger.info("Recovered truncated AI response JSON")
    if parsed is None:
        logger.error(f"Failed to parse AI response as JSON. Raw (first 500 chars): {json_text[:500]}")
        raise SummaryParseError("Failed to parse AI response: no valid JSON found")

    fields = _unwrap(parsed)
    if not all(isinstance(fields.get(key), str) and fields[key].strip() for key in ("summary", "impact", "category")):
        logger.error(f"Invalid AI response structure: {fields}")
        raise SummaryParseError("AI response missing required fields")

    details = fields.get("details")
    try:
        return CodeSummary(
            summary=str(fields["summary"]).strip(),
            impact=fields["impact"],
            category=fields["category"],
            details=details if isinstance(details, str) else str(fields["summary"]),
        )
    except ValidationError as exc:
        raise SummaryParseError(f"AI response does not match CodeSummary: {exc}") from exc
