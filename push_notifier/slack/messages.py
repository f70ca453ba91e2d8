"""
Slack 消息拼装。

注意：
- 这里是**确定性输出**（不依赖 LLM），便于稳定投递
- AI 摘要消息和普通 push 通知是两种版式；AI 失败/跳过时用普通版式
"""

from __future__ import annotations

from pydantic import BaseModel

from push_notifier.pipeline.models import CanonicalPushEvent
from push_notifier.pipeline.models import CodeSummary

IMPACT_EMOJI: dict[str, str] = {
    "low": ":large_green_circle:",
    "medium": ":large_yellow_circle:",
    "high": ":red_circle:",
}

CATEGORY_EMOJI: dict[str, str] = {
    "feature": ":sparkles:",
    "bugfix": ":bug:",
    "refactor": ":wrench:",
    "docs": ":books:",
    "test": ":test_tube:",
    "security": ":shield:",
    "other": ":memo:",
}

COMMIT_SUMMARY_CONTEXT = "📝 AI Summary: Code changes detected in repository structure and functionality"


class SlackMessage(BaseModel):
    blocks: list[dict[str, object]]
    text: str


def commit_url(event: CanonicalPushEvent) -> str:
    return f"https://github.com/{event.repository_full_name}/commit/{event.commit_sha}"


def build_summary_text(event: CanonicalPushEvent, summary: CodeSummary) -> str:
    """AI 摘要版式：impact/category emoji + 增删行数 + 详情 + commit 链接。"""
    lines = [
        f"*{event.repository_full_name}* - {event.branch} branch",
        "",
        f"{IMPACT_EMOJI[summary.impact]} *{summary.summary}*",
        "",
        f"{CATEGORY_EMOJI[summary.category]} *{summary.category.upper()}* | :bar_chart: "
        f"+{event.additions} -{event.deletions} lines",
        summary.details,
        "",
        f"🔗 <{commit_url(event)}|View Commit>",
    ]
    return "\n".join(lines)


def build_summary_message(event: CanonicalPushEvent, summary: CodeSummary) -> SlackMessage:
    text = build_summary_text(event, summary)
    return SlackMessage(blocks=[{"type": "section", "text": {"type": "mrkdwn", "text": text}}], text=text)


def build_push_message(event: CanonicalPushEvent, author: str, include_commit_summary: bool) -> SlackMessage:
    """普通 push 通知版式（AI 跳过/失败时使用）。"""
    blocks: list[dict[str, object]] = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"🌳 *New push to {event.repository_full_name}* on `{event.branch}`"},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Author:*\n{author}"},
                {"type": "mrkdwn", "text": f"*Commit:*\n<{commit_url(event)}|{event.commit_sha[:7]}>"},
            ],
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Message:*\n{event.commit_message}"}},
    ]
    if include_commit_summary:
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": COMMIT_SUMMARY_CONTEXT}]})
    return SlackMessage(blocks=blocks, text=f"New push to {event.repository_full_name} by {author}")
