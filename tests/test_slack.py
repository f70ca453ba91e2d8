from __future__ import annotations

import json

import httpx
import pytest

from factories import COMMIT_SHA
from push_notifier.errors import DeliveryError
from push_notifier.pipeline.models import CanonicalPushEvent
from push_notifier.pipeline.models import CodeSummary
from push_notifier.slack.client import SlackClient
from push_notifier.slack.messages import COMMIT_SUMMARY_CONTEXT
from push_notifier.slack.messages import build_push_message
from push_notifier.slack.messages import build_summary_message
from push_notifier.slack.messages import build_summary_text

EVENT = CanonicalPushEvent(
    repository_full_name="acme/api",
    branch="main",
    commit_message="Add login rate limiting",
    files_changed=("app/limits.py",),
    additions=40,
    deletions=3,
    commit_sha=COMMIT_SHA,
)
SUMMARY = CodeSummary(summary="Adds rate limiting", impact="high", category="security", details="Per-IP limits.")


def _slack(handler: httpx.MockTransport, enabled: bool = True) -> SlackClient:
    return SlackClient(
        api_base_url="https://slack.test/api/",
        token="xoxb-1",
        http_client=httpx.AsyncClient(transport=handler),
        enabled=enabled,
    )


def test_summary_text_contains_emoji_counts_and_link() -> None:
    text = build_summary_text(EVENT, SUMMARY)
    assert text.startswith("*acme/api* - main branch")
    assert ":red_circle: *Adds rate limiting*" in text
    assert ":shield: *SECURITY*" in text
    assert "+40 -3 lines" in text
    assert "Per-IP limits." in text
    assert f"<https://github.com/acme/api/commit/{COMMIT_SHA}|View Commit>" in text


def test_summary_message_uses_single_section() -> None:
    message = build_summary_message(EVENT, SUMMARY)
    assert message.blocks == [{"type": "section", "text": {"type": "mrkdwn", "text": message.text}}]


def test_push_message_with_and_without_context() -> None:
    message = build_push_message(EVENT, author="Dana Lee", include_commit_summary=True)
    assert message.text == "New push to acme/api by Dana Lee"
    assert message.blocks[-1] == {"type": "context", "elements": [{"type": "mrkdwn", "text": COMMIT_SUMMARY_CONTEXT}]}
    rendered = json.dumps(message.blocks)
    assert COMMIT_SHA[:7] in rendered
    assert "Add login rate limiting" in rendered

    plain = build_push_message(EVENT, author="Dana Lee", include_commit_summary=False)
    assert len(plain.blocks) == 3


@pytest.mark.anyio
async def test_send_message_posts_and_returns_ts() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "ts": "1700000000.000100"})

    ts = await _slack(httpx.MockTransport(handler)).send_message("C1", build_summary_message(EVENT, SUMMARY))

    assert ts == "1700000000.000100"
    request = requests[0]
    assert str(request.url) == "https://slack.test/api/chat.postMessage"
    assert request.headers["Authorization"] == "Bearer xoxb-1"
    body = json.loads(request.content)
    assert body["channel"] == "C1"
    assert body["unfurl_links"] is False


@pytest.mark.anyio
async def test_send_message_ok_false_raises_friendly_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": False, "error": "not_in_channel"}))
    with pytest.raises(DeliveryError, match="not in that channel"):
        await _slack(transport).send_message("C1", build_summary_message(EVENT, SUMMARY))


@pytest.mark.anyio
async def test_send_message_http_error_raises() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(DeliveryError, match="502"):
        await _slack(transport).send_message("C1", build_summary_message(EVENT, SUMMARY))


@pytest.mark.anyio
async def test_send_message_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(DeliveryError):
        await _slack(httpx.MockTransport(handler)).send_message("C1", build_summary_message(EVENT, SUMMARY))


@pytest.mark.anyio
async def test_disabled_client_sends_nothing() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    assert await _slack(httpx.MockTransport(handler), enabled=False).send_message("C1", build_summary_message(EVENT, SUMMARY)) is None
    assert requests == []
