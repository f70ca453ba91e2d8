"""
Slack Web API 客户端（外部系统连接器）。

约定：
- 每次 pipeline 用解析出来的 workspace token 新建（不同集成 token 不同）
- 这里只做 HTTP 调用 + 错误处理；投递失败统一抛 `DeliveryError`，不要吞
- Slack 即使出错也常返回 200，必须看 body 里的 `ok`
"""

from __future__ import annotations

import logging

import httpx

from push_notifier.errors import DeliveryError
from push_notifier.slack.messages import SlackMessage

logger = logging.getLogger(__name__)

_FRIENDLY_ERRORS: dict[str, str] = {
    "not_in_channel": "The bot is not in that channel. Invite the app to the channel (e.g. /invite @app) or reconnect the integration.",
    "channel_not_found": "The bot is not in that channel. Invite the app to the channel (e.g. /invite @app) or reconnect the integration.",
    "invalid_auth": "Slack connection expired or was revoked. Reconnect Slack from Integrations.",
    "token_revoked": "Slack connection expired or was revoked. Reconnect Slack from Integrations.",
}


class SlackClient:
    def __init__(self, api_base_url: str, token: str, http_client: httpx.AsyncClient, enabled: bool = True) -> None:
        """
        - api_base_url: Slack API 地址（默认 https://slack.com/api）
        - token: workspace bot token
        - enabled: 全局开关关闭时不发消息（本地开发用）
        """
        self._api_base_url = api_base_url.rstrip("/")
        self._token = token
        self._http_client = http_client
        self._enabled = enabled

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json; charset=utf-8"}

    async def send_message(self, channel_id: str, message: SlackMessage) -> str | None:
        """chat.postMessage，返回消息 ts（开关关闭时返回 None）。"""
        if not self._enabled:
            logger.info(f"Slack notifications disabled; not sending to {channel_id}")
            return None

        payload = {"channel": channel_id, "blocks": message.blocks, "text": message.text, "unfurl_links": False}
        try:
            response = await self._http_client.post(
                f"{self._api_base_url}/chat.postMessage", headers=self._headers(), json=payload
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Slack request failed: {exc}") from exc
        if response.status_code >= 400:
            raise DeliveryError(f"Slack API error {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as exc:
            raise DeliveryError("Slack API returned invalid JSON") from exc
        if not isinstance(data, dict) or data.get("ok") is not True:
            code = data.get("error") if isinstance(data, dict) else None
            logger.error(f"Slack API error: {code}")
            raise DeliveryError(_FRIENDLY_ERRORS.get(str(code), f"Slack API error: {code or 'unknown'}"))
        ts = data.get("ts")
        return ts if isinstance(ts, str) else None
