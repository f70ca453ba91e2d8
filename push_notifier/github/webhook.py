"""
GitHub Webhook 接入层。

职责：
- 校验 `X-Hub-Signature-256`（HMAC SHA256）
- 解析 JSON body
- 调用 pipeline，把终态映射成 HTTP 状态码：
  - ignored / delivered -> 200
  - delivery_failed / internal_error -> 500
"""

from __future__ import annotations

import hashlib
import hmac
import json

from fastapi import APIRouter
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from fastapi.responses import JSONResponse

from push_notifier.config import GitHubConfig
from push_notifier.pipeline.orchestrator import PushPipeline


def _verify_github_signature(body: bytes, signature_header: str, secret: str) -> None:
    if not signature_header.startswith("sha256="):
        raise HTTPException(status_code=401, detail="Invalid signature header")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature_header):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def build_github_webhook_router(config: GitHubConfig, pipeline: PushPipeline) -> APIRouter:
    router = APIRouter()

    @router.post("/github/webhook", response_model=None)
    async def github_webhook(
        request: Request,
        x_github_event: str = Header(alias="X-GitHub-Event"),
        x_hub_signature_256: str = Header(alias="X-Hub-Signature-256"),
    ) -> dict[str, object] | JSONResponse:
        body = await request.body()
        _verify_github_signature(body=body, signature_header=x_hub_signature_256, secret=config.webhook_secret)
        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        outcome = await pipeline.run(event_type=x_github_event, payload=payload)
        if outcome.status == "delivery_failed":
            return JSONResponse(status_code=500, content={"error": "Webhook processed but Slack delivery failed"})
        if outcome.status == "internal_error":
            return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
        if outcome.status == "ignored":
            return {"status": "ignored", "reason": outcome.reason}
        return {"status": "ok", "ai_generated": outcome.ai_generated}

    return router
