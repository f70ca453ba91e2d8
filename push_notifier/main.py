"""
FastAPI 服务入口。

这里做三件事：
- 加载配置（严格校验环境变量）
- 组装外部依赖（HTTP Client / 存储 / 通知 hub / 成本补查 / 统计上报）
- 装配路由（health + github webhook）

注意：
- 业务流程不写在这里（由 `pipeline/orchestrator.py` 负责）
- `httpx.AsyncClient` 会被复用（避免每个请求新建连接）
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI

from push_notifier.billing.cost import CostReconciler
from push_notifier.config import load_config_from_env
from push_notifier.engines.stats import StatsClient
from push_notifier.github.webhook import build_github_webhook_router
from push_notifier.infra.notifications import NotificationHub
from push_notifier.pipeline.orchestrator import build_push_pipeline
from push_notifier.storage.memory import InMemoryStore
from push_notifier.storage.pg import PgStorageClient
from push_notifier.storage.pg import PgStore
from push_notifier.storage.pg import ensure_schema

logger = logging.getLogger(__name__)


def build_app() -> FastAPI:
    """创建并返回 FastAPI app（便于测试/复用）。"""

    # 1) 配置：缺失会直接抛错，启动失败（这是期望行为）
    config = load_config_from_env(os.environ)

    # 2) 可复用的 HTTP client：GitHub / Slack / LLM / 统计服务共用
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))

    # 3) 存储：配置了 DATABASE_URL 用 Postgres，否则退回内存（仅开发用）
    if config.database_url:
        pg_client = PgStorageClient(config.database_url)
        ensure_schema(pg_client)
        store: InMemoryStore | PgStore = PgStore(pg_client)
    else:
        logger.warning("DATABASE_URL not set; using in-memory store (data is lost on restart)")
        store = InMemoryStore()

    hub = NotificationHub()
    reconciler = CostReconciler(
        http_client=http_client,
        routed_base_url=str(config.routed.base_url),
        persistence=store,
    )
    stats_client = StatsClient(
        base_url=str(config.engines.stats_url) if config.engines.stats_url else None,
        http_client=http_client,
    )
    pipeline = build_push_pipeline(
        config=config,
        store=store,
        persistence=store,
        http_client=http_client,
        hub=hub,
        reconciler=reconciler,
        stats_client=stats_client,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await reconciler.cancel_all()
        await stats_client.cancel_all()
        await http_client.aclose()

    app = FastAPI(title="Push Notifier", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """健康检查：用于 k8s / LB 探活。"""
        return {"status": "ok"}

    app.include_router(build_github_webhook_router(config=config.github, pipeline=pipeline))
    return app


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    uvicorn.run("push_notifier.main:build_app", factory=True, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))


if __name__ == "__main__":
    main()
