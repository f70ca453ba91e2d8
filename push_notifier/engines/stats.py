"""
流式统计服务（HTTP）。未配置地址时是 no-op；失败只记日志，不阻塞 webhook。

上报是 fire-and-forget：`schedule_ingest` 只创建后台任务，不等待统计服务响应；
任务挂在 client 上，进程退出时统一取消。
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class StatsIngestPayload(BaseModel):
    user_id: str
    repository_id: str
    impact_score: int
    timestamp: str


class StatsClient:
    def __init__(self, base_url: str | None, http_client: httpx.AsyncClient) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._http_client = http_client
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule_ingest(self, payload: StatsIngestPayload) -> asyncio.Task[None] | None:
        if self._base_url is None:
            return None
        task = asyncio.create_task(self.ingest_push_event(payload), name=f"stats-ingest-{payload.repository_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    async def ingest_push_event(self, payload: StatsIngestPayload) -> None:
        if self._base_url is None:
            return
        try:
            response = await self._http_client.post(f"{self._base_url}/ingest", json=payload.model_dump(), timeout=5.0)
        except httpx.HTTPError as exc:
            logger.warning(f"Stats ingest failed (non-fatal): {exc}")
            return
        if response.status_code >= 400:
            logger.warning(f"Stats ingest returned {response.status_code} (non-fatal)")
