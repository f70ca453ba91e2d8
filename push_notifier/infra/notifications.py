"""
站内通知：落库 + 推送给在线客户端。

- `NotificationHub`：每个用户一个 asyncio.Queue（由前端长连接订阅，不在本服务范围）
- 推送是 best-effort：用户不在线就直接丢弃，不算失败
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from push_notifier.storage.models import NotificationRecord
from push_notifier.storage.protocols import PersistenceStore

logger = logging.getLogger(__name__)

MAX_QUEUED_PER_USER = 100


class NotificationHub:
    def __init__(self) -> None:
        self._streams: dict[str, asyncio.Queue[dict[str, object]]] = {}

    def subscribe(self, user_id: str) -> asyncio.Queue[dict[str, object]]:
        queue: asyncio.Queue[dict[str, object]] = asyncio.Queue(maxsize=MAX_QUEUED_PER_USER)
        self._streams[user_id] = queue
        return queue

    def unsubscribe(self, user_id: str) -> None:
        self._streams.pop(user_id, None)

    def broadcast(self, user_id: str, notification: NotificationRecord) -> bool:
        """返回是否真的推送出去了（没有订阅者返回 False，不是错误）。"""
        queue = self._streams.get(user_id)
        if queue is None:
            logger.debug(f"No notification stream for user {user_id} ({len(self._streams)} active streams)")
            return False
        payload = {"type": "notification", "data": notification.model_dump(mode="json")}
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Notification stream full for user {user_id}; dropping stream")
            self._streams.pop(user_id, None)
            return False
        return True


async def notify_user(
    persistence: PersistenceStore,
    hub: NotificationHub,
    user_id: str,
    type_: str,
    title: str,
    message: str,
    metadata: Mapping[str, object] | None = None,
) -> NotificationRecord:
    """落库并推送一条站内通知。落库失败由调用方决定是否吞掉。"""
    record = await persistence.create_notification(
        {
            "user_id": user_id,
            "type": type_,
            "title": title,
            "message": message,
            "metadata": dict(metadata or {}),
        }
    )
    hub.broadcast(user_id, record)
    return record
