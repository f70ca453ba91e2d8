"""
存储层接口协议（依赖倒置：pipeline 只依赖这些 Protocol）。

实现：
- `storage/memory.py`：内存实现，开发/单元测试用
- `storage/pg.py`：Postgres 实现

金额单位统一为 $0.0001（预算、月度花费、usage.cost）。
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Protocol

from push_notifier.storage.models import AiUsageRecord
from push_notifier.storage.models import IntegrationRecord
from push_notifier.storage.models import NotificationRecord
from push_notifier.storage.models import OverBudgetBehavior
from push_notifier.storage.models import PushEventRecord
from push_notifier.storage.models import RepositoryRecord
from push_notifier.storage.models import UserRecord


class ConfigStore(Protocol):
    """仓库/集成/用户配置（只读）。"""

    async def get_repository_by_github_id(self, github_id: str) -> RepositoryRecord | None: ...

    async def get_active_integration(self, repository_id: str) -> IntegrationRecord | None: ...

    async def get_user(self, user_id: str) -> UserRecord | None: ...

    async def get_user_monthly_budget(self, user_id: str) -> int | None: ...

    async def get_user_over_budget_preference(self, user_id: str) -> OverBudgetBehavior: ...

    async def get_monthly_ai_spend(self, user_id: str, since: datetime) -> int: ...

    async def get_slack_workspace_token(self, workspace_id: str) -> str | None: ...


class PersistenceStore(Protocol):
    """push 事件 / AI 用量 / 站内通知的写入。"""

    async def create_push_event(self, fields: Mapping[str, object]) -> PushEventRecord: ...

    async def get_push_event(self, push_event_id: str) -> PushEventRecord | None: ...

    async def create_ai_usage(self, fields: Mapping[str, object]) -> AiUsageRecord: ...

    async def get_ai_usage(self, push_event_id: str, user_id: str) -> AiUsageRecord | None: ...

    async def update_ai_usage(self, push_event_id: str, user_id: str, fields: Mapping[str, object]) -> bool:
        """只更新成本仍为 0 的记录；没有可更新的记录时返回 False。"""
        ...

    async def create_notification(self, fields: Mapping[str, object]) -> NotificationRecord: ...
