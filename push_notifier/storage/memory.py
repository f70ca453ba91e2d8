"""
内存存储（只用于开发/测试，不做持久化）。

同时实现 `ConfigStore` 和 `PersistenceStore`；并发安全只依赖单事件循环。
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from push_notifier.storage.models import AiUsageRecord
from push_notifier.storage.models import IntegrationRecord
from push_notifier.storage.models import NotificationRecord
from push_notifier.storage.models import OverBudgetBehavior
from push_notifier.storage.models import PushEventRecord
from push_notifier.storage.models import RepositoryRecord
from push_notifier.storage.models import UserRecord


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InMemoryStore:
    repositories: dict[str, RepositoryRecord] = field(default_factory=dict)
    integrations: dict[str, IntegrationRecord] = field(default_factory=dict)
    users: dict[str, UserRecord] = field(default_factory=dict)
    workspace_tokens: dict[str, str] = field(default_factory=dict)
    push_events: dict[str, PushEventRecord] = field(default_factory=dict)
    ai_usage: list[AiUsageRecord] = field(default_factory=list)
    notifications: list[NotificationRecord] = field(default_factory=list)

    # --- ConfigStore ---

    async def get_repository_by_github_id(self, github_id: str) -> RepositoryRecord | None:
        return next((r for r in self.repositories.values() if r.github_id == github_id), None)

    async def get_active_integration(self, repository_id: str) -> IntegrationRecord | None:
        return next(
            (i for i in self.integrations.values() if i.repository_id == repository_id and i.is_active),
            None,
        )

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self.users.get(user_id)

    async def get_user_monthly_budget(self, user_id: str) -> int | None:
        user = self.users.get(user_id)
        return user.monthly_budget if user is not None else None

    async def get_user_over_budget_preference(self, user_id: str) -> OverBudgetBehavior:
        user = self.users.get(user_id)
        return user.over_budget_behavior if user is not None else "free_model"

    async def get_monthly_ai_spend(self, user_id: str, since: datetime) -> int:
        return sum(u.cost for u in self.ai_usage if u.user_id == user_id and u.created_at >= since)

    async def get_slack_workspace_token(self, workspace_id: str) -> str | None:
        return self.workspace_tokens.get(workspace_id)

    # --- PersistenceStore ---

    async def create_push_event(self, fields: Mapping[str, object]) -> PushEventRecord:
        record = PushEventRecord.model_validate({"id": str(uuid.uuid4()), **fields})
        self.push_events[record.id] = record
        return record

    async def get_push_event(self, push_event_id: str) -> PushEventRecord | None:
        return self.push_events.get(push_event_id)

    async def create_ai_usage(self, fields: Mapping[str, object]) -> AiUsageRecord:
        record = AiUsageRecord.model_validate({"id": str(uuid.uuid4()), "created_at": _now(), **fields})
        self.ai_usage.append(record)
        return record

    async def get_ai_usage(self, push_event_id: str, user_id: str) -> AiUsageRecord | None:
        return next((u for u in self.ai_usage if u.push_event_id == push_event_id and u.user_id == user_id), None)

    async def update_ai_usage(self, push_event_id: str, user_id: str, fields: Mapping[str, object]) -> bool:
        for index, usage in enumerate(self.ai_usage):
            if usage.push_event_id == push_event_id and usage.user_id == user_id and usage.cost == 0:
                self.ai_usage[index] = usage.model_copy(update=dict(fields))
                return True
        return False

    async def create_notification(self, fields: Mapping[str, object]) -> NotificationRecord:
        record = NotificationRecord.model_validate({"id": str(uuid.uuid4()), "created_at": _now(), **fields})
        self.notifications.append(record)
        return record
