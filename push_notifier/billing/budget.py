"""
月度预算闸门。

为什么需要这个模块：
- 用户可以设置每月 AI 花费上限，超过后必须有明确的降级策略
- 检查发生在任何 provider 调用之前

超预算时：
- 路由型 provider + 偏好 free_model：换成免费模型，继续生成
- 其它情况：跳过 AI（仍然发送普通 push 通知）
- 两种情况都发一条 budget_alert 站内通知（每次 pipeline 一条，不跨事件去重）

注意：读取花费不加锁。两个并发 push 在预算边界上可能都放行，最多多出一次调用，这是可接受的。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from push_notifier.infra.notifications import NotificationHub
from push_notifier.infra.notifications import notify_user
from push_notifier.pipeline.models import AiInvocationOptions
from push_notifier.pipeline.models import BudgetDecision
from push_notifier.storage.protocols import ConfigStore
from push_notifier.storage.protocols import PersistenceStore

logger = logging.getLogger(__name__)


def month_start_utc(now: datetime) -> datetime:
    current = now.astimezone(timezone.utc) if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _dollars(units: int, digits: int) -> str:
    return f"${units / 10000:.{digits}f}"


class BudgetGate:
    def __init__(
        self,
        config_store: ConfigStore,
        persistence: PersistenceStore,
        hub: NotificationHub,
        free_model: str,
    ) -> None:
        self._config_store = config_store
        self._persistence = persistence
        self._hub = hub
        self._free_model = free_model

    async def evaluate(self, user_id: str, now: datetime, options: AiInvocationOptions) -> BudgetDecision:
        """
        计算本次 push 的预算决策（每次重新计算，不缓存）。

        - 未设置预算 / 预算 <= 0：直接放行
        - 花费 >= 预算：按偏好降级，并发一条 budget_alert
        """
        budget = await self._config_store.get_user_monthly_budget(user_id)
        if budget is None or budget <= 0:
            return BudgetDecision()

        spend = await self._config_store.get_monthly_ai_spend(user_id, month_start_utc(now))
        if spend < budget:
            return BudgetDecision()

        preference = await self._config_store.get_user_over_budget_preference(user_id)
        use_free_model = options.is_routed and preference != "skip_ai"
        if use_free_model:
            decision = BudgetDecision(substitute_model=self._free_model)
            message = (
                "Your AI budget is reached. Summaries are now using the free model until you raise your budget "
                f"or next month. Spend: {_dollars(spend, 4)} / {_dollars(budget, 2)}."
            )
            logger.info(f"User {user_id} over budget; using free model {self._free_model} for this push")
        else:
            decision = BudgetDecision(skip_ai=True)
            hint = (
                "AI summaries are paused until you raise your budget or next month."
                if options.is_routed
                else "Reset your budget on the Models page to get AI summaries again."
            )
            message = f"Your AI spend ({_dollars(spend, 4)}) exceeded your budget of {_dollars(budget, 2)}. {hint}"
            logger.info(f"User {user_id} over budget; skipping AI for this push")

        try:
            await notify_user(
                self._persistence,
                self._hub,
                user_id=user_id,
                type_="budget_alert",
                title="Monthly budget exceeded",
                message=message,
                metadata={"monthlySpend": spend, "monthlyBudget": budget, "urgent": True},
            )
        except Exception as exc:
            logger.warning(f"Failed to create budget alert for user {user_id}: {exc}")
        return decision
