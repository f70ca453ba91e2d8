"""
成本核算（三种计费模式互斥，由 `AiInvocationOptions.mode` 决定）。

- 平台 key：按价格表计算（未知模型在调用前就会被拒绝）
- 用户自带 key：平台成本恒为 0，但仍记录 tokens 供展示
- 路由型 provider：优先用响应里的 `usage.cost`；为 0 时按 generation id 同步查一次；
  还是 0 的话，落库之后由 `CostReconciler` 延迟补查（provider 的账单数据有时还没结算）
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

import anyio
import httpx
from pydantic import BaseModel

from push_notifier.billing.pricing import calculate_token_cost
from push_notifier.llm.client import Sleep
from push_notifier.pipeline.models import AiInvocationOptions
from push_notifier.pipeline.models import RoutedProvider
from push_notifier.pipeline.models import UserOwnedKey
from push_notifier.storage.protocols import PersistenceStore

logger = logging.getLogger(__name__)

RECONCILE_FIRST_DELAY_SECONDS = 15.0
RECONCILE_MAX_ATTEMPTS = 2


class GenerationUsage(BaseModel):
    tokens_used: int = 0
    cost_micros: int = 0
    tokens_prompt: int | None = None
    tokens_completion: int | None = None


class CostBreakdown(BaseModel):
    tokens_used: int = 0
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost_micros: int = 0


def usd_to_micros(value: object) -> int:
    """USD 浮点 -> $0.0001 定点整数；非正数/非数字一律为 0。"""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return 0
    return round(value * 10000)


def _int_or_none(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


async def fetch_generation_usage(
    http_client: httpx.AsyncClient,
    base_url: str,
    api_key: str,
    generation_id: str,
) -> GenerationUsage | None:
    """
    GET `{base}/generation?id=...` 查一次调用的最终成本。

    - 返回可能是 `{data: {...}}`，也可能直接是 generation 对象
    - `total_cost` 优先于 `usage`
    - 任何失败返回 None（只记日志）
    """
    try:
        response = await http_client.get(
            f"{base_url.rstrip('/')}/generation",
            params={"id": generation_id},
            headers={"Authorization": f"Bearer {api_key.strip()}"},
        )
    except httpx.HTTPError as exc:
        logger.warning(f"Generation lookup error for id={generation_id[:24]}: {exc}")
        return None
    if not response.is_success:
        logger.warning(f"Generation lookup failed: {response.status_code} for id={generation_id[:24]}: {response.text[:200]}")
        return None
    try:
        body = response.json()
    except ValueError:
        logger.warning(f"Generation lookup returned invalid JSON for id={generation_id[:24]}")
        return None

    data = body.get("data") if isinstance(body, Mapping) and isinstance(body.get("data"), Mapping) else body
    if not isinstance(data, Mapping):
        logger.warning("Generation lookup: response had no data object")
        return None

    cost_usd = data.get("total_cost")
    if cost_usd is None:
        cost_usd = data.get("usage")
    tokens_prompt = _int_or_none(data.get("tokens_prompt"))
    tokens_completion = _int_or_none(data.get("tokens_completion"))
    return GenerationUsage(
        tokens_used=(tokens_prompt or 0) + (tokens_completion or 0),
        cost_micros=usd_to_micros(cost_usd),
        tokens_prompt=tokens_prompt or None,
        tokens_completion=tokens_completion or None,
    )


class CostAccountant:
    """按模式计算一次调用的 tokens / 成本。"""

    def __init__(self, http_client: httpx.AsyncClient, routed_base_url: str) -> None:
        self._http_client = http_client
        self._routed_base_url = routed_base_url

    async def account(
        self,
        options: AiInvocationOptions,
        model: str,
        completion: Mapping[str, object],
        generation_id: str | None,
    ) -> CostBreakdown:
        usage = completion.get("usage")
        usage = usage if isinstance(usage, Mapping) else {}
        breakdown = CostBreakdown(
            tokens_used=_int_or_none(usage.get("total_tokens")) or 0,
            prompt_tokens=_int_or_none(usage.get("prompt_tokens")),
            completion_tokens=_int_or_none(usage.get("completion_tokens")),
        )

        mode = options.mode
        if isinstance(mode, UserOwnedKey):
            return breakdown
        if not isinstance(mode, RoutedProvider):
            breakdown.cost_micros = calculate_token_cost(model, breakdown.tokens_used)
            return breakdown

        inline_cost = usd_to_micros(usage.get("cost"))
        if inline_cost > 0:
            breakdown.cost_micros = inline_cost
            return breakdown

        completion_id = completion.get("id")
        lookup_id = generation_id or (completion_id if isinstance(completion_id, str) and completion_id else None)
        if lookup_id is None:
            logger.warning("OpenRouter: no generation id or completion id; cost set to 0")
            return breakdown

        looked_up = await fetch_generation_usage(self._http_client, self._routed_base_url, mode.api_key, lookup_id)
        if looked_up is None:
            logger.warning(f"OpenRouter: generation lookup returned no usage for id={lookup_id[:24]}; cost set to 0")
            return breakdown
        if looked_up.tokens_used > 0:
            breakdown.tokens_used = looked_up.tokens_used
        if looked_up.tokens_prompt is not None:
            breakdown.prompt_tokens = looked_up.tokens_prompt
        if looked_up.tokens_completion is not None:
            breakdown.completion_tokens = looked_up.tokens_completion
        breakdown.cost_micros = looked_up.cost_micros
        return breakdown


class CostReconciler:
    """
    延迟成本补查（fire-and-forget，不占用 HTTP 响应）。

    - 每个任务最多查 2 次：15s 后一次，仍为 0 则再等 30s
    - 每次写入前检查：push event 还在、usage 记录还在、成本仍为 0；否则直接结束
    - 只会把 0 改成正数，不会覆盖已有的非零成本
    - 任务都挂在这里，可以统一取消（进程退出时）
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        routed_base_url: str,
        persistence: PersistenceStore,
        sleep: Sleep = anyio.sleep,
        first_delay_seconds: float = RECONCILE_FIRST_DELAY_SECONDS,
    ) -> None:
        self._http_client = http_client
        self._routed_base_url = routed_base_url
        self._persistence = persistence
        self._sleep = sleep
        self._first_delay_seconds = first_delay_seconds
        self._tasks: set[asyncio.Task[bool]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, generation_id: str, api_key: str, push_event_id: str, user_id: str) -> asyncio.Task[bool]:
        task = asyncio.create_task(
            self._run(generation_id=generation_id, api_key=api_key, push_event_id=push_event_id, user_id=user_id),
            name=f"cost-reconcile-{push_event_id}",
        )
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

    async def _still_unsettled(self, push_event_id: str, user_id: str) -> bool:
        if await self._persistence.get_push_event(push_event_id) is None:
            logger.info(f"Delayed cost update skipped: push event {push_event_id} no longer exists")
            return False
        usage = await self._persistence.get_ai_usage(push_event_id, user_id)
        if usage is None or usage.cost > 0:
            return False
        return True

    async def _run(self, generation_id: str, api_key: str, push_event_id: str, user_id: str) -> bool:
        delay = self._first_delay_seconds
        for attempt in range(1, RECONCILE_MAX_ATTEMPTS + 1):
            await self._sleep(delay)
            delay *= 2
            try:
                if not await self._still_unsettled(push_event_id, user_id):
                    return False
                usage = await fetch_generation_usage(self._http_client, self._routed_base_url, api_key, generation_id)
                if usage is None or usage.cost_micros <= 0:
                    logger.info(f"Delayed cost update: still $0 on attempt {attempt}/{RECONCILE_MAX_ATTEMPTS}")
                    continue
                fields: dict[str, int] = {"cost": usage.cost_micros}
                if usage.tokens_used > 0:
                    fields["tokens_used"] = usage.tokens_used
                updated = await self._persistence.update_ai_usage(push_event_id, user_id, fields)
                logger.info(
                    f"Delayed cost update (attempt {attempt}): push={push_event_id}, "
                    f"cost=${usage.cost_micros / 10000:.4f}, tokens={usage.tokens_used}, updated={updated}"
                )
                return updated
            except Exception as exc:
                logger.warning(f"Delayed cost update error (attempt {attempt}): {exc}")
        logger.info(f"Delayed cost update: cost still $0 after {RECONCILE_MAX_ATTEMPTS} attempts for push={push_event_id}")
        return False
