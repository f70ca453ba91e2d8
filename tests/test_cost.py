from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
import pytest

from factories import INTEGRATION_ID
from factories import REPOSITORY_ID
from factories import USER_ID
from factories import RecordingSleep
from factories import completion_body
from push_notifier.billing.cost import CostAccountant
from push_notifier.billing.cost import CostReconciler
from push_notifier.billing.cost import fetch_generation_usage
from push_notifier.billing.cost import usd_to_micros
from push_notifier.pipeline.models import AiInvocationOptions
from push_notifier.pipeline.models import DefaultProvider
from push_notifier.pipeline.models import RoutedProvider
from push_notifier.pipeline.models import UserOwnedKey
from push_notifier.storage.memory import InMemoryStore

BASE_URL = "https://openrouter.test/api/v1"
ROUTED = AiInvocationOptions(mode=RoutedProvider(api_key="sk-or-test"))


class _GenerationLookup:
    """`/generation` 假实现：按顺序返回成本（USD），并记录查询。"""

    def __init__(self, costs: list[float], wrap_in_data: bool = True) -> None:
        self._costs = costs
        self._wrap_in_data = wrap_in_data
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        cost = self._costs[min(len(self.requests), len(self._costs)) - 1]
        data = {"id": request.url.params["id"], "total_cost": cost, "tokens_prompt": 120, "tokens_completion": 80}
        return httpx.Response(200, json={"data": data} if self._wrap_in_data else data)


@dataclass
class _CountingStore(InMemoryStore):
    update_calls: int = 0

    async def update_ai_usage(self, push_event_id: str, user_id: str, fields: Mapping[str, object]) -> bool:
        self.update_calls += 1
        return await super().update_ai_usage(push_event_id, user_id, fields)


async def _seed_usage(store: InMemoryStore, cost: int = 0) -> str:
    push_event = await store.create_push_event(
        {
            "repository_id": REPOSITORY_ID,
            "integration_id": INTEGRATION_ID,
            "commit_sha": "abc",
            "commit_message": "msg",
            "author": "Dana",
            "branch": "main",
            "pushed_at": datetime(2026, 10, 1, tzinfo=timezone.utc),
        }
    )
    await store.create_ai_usage(
        {
            "user_id": USER_ID,
            "integration_id": INTEGRATION_ID,
            "push_event_id": push_event.id,
            "model": "openai/gpt-4o",
            "tokens_used": 150,
            "cost": cost,
            "generation_id": "gen-pending",
        }
    )
    return push_event.id


def test_usd_to_micros() -> None:
    assert usd_to_micros(0.0012) == 12
    assert usd_to_micros(1) == 10000
    assert usd_to_micros(0) == 0
    assert usd_to_micros(-0.5) == 0
    assert usd_to_micros("0.1") == 0
    assert usd_to_micros(True) == 0


@pytest.mark.anyio
async def test_user_owned_key_costs_nothing() -> None:
    accountant = CostAccountant(http_client=httpx.AsyncClient(), routed_base_url=BASE_URL)
    breakdown = await accountant.account(
        AiInvocationOptions(mode=UserOwnedKey(api_key="sk-user")), "gpt-4o", completion_body(cost=None), None
    )
    assert breakdown.cost_micros == 0
    assert breakdown.tokens_used == 150
    assert (breakdown.prompt_tokens, breakdown.completion_tokens) == (100, 50)


@pytest.mark.anyio
async def test_platform_key_uses_price_table() -> None:
    accountant = CostAccountant(http_client=httpx.AsyncClient(), routed_base_url=BASE_URL)
    breakdown = await accountant.account(
        AiInvocationOptions(mode=DefaultProvider()), "gpt-4o", completion_body(cost=None), None
    )
    assert breakdown.cost_micros == 75


@pytest.mark.anyio
async def test_routed_inline_cost_skips_lookup() -> None:
    lookup = _GenerationLookup([0.5])
    accountant = CostAccountant(http_client=httpx.AsyncClient(transport=httpx.MockTransport(lookup)), routed_base_url=BASE_URL)
    breakdown = await accountant.account(ROUTED, "gpt-4o", completion_body(cost=0.0012), "gen-1")
    assert breakdown.cost_micros == 12
    assert lookup.requests == []


@pytest.mark.anyio
async def test_routed_zero_cost_looks_up_generation() -> None:
    lookup = _GenerationLookup([0.0025])
    accountant = CostAccountant(http_client=httpx.AsyncClient(transport=httpx.MockTransport(lookup)), routed_base_url=BASE_URL)
    breakdown = await accountant.account(ROUTED, "gpt-4o", completion_body(cost=0), "gen-1")

    assert breakdown.cost_micros == 25
    assert breakdown.tokens_used == 200
    assert (breakdown.prompt_tokens, breakdown.completion_tokens) == (120, 80)
    assert lookup.requests[0].url.params["id"] == "gen-1"
    assert lookup.requests[0].headers["Authorization"] == "Bearer sk-or-test"


@pytest.mark.anyio
async def test_routed_lookup_falls_back_to_completion_id() -> None:
    lookup = _GenerationLookup([0.001], wrap_in_data=False)
    accountant = CostAccountant(http_client=httpx.AsyncClient(transport=httpx.MockTransport(lookup)), routed_base_url=BASE_URL)
    breakdown = await accountant.account(ROUTED, "gpt-4o", completion_body(cost=None, completion_id="gen-from-body"), None)
    assert breakdown.cost_micros == 10
    assert lookup.requests[0].url.params["id"] == "gen-from-body"


@pytest.mark.anyio
async def test_generation_lookup_failure_returns_none() -> None:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="oops")))
    assert await fetch_generation_usage(http_client, BASE_URL, "sk-or-test", "gen-1") is None


@pytest.mark.anyio
async def test_reconciler_updates_zero_cost_exactly_once() -> None:
    store = _CountingStore()
    push_event_id = await _seed_usage(store)
    lookup = _GenerationLookup([0.0, 0.003])
    sleep = RecordingSleep()
    reconciler = CostReconciler(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lookup)),
        routed_base_url=BASE_URL,
        persistence=store,
        sleep=sleep,
    )

    task = reconciler.schedule("gen-pending", "sk-or-test", push_event_id, USER_ID)
    assert reconciler.pending == 1
    await reconciler.wait_idle()

    assert task.result() is True
    assert sleep.delays == [15.0, 30.0]
    assert store.update_calls == 1
    usage = await store.get_ai_usage(push_event_id, USER_ID)
    assert usage is not None
    assert usage.cost == 30
    assert usage.tokens_used == 200
    assert reconciler.pending == 0


@pytest.mark.anyio
async def test_reconciler_gives_up_after_two_attempts() -> None:
    store = _CountingStore()
    push_event_id = await _seed_usage(store)
    lookup = _GenerationLookup([0.0, 0.0])
    reconciler = CostReconciler(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lookup)),
        routed_base_url=BASE_URL,
        persistence=store,
        sleep=RecordingSleep(),
    )

    task = reconciler.schedule("gen-pending", "sk-or-test", push_event_id, USER_ID)
    await reconciler.wait_idle()

    assert task.result() is False
    assert len(lookup.requests) == 2
    assert store.update_calls == 0


@pytest.mark.anyio
async def test_reconciler_is_noop_when_push_event_deleted() -> None:
    store = _CountingStore()
    push_event_id = await _seed_usage(store)
    del store.push_events[push_event_id]
    lookup = _GenerationLookup([0.003])
    reconciler = CostReconciler(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lookup)),
        routed_base_url=BASE_URL,
        persistence=store,
        sleep=RecordingSleep(),
    )

    task = reconciler.schedule("gen-pending", "sk-or-test", push_event_id, USER_ID)
    await reconciler.wait_idle()

    assert task.result() is False
    assert lookup.requests == []
    assert store.update_calls == 0


@pytest.mark.anyio
async def test_reconciler_never_overwrites_settled_cost() -> None:
    store = _CountingStore()
    push_event_id = await _seed_usage(store, cost=42)
    lookup = _GenerationLookup([0.003])
    reconciler = CostReconciler(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lookup)),
        routed_base_url=BASE_URL,
        persistence=store,
        sleep=RecordingSleep(),
    )

    task = reconciler.schedule("gen-pending", "sk-or-test", push_event_id, USER_ID)
    await reconciler.wait_idle()

    assert task.result() is False
    usage = await store.get_ai_usage(push_event_id, USER_ID)
    assert usage is not None and usage.cost == 42


@pytest.mark.anyio
async def test_usage_update_only_applies_while_cost_is_zero() -> None:
    store = InMemoryStore()
    push_event_id = await _seed_usage(store, cost=0)

    assert await store.update_ai_usage(push_event_id, USER_ID, {"cost": 25}) is True
    assert await store.update_ai_usage(push_event_id, USER_ID, {"cost": 99}) is False

    usage = await store.get_ai_usage(push_event_id, USER_ID)
    assert usage is not None
    assert usage.cost == 25
