from __future__ import annotations

from datetime import datetime, timezone

import pytest

from factories import INTEGRATION_ID
from factories import USER_ID
from factories import seeded_store
from push_notifier.billing.budget import BudgetGate
from push_notifier.billing.budget import month_start_utc
from push_notifier.infra.notifications import NotificationHub
from push_notifier.pipeline.models import AiInvocationOptions
from push_notifier.pipeline.models import BudgetDecision
from push_notifier.pipeline.models import DefaultProvider
from push_notifier.pipeline.models import RoutedProvider
from push_notifier.storage.memory import InMemoryStore

FREE_MODEL = "arcee-ai/trinity-large-preview:free"
ROUTED = AiInvocationOptions(mode=RoutedProvider(api_key="sk-or-test"))
DEFAULT = AiInvocationOptions(mode=DefaultProvider())


async def _spend(store: InMemoryStore, cost: int) -> None:
    await store.create_ai_usage(
        {
            "user_id": USER_ID,
            "integration_id": INTEGRATION_ID,
            "push_event_id": "f0e1d2c3-b4a5-4968-8776-655443322110",
            "model": "openai/gpt-4o",
            "tokens_used": 1000,
            "cost": cost,
        }
    )


def _gate(store: InMemoryStore, hub: NotificationHub | None = None) -> BudgetGate:
    return BudgetGate(config_store=store, persistence=store, hub=hub or NotificationHub(), free_model=FREE_MODEL)


def test_month_start_utc() -> None:
    assert month_start_utc(datetime(2026, 10, 19, 15, 4, tzinfo=timezone.utc)) == datetime(
        2026, 10, 1, tzinfo=timezone.utc
    )


@pytest.mark.anyio
async def test_no_budget_proceeds_without_alert() -> None:
    store = seeded_store()
    await _spend(store, 10**9)
    decision = await _gate(store).evaluate(USER_ID, datetime.now(timezone.utc), ROUTED)
    assert decision == BudgetDecision()
    assert store.notifications == []


@pytest.mark.anyio
async def test_under_budget_proceeds() -> None:
    store = seeded_store(user={"monthly_budget": 100000})
    await _spend(store, 99999)
    decision = await _gate(store).evaluate(USER_ID, datetime.now(timezone.utc), ROUTED)
    assert decision == BudgetDecision()
    assert store.notifications == []


@pytest.mark.anyio
async def test_over_budget_routed_substitutes_free_model() -> None:
    store = seeded_store(user={"monthly_budget": 100000, "over_budget_behavior": "free_model"})
    await _spend(store, 100100)
    hub = NotificationHub()
    stream = hub.subscribe(USER_ID)

    decision = await _gate(store, hub).evaluate(USER_ID, datetime.now(timezone.utc), ROUTED)

    assert decision.proceed is True
    assert decision.skip_ai is False
    assert decision.substitute_model == FREE_MODEL
    assert [n.type for n in store.notifications] == ["budget_alert"]
    alert = store.notifications[0]
    assert alert.metadata == {"monthlySpend": 100100, "monthlyBudget": 100000, "urgent": True}
    assert "$10.0100" in alert.message
    assert stream.qsize() == 1


@pytest.mark.anyio
async def test_over_budget_routed_with_skip_preference_skips_ai() -> None:
    store = seeded_store(user={"monthly_budget": 100000, "over_budget_behavior": "skip_ai"})
    await _spend(store, 100100)
    decision = await _gate(store).evaluate(USER_ID, datetime.now(timezone.utc), ROUTED)
    assert decision.skip_ai is True
    assert decision.substitute_model is None
    assert [n.type for n in store.notifications] == ["budget_alert"]


@pytest.mark.anyio
async def test_over_budget_platform_key_always_skips_ai() -> None:
    store = seeded_store(user={"monthly_budget": 500, "over_budget_behavior": "free_model"})
    await _spend(store, 500)
    decision = await _gate(store).evaluate(USER_ID, datetime.now(timezone.utc), DEFAULT)
    assert decision.skip_ai is True
    assert decision.substitute_model is None


@pytest.mark.anyio
async def test_previous_month_spend_is_ignored() -> None:
    store = seeded_store(user={"monthly_budget": 100})
    await _spend(store, 1000)
    next_month = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if next_month.month == 12:
        next_month = next_month.replace(year=next_month.year + 1, month=1)
    else:
        next_month = next_month.replace(month=next_month.month + 1)
    decision = await _gate(store).evaluate(USER_ID, next_month, ROUTED)
    assert decision == BudgetDecision()
