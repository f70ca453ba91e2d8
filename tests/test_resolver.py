from __future__ import annotations

import pytest

from factories import CHANNEL_ID
from factories import GITHUB_REPOSITORY_ID
from factories import INTEGRATION_ID
from factories import REPOSITORY_ID
from factories import ROUTED_KEY
from factories import WORKSPACE_TOKEN
from factories import seeded_store
from push_notifier.errors import ConfigurationError
from push_notifier.pipeline.models import DefaultProvider
from push_notifier.pipeline.models import RoutedProvider
from push_notifier.pipeline.models import UserOwnedKey
from push_notifier.pipeline.resolver import DEFAULT_AI_MODEL
from push_notifier.pipeline.resolver import DEFAULT_MAX_TOKENS
from push_notifier.pipeline.resolver import ResolvedConfig
from push_notifier.pipeline.resolver import assert_uuid
from push_notifier.pipeline.resolver import resolve_ai_settings
from push_notifier.pipeline.resolver import resolve_config
from push_notifier.pipeline.resolver import resolve_delivery_channel
from push_notifier.pipeline.stages import Continue
from push_notifier.pipeline.stages import Terminate
from push_notifier.storage.memory import InMemoryStore


async def _resolved(store: InMemoryStore) -> ResolvedConfig:
    result = await resolve_config(store, GITHUB_REPOSITORY_ID)
    assert isinstance(result, Continue)
    return result.data


@pytest.mark.anyio
async def test_resolves_active_repository_and_integration() -> None:
    resolved = await _resolved(seeded_store())
    assert resolved.repository.id == REPOSITORY_ID
    assert resolved.integration.id == INTEGRATION_ID
    assert resolved.user is not None
    assert resolved.repository_display_name == "api"


@pytest.mark.anyio
async def test_unknown_or_inactive_repository_is_terminated() -> None:
    assert await resolve_config(seeded_store(), "999") == Terminate("repository not active")
    store = seeded_store(repository={"is_active": False})
    assert await resolve_config(store, GITHUB_REPOSITORY_ID) == Terminate("repository not active")


@pytest.mark.anyio
async def test_inactive_integration_is_terminated() -> None:
    store = seeded_store(integration={"is_active": False})
    assert await resolve_config(store, GITHUB_REPOSITORY_ID) == Terminate("integration not active")


@pytest.mark.anyio
async def test_legacy_integer_id_is_configuration_error() -> None:
    store = seeded_store(integration={"user_id": "42"})
    with pytest.raises(ConfigurationError, match="old integer ID"):
        await resolve_config(store, GITHUB_REPOSITORY_ID)


def test_assert_uuid_rejects_other_shapes() -> None:
    assert_uuid("0B6F6C1E-3F1A-4C55-9A53-6D3F2B1C0A01", "id")
    with pytest.raises(ConfigurationError):
        assert_uuid("not-a-uuid", "id")


@pytest.mark.anyio
async def test_delivery_channel_resolved() -> None:
    store = seeded_store()
    resolved = await _resolved(store)
    result = await resolve_delivery_channel(store, resolved.integration)
    assert isinstance(result, Continue)
    assert result.data.token == WORKSPACE_TOKEN
    assert result.data.channel_id == CHANNEL_ID
    assert result.data.channel_name == "deploys"


@pytest.mark.anyio
async def test_missing_channel_is_terminated() -> None:
    store = seeded_store(integration={"slack_channel_id": None})
    resolved = await _resolved(store)
    assert await resolve_delivery_channel(store, resolved.integration) == Terminate("channel not configured")

    store = seeded_store()
    store.workspace_tokens.clear()
    resolved = await _resolved(store)
    assert await resolve_delivery_channel(store, resolved.integration) == Terminate("channel not configured")


@pytest.mark.anyio
async def test_default_provider_settings() -> None:
    settings = resolve_ai_settings(await _resolved(seeded_store()))
    assert isinstance(settings.options.mode, DefaultProvider)
    assert settings.model == DEFAULT_AI_MODEL
    assert settings.max_tokens == DEFAULT_MAX_TOKENS
    context = settings.options.notification_context
    assert context is not None
    assert context.repository_name == "api"
    assert context.channel_name == "deploys"


@pytest.mark.anyio
async def test_user_openai_key_lowercases_model() -> None:
    store = seeded_store(integration={"ai_model": "GPT-4o-Mini", "max_tokens": 500}, user={"openai_api_key": "sk-user"})
    settings = resolve_ai_settings(await _resolved(store))
    assert settings.options.mode == UserOwnedKey(api_key="sk-user")
    assert settings.model == "gpt-4o-mini"
    assert settings.max_tokens == 500


@pytest.mark.anyio
async def test_routed_key_prefers_integration_and_keeps_model_case() -> None:
    store = seeded_store(
        integration={"ai_model": "Anthropic/Claude-Sonnet", "routed_provider_key": ROUTED_KEY},
        user={"routed_provider_key": "sk-or-user-level", "openai_api_key": "sk-user"},
    )
    settings = resolve_ai_settings(await _resolved(store))
    assert settings.options.mode == RoutedProvider(api_key=ROUTED_KEY)
    assert settings.options.is_routed
    assert settings.model == "Anthropic/Claude-Sonnet"


@pytest.mark.anyio
async def test_routed_key_requires_prefix() -> None:
    store = seeded_store(integration={"routed_provider_key": "not-a-routed-key"}, user={"routed_provider_key": ROUTED_KEY})
    settings = resolve_ai_settings(await _resolved(store))
    assert settings.options.mode == RoutedProvider(api_key=ROUTED_KEY)
