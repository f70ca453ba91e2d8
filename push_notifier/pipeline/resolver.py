"""
配置解析（非 AI）。

职责：
- 根据 GitHub repository id 找到仓库 + 活跃集成（两者都必须 active）
- 校验 ID 形状：遗留的整数 ID 属于配置错误，必须显式暴露，不能默默忽略
- 解析投递渠道（Slack workspace token + channel）
- 解析本次调用的 provider 模式（路由型 key > 用户 OpenAI key > 平台默认）
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel

from push_notifier.errors import ConfigurationError
from push_notifier.pipeline.models import AiInvocationOptions
from push_notifier.pipeline.models import DefaultProvider
from push_notifier.pipeline.models import NotificationContext
from push_notifier.pipeline.models import RoutedProvider
from push_notifier.pipeline.models import UserOwnedKey
from push_notifier.pipeline.stages import Continue
from push_notifier.pipeline.stages import StageResult
from push_notifier.pipeline.stages import Terminate
from push_notifier.storage.models import IntegrationRecord
from push_notifier.storage.models import RepositoryRecord
from push_notifier.storage.models import UserRecord
from push_notifier.storage.protocols import ConfigStore

logger = logging.getLogger(__name__)

DEFAULT_AI_MODEL = "gpt-4o"
DEFAULT_MAX_TOKENS = 350
ROUTED_KEY_PREFIX = "sk-or-"

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class ResolvedConfig(BaseModel):
    repository: RepositoryRecord
    integration: IntegrationRecord
    user: UserRecord | None = None

    @property
    def repository_display_name(self) -> str:
        return self.repository.name or self.repository.full_name.split("/")[-1] or self.repository.full_name


class DeliveryChannel(BaseModel):
    token: str
    channel_id: str
    channel_name: str | None = None


class AiSettings(BaseModel):
    model: str
    max_tokens: int
    options: AiInvocationOptions


def assert_uuid(value: str, label: str) -> None:
    """ID 必须是 UUID；纯数字说明是迁移前的旧整数 ID。"""
    if _UUID.match(value):
        return
    if value.isdigit():
        raise ConfigurationError(
            f"Invalid {label}={value} (looks like old integer ID). Ensure the UUID migration has been run on this database."
        )
    raise ConfigurationError(f"Invalid {label}={value!r} (expected a UUID)")


async def resolve_config(store: ConfigStore, github_repository_id: str) -> StageResult[ResolvedConfig]:
    """仓库不存在/未激活、集成不存在/未激活 -> Terminate；ID 形状不对 -> ConfigurationError。"""
    repository = await store.get_repository_by_github_id(github_repository_id) if github_repository_id else None
    if repository is None or not repository.is_active:
        logger.info(f"Repository (GitHub id {github_repository_id or '-'}) not found or not active")
        return Terminate("repository not active")
    integration = await store.get_active_integration(repository.id)
    if integration is None or not integration.is_active:
        logger.info(f"No active integration for repository {repository.full_name}")
        return Terminate("integration not active")

    assert_uuid(repository.id, "repository.id")
    assert_uuid(integration.id, "integration.id")
    assert_uuid(integration.user_id, "integration.user_id")
    if integration.slack_workspace_id:
        assert_uuid(integration.slack_workspace_id, "integration.slack_workspace_id")

    user = await store.get_user(integration.user_id)
    return Continue(ResolvedConfig(repository=repository, integration=integration, user=user))


async def resolve_delivery_channel(store: ConfigStore, integration: IntegrationRecord) -> StageResult[DeliveryChannel]:
    token = await store.get_slack_workspace_token(integration.slack_workspace_id) if integration.slack_workspace_id else None
    if not token or not integration.slack_channel_id:
        logger.error(f"No Slack workspace token or channel for integration {integration.id}")
        return Terminate("channel not configured")
    return Continue(
        DeliveryChannel(token=token, channel_id=integration.slack_channel_id, channel_name=integration.slack_channel_name)
    )


def _routed_key(value: str | None) -> str | None:
    if value and value.strip().startswith(ROUTED_KEY_PREFIX):
        return value.strip()
    return None


def resolve_ai_settings(resolved: ResolvedConfig) -> AiSettings:
    """
    选择 provider 模式和模型。

    - 路由型 key：集成级优先，其次用户级；必须是 `sk-or-` 前缀
    - 路由型模型 id 保留大小写；OpenAI 模型 id 统一小写
    """
    integration = resolved.integration
    user = resolved.user
    model = (integration.ai_model or "").strip() or DEFAULT_AI_MODEL
    context = NotificationContext(
        user_id=integration.user_id,
        repository_name=resolved.repository_display_name,
        integration_id=integration.id,
        channel_name=integration.slack_channel_name,
    )

    routed_key = _routed_key(integration.routed_provider_key) or _routed_key(user.routed_provider_key if user else None)
    if routed_key is not None:
        mode: DefaultProvider | UserOwnedKey | RoutedProvider = RoutedProvider(api_key=routed_key)
    elif user is not None and user.openai_api_key and user.openai_api_key.strip():
        mode = UserOwnedKey(api_key=user.openai_api_key.strip())
        model = model.lower()
    else:
        mode = DefaultProvider()
        model = model.lower()

    return AiSettings(
        model=model,
        max_tokens=integration.max_tokens or DEFAULT_MAX_TOKENS,
        options=AiInvocationOptions(mode=mode, notification_context=context),
    )
