"""
AI 摘要生成（LLM 单次输出，不 loop）。

目标：
- 让模型只做“总结”：这次 push 改了什么、影响多大、属于什么类型
- 输出必须是 JSON，再由 `llm/extractor.py` 做容错解析

失败策略：
- 这一阶段的**任何**失败都转成 fallback 摘要，绝不向上抛，也绝不阻塞通知投递
- provider 特有的失败（限流、容量、数据策略等）先给用户发一条站内提醒
"""

from __future__ import annotations

import logging

import anyio
import httpx

from push_notifier.billing.cost import CostAccountant
from push_notifier.billing.pricing import get_model_rate
from push_notifier.config import AppConfig
from push_notifier.errors import ConfigurationError
from push_notifier.errors import ProviderError
from push_notifier.errors import SummaryParseError
from push_notifier.infra.notifications import NotificationHub
from push_notifier.infra.notifications import notify_user
from push_notifier.llm.client import ChatMessage
from push_notifier.llm.client import OpenAIProviderClient
from push_notifier.llm.client import ProviderClient
from push_notifier.llm.client import RoutedProviderClient
from push_notifier.llm.client import Sleep
from push_notifier.llm.extractor import extract_completion_text
from push_notifier.llm.extractor import parse_code_summary
from push_notifier.pipeline.models import AiInvocationOptions
from push_notifier.pipeline.models import AiUsageResult
from push_notifier.pipeline.models import CanonicalPushEvent
from push_notifier.pipeline.models import CodeSummary
from push_notifier.pipeline.models import DefaultProvider
from push_notifier.pipeline.models import RoutedProvider
from push_notifier.pipeline.models import UserOwnedKey
from push_notifier.storage.protocols import PersistenceStore

logger = logging.getLogger(__name__)

TEMPERATURE = 0.3


def _system_prompt() -> str:
    return (
        "You are a helpful code review assistant that provides clear, concise summaries of code changes. "
        "Always respond with valid JSON."
    )


def _user_prompt(event: CanonicalPushEvent) -> str:
    """只给元数据（不给 diff）：文件列表 + 提交信息 + 增删行数。"""
    return (
        "Analyze this git push and provide a concise, helpful summary.\n\n"
        f"Repository: {event.repository_full_name}\n"
        f"Branch: {event.branch}\n"
        f"Commit Message: {event.commit_message}\n"
        f"Files Changed: {', '.join(event.files_changed)}\n"
        f"Changes: +{event.additions} -{event.deletions} lines\n\n"
        "Please provide a summary in this JSON format:\n"
        "{\n"
        '  "summary": "Brief 1-2 sentence summary of what changed",\n'
        '  "impact": "low|medium|high - based on the scope and nature of changes",\n'
        '  "category": "feature|bugfix|refactor|docs|test|security|other",\n'
        '  "details": "More detailed explanation of the changes and their purpose"\n'
        "}\n\n"
        "Focus on:\n"
        "- What functionality was added/modified/fixed\n"
        "- The business impact or user benefit\n"
        "- Any important technical details\n"
        "- Keep it concise but informative\n\n"
        "Respond with only valid JSON:"
    )


def fallback_summary(event: CanonicalPushEvent) -> CodeSummary:
    """确定性的非 AI 摘要。"""
    return CodeSummary(
        summary=(
            f"Updated {len(event.files_changed)} files with {event.additions} additions "
            f"and {event.deletions} deletions"
        ),
        impact="medium",
        category="other",
        details=f"Changes made to {', '.join(event.files_changed)}",
    )


class SummaryGenerator:
    def __init__(
        self,
        config: AppConfig,
        http_client: httpx.AsyncClient,
        persistence: PersistenceStore,
        hub: NotificationHub,
        sleep: Sleep = anyio.sleep,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._persistence = persistence
        self._hub = hub
        self._sleep = sleep
        self._accountant = CostAccountant(http_client=http_client, routed_base_url=str(config.routed.base_url))

    def _provider_client(self, options: AiInvocationOptions) -> ProviderClient:
        """按本次调用的凭据新建 client。"""
        mode = options.mode
        if isinstance(mode, RoutedProvider):
            return RoutedProviderClient(
                api_key=mode.api_key,
                base_url=str(self._config.routed.base_url),
                http_client=self._http_client,
                sleep=self._sleep,
            )
        if isinstance(mode, UserOwnedKey):
            return OpenAIProviderClient(api_key=mode.api_key, http_client=self._http_client)
        if not self._config.llm.api_key:
            raise ConfigurationError("Platform OpenAI API key is not configured")
        base_url = str(self._config.llm.base_url).rstrip("/") if self._config.llm.base_url else None
        return OpenAIProviderClient(api_key=self._config.llm.api_key, http_client=self._http_client, base_url=base_url)

    async def generate(
        self,
        event: CanonicalPushEvent,
        model: str,
        max_tokens: int,
        options: AiInvocationOptions,
    ) -> AiUsageResult:
        """生成摘要；失败时返回 `is_fallback=True` 的结果，不抛异常。"""
        try:
            return await self._generate(event=event, model=model, max_tokens=max_tokens, options=options)
        except Exception as exc:
            logger.error(
                f"AI summary failed for model {model}: {exc} "
                f"(repo={event.repository_full_name}, branch={event.branch}, files={len(event.files_changed)}, "
                f"+{event.additions} -{event.deletions})"
            )
            provider_message: str | None = None
            if isinstance(exc, ProviderError) and exc.provider_specific:
                provider_message = exc.user_message
                await self._alert_provider_error(options=options, message=provider_message)
            return AiUsageResult(summary=fallback_summary(event), is_fallback=True, provider_error_message=provider_message)

    async def _generate(
        self,
        event: CanonicalPushEvent,
        model: str,
        max_tokens: int,
        options: AiInvocationOptions,
    ) -> AiUsageResult:
        if isinstance(options.mode, DefaultProvider):
            # 平台计费：未知模型在调用前就拒绝
            get_model_rate(model)

        client = self._provider_client(options)
        messages = [
            ChatMessage(role="system", content=_system_prompt()),
            ChatMessage(role="user", content=_user_prompt(event)),
        ]
        logger.info(f"LLM request: model={model}, mode={options.mode.kind}")
        response = await client.complete(model=model, messages=messages, max_tokens=max_tokens, temperature=TEMPERATURE)

        text = extract_completion_text(response.completion)
        if not text.strip():
            raise SummaryParseError("No response content from provider")
        summary = parse_code_summary(text)

        cost = await self._accountant.account(
            options=options,
            model=model,
            completion=response.completion,
            generation_id=response.generation_id,
        )
        actual_model = response.completion.get("model")
        return AiUsageResult(
            summary=summary,
            tokens_used=cost.tokens_used,
            prompt_tokens=cost.prompt_tokens,
            completion_tokens=cost.completion_tokens,
            cost_micros=cost.cost_micros,
            actual_model=actual_model if isinstance(actual_model, str) and actual_model else model,
            generation_id=response.generation_id,
        )

    async def _alert_provider_error(self, options: AiInvocationOptions, message: str) -> None:
        context = options.notification_context
        if context is None:
            return
        try:
            await notify_user(
                self._persistence,
                self._hub,
                user_id=context.user_id,
                type_="ai_provider_error",
                title="AI provider error",
                message=message[:500],
                metadata={
                    "repositoryName": context.repository_name,
                    "integrationId": context.integration_id,
                    "channelName": context.channel_name,
                },
            )
        except Exception as exc:
            logger.warning(f"Failed to create provider error notification: {exc}")
