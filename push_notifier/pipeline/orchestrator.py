"""
Push Pipeline（核心流程编排）。

关键思想：
- **流程由工程代码控制**：固定 7 阶段，每个阶段都可能提前结束（`Terminate`）
- **LLM 只负责生成摘要**：AI 失败不影响投递，最多退化成普通 push 通知

阶段：
Parse -> Resolve -> Channel -> Budget/Model -> AI generate -> Notify -> Persist

终态（`PipelineOutcome`）：
- ignored(reason)：不适用的事件 / 未配置 / 配置错误
- delivered(ai_generated)：消息已投递（后续落库失败不影响这个结果）
- delivery_failed：投递失败，**不落库**
- internal_error：未预期的异常
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

import anyio
import httpx

from push_notifier.billing.budget import BudgetGate
from push_notifier.billing.cost import CostReconciler
from push_notifier.config import AppConfig
from push_notifier.engines.risk import RiskEngine
from push_notifier.engines.stats import StatsClient
from push_notifier.errors import ConfigurationError
from push_notifier.errors import DeliveryError
from push_notifier.github.client import GitHubClient
from push_notifier.github.events import ParsedEvent
from push_notifier.github.events import needs_line_count_backfill
from push_notifier.github.events import normalize_event
from push_notifier.github.events import with_line_counts
from push_notifier.infra.notifications import NotificationHub
from push_notifier.llm.client import Sleep
from push_notifier.pipeline.models import AiStageResult
from push_notifier.pipeline.models import BudgetDecision
from push_notifier.pipeline.models import PipelineOutcome
from push_notifier.pipeline.persistence import DeliveryRecorder
from push_notifier.pipeline.resolver import AiSettings
from push_notifier.pipeline.resolver import DeliveryChannel
from push_notifier.pipeline.resolver import ResolvedConfig
from push_notifier.pipeline.resolver import resolve_ai_settings
from push_notifier.pipeline.resolver import resolve_config
from push_notifier.pipeline.resolver import resolve_delivery_channel
from push_notifier.pipeline.stages import Terminate
from push_notifier.pipeline.summarizer import SummaryGenerator
from push_notifier.slack.client import SlackClient
from push_notifier.slack.messages import build_push_message
from push_notifier.slack.messages import build_summary_message
from push_notifier.storage.protocols import ConfigStore
from push_notifier.storage.protocols import PersistenceStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PushPipeline:
    """Pipeline 运行时依赖集合（每次 run 之间不共享可变状态）。"""

    config: AppConfig
    store: ConfigStore
    http_client: httpx.AsyncClient
    budget_gate: BudgetGate
    summarizer: SummaryGenerator
    recorder: DeliveryRecorder
    github_client: GitHubClient
    clock: Callable[[], datetime] = field(default=_utcnow)

    async def run(self, event_type: str | None, payload: Mapping[str, object]) -> PipelineOutcome:
        """处理一次 webhook 事件，永远返回一个终态（不向上抛异常）。"""
        try:
            return await self._run(event_type=event_type, payload=payload)
        except ConfigurationError as exc:
            logger.error(f"Configuration error, ignoring event: {exc}")
            return PipelineOutcome.ignored(str(exc))
        except Exception:
            logger.exception("Webhook processing error")
            return PipelineOutcome.internal_error()

    async def _run(self, event_type: str | None, payload: Mapping[str, object]) -> PipelineOutcome:
        now = self.clock()

        # Stage 1: Parse（纯转换）
        parsed_result = normalize_event(event_type, payload)
        if isinstance(parsed_result, Terminate):
            logger.info(f"Ignoring {event_type} event: {parsed_result.reason}")
            return PipelineOutcome.ignored(parsed_result.reason)
        parsed = parsed_result.data

        # Stage 2: Resolve（仓库 + 集成）
        resolved_result = await resolve_config(self.store, parsed.github_repository_id)
        if isinstance(resolved_result, Terminate):
            return PipelineOutcome.ignored(resolved_result.reason)
        resolved = resolved_result.data
        parsed = await self._backfill_line_counts(parsed, resolved)

        # Stage 3: Channel
        channel_result = await resolve_delivery_channel(self.store, resolved.integration)
        if isinstance(channel_result, Terminate):
            return PipelineOutcome.ignored(channel_result.reason)
        channel = channel_result.data
        logger.info(
            f"Processing push: {parsed.event.repository_full_name} @ {parsed.event.branch} "
            f"-> Slack #{channel.channel_name}"
        )

        # Stage 4: Budget / model select
        settings = resolve_ai_settings(resolved)
        decision = await self._evaluate_budget(resolved, settings, now)

        # Stage 5: AI generate（失败已在 summarizer 内部转成 fallback）
        ai = await self._generate_summary(parsed, settings, decision)

        # Stage 6: Notify（失败 => delivery_failed，不落库）
        try:
            await self._deliver(parsed, resolved, channel, ai)
        except DeliveryError as exc:
            logger.error(f"Failed to send Slack message: {exc}")
            return PipelineOutcome.delivery_failed(str(exc))

        # Stage 7: Persist / side effects（best-effort）
        try:
            await self.recorder.record(parsed=parsed, resolved=resolved, ai=ai, options=settings.options, now=now)
        except Exception as exc:
            logger.warning(f"Failed to record push event/usage (non-fatal): {exc}")
        return PipelineOutcome.delivered(ai_generated=ai.ai_generated)

    async def _backfill_line_counts(self, parsed: ParsedEvent, resolved: ResolvedConfig) -> ParsedEvent:
        if not needs_line_count_backfill(parsed):
            return parsed
        owner, _, repo = parsed.event.repository_full_name.partition("/")
        if not owner or not repo:
            return parsed
        token = self.config.github.token or (resolved.user.github_token if resolved.user else None)
        stats = await self.github_client.get_commit_stats(owner, repo, parsed.event.commit_sha, token)
        if stats is None:
            return parsed
        return parsed.model_copy(update={"event": with_line_counts(parsed.event, stats.additions, stats.deletions)})

    async def _evaluate_budget(self, resolved: ResolvedConfig, settings: AiSettings, now: datetime) -> BudgetDecision:
        try:
            return await self.budget_gate.evaluate(resolved.integration.user_id, now, settings.options)
        except Exception as exc:
            logger.warning(f"Budget check failed, proceeding without budget gate: {exc}")
            return BudgetDecision()

    async def _generate_summary(self, parsed: ParsedEvent, settings: AiSettings, decision: BudgetDecision) -> AiStageResult:
        if decision.skip_ai:
            return AiStageResult(effective_model=settings.model)
        model = decision.substitute_model or settings.model
        usage = await self.summarizer.generate(
            event=parsed.event,
            model=model,
            max_tokens=settings.max_tokens,
            options=settings.options,
        )
        if usage.is_fallback:
            logger.warning("AI summary unavailable, sending plain push notification")
        return AiStageResult(usage=usage, ai_generated=not usage.is_fallback, effective_model=model)

    async def _deliver(
        self,
        parsed: ParsedEvent,
        resolved: ResolvedConfig,
        channel: DeliveryChannel,
        ai: AiStageResult,
    ) -> None:
        slack = SlackClient(
            api_base_url=str(self.config.slack.api_base_url),
            token=channel.token,
            http_client=self.http_client,
            enabled=self.config.slack.notifications_enabled,
        )
        if ai.ai_generated and ai.usage is not None:
            message = build_summary_message(parsed.event, ai.usage.summary)
        else:
            message = build_push_message(
                parsed.event,
                author=parsed.author,
                include_commit_summary=resolved.integration.include_commit_summaries,
            )
        await slack.send_message(channel.channel_id, message)
        kind = "AI summary" if ai.ai_generated else "Push notification"
        logger.info(f"{kind} sent to #{channel.channel_name}")


def build_push_pipeline(
    config: AppConfig,
    store: ConfigStore,
    persistence: PersistenceStore,
    http_client: httpx.AsyncClient,
    hub: NotificationHub,
    reconciler: CostReconciler,
    stats_client: StatsClient | None = None,
    sleep: Sleep = anyio.sleep,
    clock: Callable[[], datetime] = _utcnow,
) -> PushPipeline:
    """
    装配 pipeline：把外部连接器（GitHub/Slack/LLM/存储）和编排绑定起来。

    - `stats_client` 不传时按配置新建；需要在退出时取消后台上报的调用方（main）自己传进来
    """
    if stats_client is None:
        stats_client = StatsClient(
            base_url=str(config.engines.stats_url) if config.engines.stats_url else None,
            http_client=http_client,
        )
    recorder = DeliveryRecorder(
        persistence=persistence,
        hub=hub,
        reconciler=reconciler,
        risk_engine=RiskEngine(
            binary=config.engines.risk_engine_bin,
            timeout_ms=config.engines.risk_engine_timeout_ms,
        ),
        stats_client=stats_client,
    )
    return PushPipeline(
        config=config,
        store=store,
        http_client=http_client,
        budget_gate=BudgetGate(
            config_store=store,
            persistence=persistence,
            hub=hub,
            free_model=config.routed.free_model,
        ),
        summarizer=SummaryGenerator(config=config, http_client=http_client, persistence=persistence, hub=hub, sleep=sleep),
        recorder=recorder,
        github_client=GitHubClient(api_base_url=str(config.github.api_base_url), http_client=http_client),
        clock=clock,
    )
