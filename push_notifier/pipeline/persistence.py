"""
投递成功之后的落库与副作用（best-effort）。

顺序：
1) 风险评分（子进程，失败给全 0）
2) push event 落库
3) 流式统计上报（后台任务，不等待）
4) AI usage 落库（只在真正 AI 生成且有 tokens/成本时）；路由型且成本为 0 时排一个延迟补查
5) 两条站内通知：push_event / slack_message_sent（都推送给在线客户端）

每一步都单独 try/except + warning：消息已经发出去了，这里的任何失败都不能改变 webhook 的结果。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from push_notifier.billing.cost import CostReconciler
from push_notifier.engines.risk import RiskEngine
from push_notifier.engines.stats import StatsClient
from push_notifier.engines.stats import StatsIngestPayload
from push_notifier.github.events import ParsedEvent
from push_notifier.infra.notifications import NotificationHub
from push_notifier.infra.notifications import notify_user
from push_notifier.pipeline.models import AiInvocationOptions
from push_notifier.pipeline.models import AiStageResult
from push_notifier.pipeline.models import RoutedProvider
from push_notifier.pipeline.resolver import ResolvedConfig
from push_notifier.storage.models import PushEventRecord
from push_notifier.storage.models import RiskResult
from push_notifier.storage.protocols import PersistenceStore

logger = logging.getLogger(__name__)


def parse_pushed_at(raw: str | None, now: datetime) -> datetime:
    """commit 时间戳（ISO 8601）解析失败时用当前时间。"""
    if raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable commit timestamp: {raw}")
        else:
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return now


@dataclass(frozen=True)
class DeliveryRecorder:
    persistence: PersistenceStore
    hub: NotificationHub
    reconciler: CostReconciler
    risk_engine: RiskEngine
    stats_client: StatsClient

    async def record(
        self,
        parsed: ParsedEvent,
        resolved: ResolvedConfig,
        ai: AiStageResult,
        options: AiInvocationOptions,
        now: datetime,
    ) -> PushEventRecord | None:
        """返回落库的 push event；push event 落库失败时返回 None（后续依赖它的步骤跳过）。"""
        event = parsed.event
        integration = resolved.integration

        try:
            risk = await self.risk_engine.score_push(event)
        except Exception as exc:
            logger.warning(f"Risk scoring failed (non-fatal): {exc}")
            risk = RiskResult()
        if risk.impact_score > 0 or risk.risk_flags:
            logger.info(f"Risk engine: impact={risk.impact_score} flags={','.join(risk.risk_flags)}")

        summary = ai.usage.summary if ai.ai_generated and ai.usage is not None else None
        try:
            push_event = await self.persistence.create_push_event(
                {
                    "repository_id": resolved.repository.id,
                    "integration_id": integration.id,
                    "commit_sha": event.commit_sha,
                    "commit_message": event.commit_message,
                    "author": parsed.author,
                    "branch": event.branch,
                    "pushed_at": parse_pushed_at(parsed.pushed_at, now),
                    "notification_sent": True,
                    "additions": event.additions,
                    "deletions": event.deletions,
                    "ai_summary": summary.summary if summary else None,
                    "ai_impact": summary.impact if summary else None,
                    "ai_category": summary.category if summary else None,
                    "ai_details": summary.details if summary else None,
                    "ai_generated": ai.ai_generated,
                    "impact_score": risk.impact_score,
                    "risk_flags": risk.risk_flags,
                    "risk_metadata": {
                        "change_type_tags": risk.change_type_tags,
                        "hotspot_files": risk.hotspot_files,
                        "explanations": risk.explanations,
                    },
                }
            )
        except Exception as exc:
            logger.warning(f"Failed to record push event (non-fatal): {exc}")
            return None

        try:
            self.stats_client.schedule_ingest(
                StatsIngestPayload(
                    user_id=integration.user_id,
                    repository_id=resolved.repository.id,
                    impact_score=risk.impact_score,
                    timestamp=push_event.pushed_at.isoformat(),
                )
            )
        except Exception as exc:
            logger.warning(f"Stats ingest failed (non-fatal): {exc}")

        await self._record_ai_usage(push_event=push_event, resolved=resolved, ai=ai, options=options)
        await self._notify(push_event=push_event, parsed=parsed, resolved=resolved, ai=ai)
        return push_event

    async def _record_ai_usage(
        self,
        push_event: PushEventRecord,
        resolved: ResolvedConfig,
        ai: AiStageResult,
        options: AiInvocationOptions,
    ) -> None:
        usage = ai.usage
        if not ai.ai_generated or usage is None or (usage.tokens_used <= 0 and usage.cost_micros <= 0):
            return
        user_id = resolved.integration.user_id
        try:
            await self.persistence.create_ai_usage(
                {
                    "user_id": user_id,
                    "integration_id": resolved.integration.id,
                    "push_event_id": push_event.id,
                    "model": usage.actual_model or ai.effective_model,
                    "tokens_used": usage.tokens_used,
                    "cost": usage.cost_micros,
                    "generation_id": usage.generation_id,
                }
            )
        except Exception as exc:
            logger.warning(f"Failed to record AI usage (non-fatal): {exc}")
            return

        mode = options.mode
        if usage.cost_micros == 0 and usage.generation_id and isinstance(mode, RoutedProvider):
            self.reconciler.schedule(
                generation_id=usage.generation_id,
                api_key=mode.api_key.strip(),
                push_event_id=push_event.id,
                user_id=user_id,
            )

    async def _notify(
        self,
        push_event: PushEventRecord,
        parsed: ParsedEvent,
        resolved: ResolvedConfig,
        ai: AiStageResult,
    ) -> None:
        event = parsed.event
        integration = resolved.integration
        summary = ai.usage.summary if ai.ai_generated and ai.usage is not None else None
        display_name = resolved.repository_display_name
        metadata: dict[str, object] = {
            "pushEventId": push_event.id,
            "repositoryId": resolved.repository.id,
            "repositoryName": event.repository_full_name,
            "repositoryFullName": event.repository_full_name,
            "branch": event.branch,
            "commitSha": event.commit_sha,
            "commitMessage": event.commit_message,
            "author": parsed.author,
            "aiGenerated": ai.ai_generated,
            "slackChannelName": integration.slack_channel_name,
            "integrationId": integration.id,
            "pushedAt": push_event.pushed_at.isoformat(),
            "additions": event.additions,
            "deletions": event.deletions,
            "filesChanged": len(event.files_changed),
            "aiModel": ai.effective_model,
            "aiSummary": summary.summary if summary else None,
            "aiImpact": summary.impact if summary else None,
            "aiCategory": summary.category if summary else None,
        }
        sent_kind = "AI summary" if ai.ai_generated else "Push notification"
        notifications = (
            ("push_event", "New Push Event", f"New push to {display_name} by {parsed.author}"),
            (
                "slack_message_sent",
                "Slack Message Sent",
                f"{sent_kind} sent to #{integration.slack_channel_name} for {display_name}",
            ),
        )
        for type_, title, message in notifications:
            try:
                await notify_user(
                    self.persistence,
                    self.hub,
                    user_id=integration.user_id,
                    type_=type_,
                    title=title,
                    message=message,
                    metadata=metadata,
                )
            except Exception as exc:
                logger.warning(f"Failed to create {type_} notification (non-fatal): {exc}")
