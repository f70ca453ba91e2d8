from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

OverBudgetBehavior = Literal["free_model", "skip_ai"]


class RepositoryRecord(BaseModel):
    id: str
    github_id: str
    name: str
    full_name: str
    is_active: bool = True


class IntegrationRecord(BaseModel):
    id: str
    repository_id: str
    user_id: str
    is_active: bool = True
    slack_workspace_id: str | None = None
    slack_channel_id: str | None = None
    slack_channel_name: str | None = None
    ai_model: str | None = None
    max_tokens: int | None = None
    routed_provider_key: str | None = None
    include_commit_summaries: bool = True


class UserRecord(BaseModel):
    id: str
    monthly_budget: int | None = None
    over_budget_behavior: OverBudgetBehavior = "free_model"
    routed_provider_key: str | None = None
    openai_api_key: str | None = None
    github_token: str | None = None


class PushEventRecord(BaseModel):
    id: str
    repository_id: str
    integration_id: str
    commit_sha: str
    commit_message: str
    author: str
    branch: str
    pushed_at: datetime
    notification_sent: bool = True
    additions: int = 0
    deletions: int = 0
    ai_summary: str | None = None
    ai_impact: str | None = None
    ai_category: str | None = None
    ai_details: str | None = None
    ai_generated: bool = False
    impact_score: int = 0
    risk_flags: list[str] = Field(default_factory=list)
    risk_metadata: dict[str, list[str]] = Field(default_factory=dict)


class AiUsageRecord(BaseModel):
    """cost 单位 $0.0001。"""

    id: str
    user_id: str
    integration_id: str
    push_event_id: str
    model: str
    tokens_used: int = 0
    cost: int = 0
    generation_id: str | None = None
    created_at: datetime


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    metadata: dict[str, object] = Field(default_factory=dict)
    created_at: datetime
    is_read: bool = False


class RiskResult(BaseModel):
    """风险引擎输出（snake_case，和子进程协议一致）。"""

    impact_score: int = 0
    risk_flags: list[str] = Field(default_factory=list)
    change_type_tags: list[str] = Field(default_factory=list)
    hotspot_files: list[str] = Field(default_factory=list)
    explanations: list[str] = Field(default_factory=list)
