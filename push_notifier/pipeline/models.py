"""
Pipeline 领域模型（Pydantic）。

用途：
- 明确各阶段输入/输出的数据结构
- 作为 LLM JSON 输出的 schema 校验（CodeSummary）

约定：
- 金额统一是定点数：1 单位 = $0.0001（避免浮点误差，持久化也保持这个单位）
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Impact = Literal["low", "medium", "high"]
Category = Literal["feature", "bugfix", "refactor", "docs", "test", "security", "other"]

_IMPACTS: frozenset[str] = frozenset(("low", "medium", "high"))
_CATEGORIES: frozenset[str] = frozenset(("feature", "bugfix", "refactor", "docs", "test", "security", "other"))


class CanonicalPushEvent(BaseModel):
    """一次 push / 合并 PR 归一化后的结果。构建后不可变（补齐行数时用 model_copy 生成新对象）。"""

    model_config = ConfigDict(frozen=True)

    repository_full_name: str
    branch: str
    commit_message: str
    files_changed: tuple[str, ...]
    additions: int = 0
    deletions: int = 0
    commit_sha: str


class CodeSummary(BaseModel):
    """LLM 输出的结构化摘要。impact/category 做大小写归一，未知值落到 medium/other。"""

    summary: str = Field(min_length=1)
    impact: Impact
    category: Category
    details: str

    @field_validator("impact", mode="before")
    @classmethod
    def _normalize_impact(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return lowered if lowered in _IMPACTS else "medium"
        return value

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return lowered if lowered in _CATEGORIES else "other"
        return value


class NotificationContext(BaseModel):
    """只用于把 provider 错误转成站内提醒。"""

    user_id: str
    repository_name: str
    integration_id: str
    channel_name: str | None = None


class DefaultProvider(BaseModel):
    """平台自己的 key（平台付费，按价格表计费）。"""

    kind: Literal["default"] = "default"


class UserOwnedKey(BaseModel):
    """用户自带的 OpenAI key（用户直接付费，平台成本为 0）。"""

    kind: Literal["user_key"] = "user_key"
    api_key: str = Field(min_length=1)


class RoutedProvider(BaseModel):
    """路由型 provider（OpenRouter），成本通过 generation id 事后查询。"""

    kind: Literal["routed"] = "routed"
    api_key: str = Field(min_length=1)


ProviderMode = Annotated[Union[DefaultProvider, UserOwnedKey, RoutedProvider], Field(discriminator="kind")]


class AiInvocationOptions(BaseModel):
    mode: ProviderMode = Field(default_factory=DefaultProvider)
    notification_context: NotificationContext | None = None

    @property
    def is_routed(self) -> bool:
        return isinstance(self.mode, RoutedProvider)


class AiUsageResult(BaseModel):
    """一次 AI 调用的结果 + 用量。cost_micros 单位是 $0.0001。"""

    summary: CodeSummary
    tokens_used: int = Field(default=0, ge=0)
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost_micros: int = Field(default=0, ge=0)
    actual_model: str | None = None
    generation_id: str | None = None
    is_fallback: bool = False
    provider_error_message: str | None = None


class BudgetDecision(BaseModel):
    """每次 pipeline 都重新计算，不做跨事件缓存。"""

    proceed: bool = True
    skip_ai: bool = False
    substitute_model: str | None = None


class AiStageResult(BaseModel):
    """AI 阶段的产物：usage（可能为空）+ 是否真正由 AI 生成。"""

    usage: AiUsageResult | None = None
    ai_generated: bool = False
    effective_model: str


class PipelineOutcome(BaseModel):
    """
    pipeline 的终态（穷举）：
    - ignored(reason)
    - delivered(ai_generated)
    - delivery_failed
    - internal_error
    """

    status: Literal["ignored", "delivered", "delivery_failed", "internal_error"]
    reason: str | None = None
    ai_generated: bool = False

    @classmethod
    def ignored(cls, reason: str) -> PipelineOutcome:
        return cls(status="ignored", reason=reason)

    @classmethod
    def delivered(cls, ai_generated: bool) -> PipelineOutcome:
        return cls(status="delivered", ai_generated=ai_generated)

    @classmethod
    def delivery_failed(cls, reason: str) -> PipelineOutcome:
        return cls(status="delivery_failed", reason=reason)

    @classmethod
    def internal_error(cls) -> PipelineOutcome:
        return cls(status="internal_error")
