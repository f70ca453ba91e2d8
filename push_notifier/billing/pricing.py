"""
平台计费价格表。

金额单位：$0.0001（定点整数）。价格表的 `cost_per_1k_cents` 是“每 1K tokens 多少美分”。
"""

from __future__ import annotations

import math

from pydantic import BaseModel

from push_notifier.errors import UnknownModelError


class ModelRate(BaseModel):
    id: str
    name: str
    cost_per_1k_cents: int
    max_tokens: int


MODEL_RATES: tuple[ModelRate, ...] = (
    ModelRate(id="gpt-5.2", name="GPT-5.2", cost_per_1k_cents=25, max_tokens=128000),
    ModelRate(id="gpt-5.1", name="GPT-5.1", cost_per_1k_cents=20, max_tokens=128000),
    ModelRate(id="gpt-4o", name="GPT-4o", cost_per_1k_cents=5, max_tokens=128000),
    ModelRate(id="gpt-4o-mini", name="GPT-4o Mini", cost_per_1k_cents=3, max_tokens=128000),
    ModelRate(id="gpt-4-turbo", name="GPT-4 Turbo", cost_per_1k_cents=10, max_tokens=128000),
    ModelRate(id="gpt-4", name="GPT-4", cost_per_1k_cents=30, max_tokens=8192),
    ModelRate(id="gpt-3.5-turbo", name="GPT-3.5 Turbo", cost_per_1k_cents=1, max_tokens=16385),
)

_RATES_BY_ID: dict[str, ModelRate] = {rate.id: rate for rate in MODEL_RATES}


def get_model_rate(model_id: str) -> ModelRate:
    """精确匹配模型 id；不认识的模型直接抛错（宁可拒绝，也不要错误计费）。"""
    rate = _RATES_BY_ID.get(model_id.strip().lower())
    if rate is None:
        raise UnknownModelError(f"Invalid AI model for platform billing: {model_id}")
    return rate


def calculate_token_cost(model_id: str, tokens_used: int) -> int:
    """平台 key 的成本：ceil(tokens / 1000 * 美分单价 * 100)，单位 $0.0001。"""
    if tokens_used < 0:
        raise ValueError("tokens_used must be >= 0")
    rate = get_model_rate(model_id)
    return math.ceil(tokens_used * rate.cost_per_1k_cents / 10)
