from __future__ import annotations

import pytest

from push_notifier.billing.pricing import calculate_token_cost
from push_notifier.billing.pricing import get_model_rate
from push_notifier.errors import UnknownModelError


def test_token_cost_is_ceiled_in_ten_thousandths() -> None:
    # gpt-4o: 5 美分 / 1K tokens -> 1000 tokens = $0.05 = 500 单位
    assert calculate_token_cost("gpt-4o", 1000) == 500
    assert calculate_token_cost("gpt-4o", 1) == 1
    assert calculate_token_cost("gpt-3.5-turbo", 150) == 15
    assert calculate_token_cost("gpt-4o", 0) == 0


def test_model_lookup_is_case_insensitive() -> None:
    assert get_model_rate("GPT-4o-Mini").cost_per_1k_cents == 3


def test_unknown_model_is_rejected() -> None:
    with pytest.raises(UnknownModelError):
        calculate_token_cost("mystery-model", 100)


def test_negative_tokens_are_rejected() -> None:
    with pytest.raises(ValueError):
        calculate_token_cost("gpt-4o", -1)
