"""
阶段结果类型：`Continue(data) | Terminate(reason)`。

“PR 未合并”这类预期内的短路用 Terminate 表达，不走异常；
真正的失败（provider 503、投递失败）才是异常。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Continue(Generic[T]):
    data: T


@dataclass(frozen=True)
class Terminate:
    reason: str


StageResult = Union[Continue[T], Terminate]
