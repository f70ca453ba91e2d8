"""
错误类型（pipeline 各阶段共用）。

约定：
- “预期内的短路”（例如 PR 未合并）**不是异常**，用 `Continue | Terminate` 表达
- 这里只放真正的失败；是否吞掉由调用方（orchestrator）决定
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """仓库/集成配置不合法（例如遗留的整数 ID）。pipeline 会以 ignored 结束。"""

    pass


class ProviderError(RuntimeError):
    """
    LLM provider 调用失败。

    - user_message：可以直接展示给用户的安全文案
    - status_code：provider 返回的 HTTP 状态码（网络层失败时为 None）
    - provider_specific：是否需要给用户发站内提醒（通用网络错误不需要）
    """

    def __init__(self, user_message: str, status_code: int | None = None, provider_specific: bool = True) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.status_code = status_code
        self.provider_specific = provider_specific


class ProviderTransportError(ProviderError):
    """可重试的失败（503/429/网络/响应体损坏），重试预算耗尽后才会抛出。"""

    pass


class ProviderPolicyError(ProviderError):
    """不可重试的 provider 拒绝（数据策略、其它非 2xx）。"""

    pass


class SummaryParseError(ValueError):
    """LLM 输出无法解析为完整的 CodeSummary（修复手段全部失败）。"""

    pass


class UnknownModelError(ValueError):
    """平台计费模式下模型不在价格表里：拒绝调用，避免错误计费。"""

    pass


class DeliveryError(RuntimeError):
    """聊天消息投递失败：整个 pipeline 失败（唯一会变成 5xx 的业务错误）。"""

    pass


class PersistenceError(RuntimeError):
    """持久化失败：只记日志，不影响已投递的通知。"""

    pass
