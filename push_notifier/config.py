"""
应用配置加载。

设计目标：
- **严格**：缺少必要环境变量就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 校验 URL/字符串等，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试

注意：这里只有“进程级”配置。仓库/集成/用户级配置来自存储层（见 `pipeline/resolver.py`）。
"""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel, Field, HttpUrl

DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_FREE_MODEL = "arcee-ai/trinity-large-preview:free"
DEFAULT_GITHUB_API_BASE_URL = "https://api.github.com"
DEFAULT_SLACK_API_BASE_URL = "https://slack.com/api"
DEFAULT_RISK_ENGINE_TIMEOUT_MS = 5000


class GitHubConfig(BaseModel):
    """GitHub webhook 校验 + 补齐增删行数用的 API 配置。"""

    webhook_secret: str
    api_base_url: HttpUrl
    token: str | None = None


class LLMConfig(BaseModel):
    """平台默认 provider（OpenAI-compatible，平台付费）。api_key 缺失时默认模式会降级为 fallback。"""

    api_key: str | None = None
    base_url: HttpUrl | None = None


class RoutedProviderConfig(BaseModel):
    """路由型 provider（OpenRouter）：用户自带 key，只在这里配置地址与超预算免费模型。"""

    base_url: HttpUrl
    free_model: str


class SlackConfig(BaseModel):
    api_base_url: HttpUrl
    notifications_enabled: bool = True


class EngineConfig(BaseModel):
    """风险评分 / 统计子系统（都是 best-effort）。"""

    stats_url: HttpUrl | None = None
    risk_engine_bin: str | None = None
    risk_engine_timeout_ms: int = Field(default=DEFAULT_RISK_ENGINE_TIMEOUT_MS, gt=0)


class AppConfig(BaseModel):
    """应用运行所需的配置集合。"""

    github: GitHubConfig
    llm: LLMConfig
    routed: RoutedProviderConfig
    slack: SlackConfig
    engines: EngineConfig
    database_url: str | None = None


def _optional(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key, "").strip()
    return value or None


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean value: {raw}")


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：必填项缺失/为空则抛 `ValueError`；URL 不合法由 Pydantic 抛错
    """

    required_keys: tuple[str, ...] = ("GITHUB_WEBHOOK_SECRET",)
    missing: list[str] = [key for key in required_keys if key not in environ or not environ[key].strip()]
    if missing:
        raise ValueError(f"Missing required env vars: {', '.join(missing)}")

    timeout_raw = _optional(environ, "RISK_ENGINE_TIMEOUT_MS")
    return AppConfig(
        github=GitHubConfig(
            webhook_secret=environ["GITHUB_WEBHOOK_SECRET"].strip(),
            api_base_url=_optional(environ, "GITHUB_API_BASE_URL") or DEFAULT_GITHUB_API_BASE_URL,
            token=_optional(environ, "GITHUB_TOKEN"),
        ),
        llm=LLMConfig(
            api_key=_optional(environ, "OPENAI_API_KEY"),
            base_url=_optional(environ, "OPENAI_BASE_URL"),
        ),
        routed=RoutedProviderConfig(
            base_url=_optional(environ, "OPENROUTER_BASE_URL") or DEFAULT_OPENROUTER_BASE_URL,
            free_model=_optional(environ, "OPENROUTER_FREE_MODEL") or DEFAULT_FREE_MODEL,
        ),
        slack=SlackConfig(
            api_base_url=_optional(environ, "SLACK_API_BASE_URL") or DEFAULT_SLACK_API_BASE_URL,
            notifications_enabled=_parse_bool(_optional(environ, "SLACK_NOTIFICATIONS_ENABLED"), default=True),
        ),
        engines=EngineConfig(
            stats_url=_optional(environ, "STATS_ENGINE_URL"),
            risk_engine_bin=_optional(environ, "RISK_ENGINE_BIN"),
            risk_engine_timeout_ms=int(timeout_raw) if timeout_raw else DEFAULT_RISK_ENGINE_TIMEOUT_MS,
        ),
        database_url=_optional(environ, "DATABASE_URL"),
    )
