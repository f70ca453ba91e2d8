"""
LLM provider clients（每次调用按解析出的凭据新建，不做进程级单例）。

三种模式：
- 平台默认 key / 用户自带 OpenAI key：走 OpenAI SDK（chat.completions，非 chat 模型退到 completions）
- 路由型 provider（OpenRouter）：直接用 httpx 调用，因为需要读响应头里的 generation id

重试策略（只对路由型 provider）：
- 503（容量不足）/ 429（限流）/ 网络错误 / 响应体损坏：最多再试 2 次，退避 2s、4s
- 其它非 2xx：立即失败，抛出对用户安全的错误文案
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

import anyio
import httpx
from openai import AsyncOpenAI, BadRequestError, NotFoundError, OpenAIError
from pydantic import BaseModel

from push_notifier.errors import ConfigurationError
from push_notifier.errors import ProviderPolicyError
from push_notifier.errors import ProviderTransportError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAYS_SECONDS: tuple[float, ...] = (2.0, 4.0)
RETRYABLE_STATUSES = frozenset((429, 503))
ROUTED_MIN_OUTPUT_TOKENS = 1400
GENERATION_ID_HEADER = "x-openrouter-generation-id"
GENERATION_ID_PATTERN = re.compile(r"^gen-[A-Za-z0-9_-]+$")
GENERATION_ID_MAX_DEPTH = 4

_POLICY_PHRASES = re.compile(r"data policy|free model publication|privacy", re.IGNORECASE)
_COMPLETIONS_ONLY = re.compile(r"not a chat model|v1/completions", re.IGNORECASE)

POLICY_BLOCK_MESSAGE = (
    "OpenRouter rejected the request: your account's data policy does not allow this model (e.g. free models). "
    "Configure it at https://openrouter.ai/settings/privacy and enable \"Free model publication\" "
    "or the option that matches your model."
)
RATE_LIMIT_MESSAGE = (
    "OpenRouter rate limit: this model is temporarily rate-limited. Retry in a few minutes, or add your own "
    "provider key at https://openrouter.ai/settings/integrations to use your own rate limits."
)
CAPACITY_MESSAGE = (
    "OpenRouter provider at capacity (503). The AI provider was temporarily overloaded. "
    "Your push was still sent to Slack; try again in a moment."
)

Sleep = Callable[[float], Awaitable[None]]


class ChatMessage(BaseModel):
    """OpenAI chat message 的最小结构。"""

    role: str
    content: str


@dataclass(frozen=True)
class ProviderResponse:
    """原始 completion（dict）+ 可选的 generation id（用于事后查成本）。"""

    completion: dict[str, object]
    generation_id: str | None = None


@dataclass
class RetryState:
    attempt: int = 0
    last_status: int | None = None
    last_body: str | None = None
    delays: list[float] = field(default_factory=list)


class ProviderClient(Protocol):
    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> ProviderResponse: ...


def find_generation_id(value: object, depth: int = 0) -> str | None:
    """
    在 JSON 树里找第一个形如 `gen-xxx` 的字符串（深度上限 4）。

    JSON 值只有 null/bool/number/string/array/object 六种，这里按类型分派遍历。
    """
    if depth > GENERATION_ID_MAX_DEPTH or value is None or isinstance(value, (bool, int, float)):
        return None
    if isinstance(value, str):
        candidate = value.strip()
        return candidate if GENERATION_ID_PATTERN.match(candidate) else None
    if isinstance(value, dict):
        children: Sequence[object] = list(value.values())
    elif isinstance(value, list):
        children = value
    else:
        return None
    for child in children:
        found = find_generation_id(child, depth + 1)
        if found is not None:
            return found
    return None


def _status_error(status: int, body: str) -> ProviderPolicyError | ProviderTransportError:
    if status == 404 and _POLICY_PHRASES.search(body):
        return ProviderPolicyError(POLICY_BLOCK_MESSAGE, status_code=status)
    if status == 429:
        return ProviderTransportError(RATE_LIMIT_MESSAGE, status_code=status)
    if status == 503:
        return ProviderTransportError(CAPACITY_MESSAGE, status_code=status)
    return ProviderPolicyError(f"OpenRouter {status}: {body[:200]}", status_code=status)


class RoutedProviderClient:
    """路由型 provider（OpenRouter）的 chat completion 调用，带有界重试。"""

    def __init__(self, api_key: str, base_url: str, http_client: httpx.AsyncClient, sleep: Sleep = anyio.sleep) -> None:
        if not api_key.strip():
            raise ConfigurationError("Routed provider API key is empty")
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> ProviderResponse:
        """
        调用 `/chat/completions`。

        - max tokens 至少 1400：推理型模型会先消耗隐藏的 reasoning tokens，太少会把 JSON 截断
        - 返回的 generation id 优先取响应头，取不到再在 body 里找
        """
        payload = {
            "model": model,
            "messages": [m.model_dump() for m in messages],
            "max_completion_tokens": max(max_tokens, ROUTED_MIN_OUTPUT_TOKENS),
            "temperature": temperature,
        }
        state = RetryState()
        while True:
            if state.attempt > 0:
                delay = RETRY_DELAYS_SECONDS[min(state.attempt, len(RETRY_DELAYS_SECONDS)) - 1]
                state.delays.append(delay)
                await self._sleep(delay)
            state.attempt += 1
            can_retry = state.attempt < MAX_ATTEMPTS

            try:
                response = await self._http_client.post(
                    f"{self._base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                )
            except httpx.TransportError as exc:
                if can_retry:
                    logger.warning(f"OpenRouter transport error (attempt {state.attempt}/{MAX_ATTEMPTS}), will retry: {exc}")
                    continue
                raise ProviderTransportError(f"OpenRouter request failed: {exc}", provider_specific=False) from exc

            state.last_status = response.status_code
            if not response.is_success:
                state.last_body = response.text
                if response.status_code in RETRYABLE_STATUSES and can_retry:
                    logger.warning(
                        f"OpenRouter {response.status_code} (attempt {state.attempt}/{MAX_ATTEMPTS}), will retry: "
                        f"{state.last_body[:150]}"
                    )
                    continue
                logger.error(f"OpenRouter API error {response.status_code}: {state.last_body[:300]}")
                raise _status_error(response.status_code, state.last_body)

            try:
                body = json.loads(response.text) if response.text else None
            except json.JSONDecodeError as exc:
                if can_retry:
                    logger.warning(f"OpenRouter response invalid/truncated JSON (attempt {state.attempt}), will retry: {exc}")
                    continue
                raise ProviderTransportError(
                    f"OpenRouter returned invalid or empty response: {exc}", status_code=response.status_code
                ) from exc
            if not isinstance(body, dict):
                if can_retry:
                    logger.warning(f"OpenRouter response empty (attempt {state.attempt}), will retry")
                    continue
                raise ProviderTransportError("OpenRouter returned empty response", status_code=response.status_code)

            return ProviderResponse(completion=body, generation_id=self._generation_id(response, body))

    def _generation_id(self, response: httpx.Response, body: dict[str, object]) -> str | None:
        header = response.headers.get(GENERATION_ID_HEADER, "").strip()
        if header:
            return header
        found = find_generation_id(body)
        if found is None:
            logger.warning(
                f"OpenRouter: no generation id in header or body (keys: {', '.join(body.keys()) or '-'}, "
                f"completion.id: {body.get('id', '-')}); cost lookup will use completion id"
            )
        return found


class OpenAIProviderClient:
    """
    平台默认 key / 用户自带 key：OpenAI SDK。

    - SDK 自身的重试关掉（`max_retries=0`）：有界重试只属于路由型 provider
    - 先走 chat.completions；模型不是 chat 模型（只支持 v1/completions）时退到 completions.create
    """

    def __init__(self, api_key: str, http_client: httpx.AsyncClient, base_url: str | None = None) -> None:
        if not api_key.strip():
            raise ConfigurationError("OpenAI API key is not configured")
        self._client = AsyncOpenAI(api_key=api_key.strip(), base_url=base_url, http_client=http_client, max_retries=0)

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> ProviderResponse:
        try:
            try:
                completion = await self._chat(model, messages, max_tokens, temperature)
            except (BadRequestError, NotFoundError) as exc:
                if not _COMPLETIONS_ONLY.search(str(exc)):
                    raise
                logger.info(f"Model {model} is not a chat model, using the completions endpoint")
                completion = await self._legacy_completion(model, messages, max_tokens)
        except OpenAIError as exc:
            logger.error(f"LLM API error: {exc}")
            raise
        except httpx.HTTPError as exc:
            logger.error(f"LLM HTTP error: {exc}")
            raise
        return ProviderResponse(completion=completion)

    async def _chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> dict[str, object]:
        """部分模型不支持 temperature：遇到这种 400 去掉 temperature 再试一次。"""
        request: dict[str, object] = {
            "model": model,
            "messages": [m.model_dump() for m in messages],
            "max_completion_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            response = await self._client.chat.completions.create(**request)
        except BadRequestError as exc:
            if "temperature" not in str(exc).lower():
                raise
            logger.info(f"Model {model} rejected temperature, retrying without it")
            request.pop("temperature")
            response = await self._client.chat.completions.create(**request)
        return response.model_dump()

    async def _legacy_completion(self, model: str, messages: Sequence[ChatMessage], max_tokens: int) -> dict[str, object]:
        """
        v1/completions：system + user 拼成一个 prompt。

        返回值整理成 chat completion 的形状（`choices[0].message.content` + `usage`），
        下游的文本抽取和成本计算不用区分两种 endpoint。
        """
        prompt = "\n\n".join(m.content for m in messages if m.content)
        response = await self._client.completions.create(model=model, prompt=prompt, max_tokens=max_tokens)
        text = response.choices[0].text if response.choices else ""
        usage = response.usage
        return {
            "id": response.id,
            "model": response.model or model,
            "choices": [{"index": 0, "message": {"role": "assistant", "content": text or ""}}],
            "usage": (
                {
                    "prompt_tokens": usage.prompt_tokens,
                    "completion_tokens": usage.completion_tokens,
                    "total_tokens": usage.total_tokens,
                }
                if usage is not None
                else None
            ),
        }
