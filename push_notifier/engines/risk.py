"""
风险评分引擎（子进程）。

协议：stdin 写入 snake_case JSON，stdout 读回 `RiskResult` JSON。
任何失败（未配置、启动失败、超时、非 0 退出、输出解析失败）都返回全 0 的 fallback，**不抛异常**。
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence

from pydantic import ValidationError

from push_notifier.pipeline.models import CanonicalPushEvent
from push_notifier.storage.models import RiskResult

logger = logging.getLogger(__name__)


class RiskEngine:
    def __init__(self, binary: str | None, timeout_ms: int) -> None:
        self._binary = binary
        self._timeout_seconds = timeout_ms / 1000

    async def score_push(self, event: CanonicalPushEvent) -> RiskResult:
        if not self._binary:
            return RiskResult()
        payload = json.dumps(
            {
                "commit_message": event.commit_message,
                "files_changed": list(event.files_changed),
                "additions": event.additions,
                "deletions": event.deletions,
            }
        ).encode("utf-8")
        try:
            stdout = await self._run([self._binary], payload)
        except (OSError, asyncio.TimeoutError, RuntimeError) as exc:
            logger.warning(f"Risk engine unavailable, using fallback: {exc}")
            return RiskResult()
        try:
            return RiskResult.model_validate(json.loads(stdout.decode("utf-8").strip()))
        except (ValueError, ValidationError) as exc:
            logger.warning(f"Risk engine output parse error, using fallback: {exc}")
            return RiskResult()

    async def _run(self, cmd: Sequence[str], payload: bytes) -> bytes:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        if process.returncode != 0:
            raise RuntimeError(f"risk engine exited with {process.returncode}: {stderr.decode('utf-8', 'replace')[:200]}")
        return stdout
