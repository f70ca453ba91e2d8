"""
GitHub API 客户端（外部系统连接器）。

目前只用来补齐 push 事件缺失的增删行数（GitHub push payload 不带 stats）。

约定：
- 这是 best-effort 查询：任何失败都返回 None 并记日志，不影响 pipeline
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class CommitStats(BaseModel):
    additions: int = 0
    deletions: int = 0


class GitHubClient:
    """最小 GitHub API client（只支持 get commit）。"""

    def __init__(self, api_base_url: str, http_client: httpx.AsyncClient) -> None:
        self._api_base_url = api_base_url.rstrip("/")
        self._http_client = http_client

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def get_commit_stats(self, owner: str, repo: str, sha: str, token: str | None) -> CommitStats | None:
        """GET /repos/{owner}/{repo}/commits/{sha}，只取 `stats.additions/deletions`。"""
        url = f"{self._api_base_url}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/commits/{quote(sha, safe='')}"
        try:
            response = await self._http_client.get(url, headers=self._headers(token))
        except httpx.HTTPError as exc:
            logger.warning(f"GitHub commit lookup failed for {owner}/{repo}@{sha[:7]}: {exc}")
            return None
        if response.status_code >= 400:
            logger.warning(f"GitHub API error {response.status_code} for commit {owner}/{repo}@{sha[:7]}")
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"GitHub commit lookup returned invalid JSON for {owner}/{repo}@{sha[:7]}")
            return None
        if not isinstance(data, dict) or not isinstance(data.get("stats"), dict):
            return None
        try:
            return CommitStats.model_validate(data["stats"])
        except ValidationError as exc:
            logger.warning(f"Unexpected GitHub commit stats shape: {exc}")
            return None
