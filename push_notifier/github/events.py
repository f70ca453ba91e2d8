"""
GitHub webhook payload -> `CanonicalPushEvent`（纯转换，无副作用）。

约定：
- 只处理 `push` 和“已合并”的 `pull_request`
- 任何字段缺失都落到固定默认值，**永远不抛异常**（payload 是外部输入）
- 不适用的事件返回 `Terminate(reason)`，由 orchestrator 映射成 ignored
"""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel

from push_notifier.pipeline.models import CanonicalPushEvent
from push_notifier.pipeline.stages import Continue
from push_notifier.pipeline.stages import StageResult
from push_notifier.pipeline.stages import Terminate

NO_MESSAGE = "(no message)"
NO_FILE_LIST = "(no file list)"
UNKNOWN = "unknown"
UNKNOWN_AUTHOR = "Unknown"


class ParsedEvent(BaseModel):
    """归一化结果 + pipeline 后续阶段需要的附加信息（不属于 canonical event 本身）。"""

    event_type: str
    event: CanonicalPushEvent
    author: str
    github_repository_id: str
    pushed_at: str | None = None


def _mapping(value: object) -> Mapping[str, object]:
    return value if isinstance(value, Mapping) else {}


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int) and value > 0:
        return value
    return 0


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


def _author_name(commit: Mapping[str, object]) -> str:
    author = _mapping(commit.get("author"))
    return _text(author.get("name")) or _text(author.get("username")) or _text(author.get("login")) or UNKNOWN_AUTHOR


def normalize_event(event_type: str | None, payload: object) -> StageResult[ParsedEvent]:
    """
    将原始 payload 转为 `ParsedEvent`。

    - push：分支取 ref 去掉 `refs/heads/`，只取第一个 commit
    - pull_request：必须 action=closed 且 merged=true；分支取 base.ref，sha 取 merge_commit_sha
    """
    body = _mapping(payload)
    if event_type == "pull_request":
        pull_request = _mapping(body.get("pull_request"))
        if not pull_request:
            return Terminate("not a pull request event")
        if body.get("action") != "closed" or pull_request.get("merged") is not True:
            return Terminate("pull request not merged")
        branch = _text(_mapping(pull_request.get("base")).get("ref")) or UNKNOWN
        commit: Mapping[str, object] = {
            "id": pull_request.get("merge_commit_sha"),
            "message": pull_request.get("title"),
            "author": {"name": _mapping(pull_request.get("user")).get("login")},
            "timestamp": pull_request.get("merged_at"),
            "additions": pull_request.get("additions"),
            "deletions": pull_request.get("deletions"),
        }
    elif event_type == "push":
        ref = _text(body.get("ref"))
        commits = body.get("commits")
        if ref is None or not isinstance(commits, list) or not commits:
            return Terminate("no commits to process")
        branch = ref.removeprefix("refs/heads/")
        commit = _mapping(commits[0])
    else:
        return Terminate(f"unsupported event type: {event_type}")

    repository = _mapping(body.get("repository"))
    if not repository:
        return Terminate("no repository information")

    files = (
        _string_list(commit.get("added"))
        + _string_list(commit.get("modified"))
        + _string_list(commit.get("removed"))
    )
    event = CanonicalPushEvent(
        repository_full_name=_text(repository.get("full_name")) or _text(repository.get("name")) or UNKNOWN,
        branch=branch,
        commit_message=_text(commit.get("message")) or NO_MESSAGE,
        files_changed=tuple(files) if files else (NO_FILE_LIST,),
        additions=_count(commit.get("additions")),
        deletions=_count(commit.get("deletions")),
        commit_sha=_text(commit.get("id")) or _text(commit.get("sha")) or UNKNOWN,
    )
    repo_id = repository.get("id")
    return Continue(
        ParsedEvent(
            event_type=event_type,
            event=event,
            author=_author_name(commit),
            github_repository_id=str(repo_id) if isinstance(repo_id, (int, str)) and not isinstance(repo_id, bool) else "",
            pushed_at=_text(commit.get("timestamp")),
        )
    )


def needs_line_count_backfill(parsed: ParsedEvent) -> bool:
    """push 事件没有带增删行数时，调用方可以做一次 best-effort 补齐。"""
    event = parsed.event
    return parsed.event_type == "push" and event.additions == 0 and event.deletions == 0


def with_line_counts(event: CanonicalPushEvent, additions: int, deletions: int) -> CanonicalPushEvent:
    return event.model_copy(update={"additions": max(additions, 0), "deletions": max(deletions, 0)})
