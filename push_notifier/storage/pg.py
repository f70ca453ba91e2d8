"""
Postgres 存储（psycopg，同步驱动 + `anyio.to_thread` 包装成 async）。

说明：
- 表结构只覆盖 pipeline 需要的字段；凭据列在这里已经是解密后的明文（加解密不在本服务范围）
- 每次调用新建连接：webhook 量级下足够，后续可以换成连接池
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone

import anyio
import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from push_notifier.errors import PersistenceError
from push_notifier.storage.models import AiUsageRecord
from push_notifier.storage.models import IntegrationRecord
from push_notifier.storage.models import NotificationRecord
from push_notifier.storage.models import OverBudgetBehavior
from push_notifier.storage.models import PushEventRecord
from push_notifier.storage.models import RepositoryRecord
from push_notifier.storage.models import UserRecord

logger = logging.getLogger(__name__)

_AI_USAGE_UPDATABLE = frozenset(("cost", "tokens_used"))
_JSON_COLUMNS = frozenset(("risk_flags", "risk_metadata", "metadata"))

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS repositories (
        id TEXT PRIMARY KEY,
        github_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        full_name TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        monthly_budget BIGINT,
        over_budget_behavior TEXT NOT NULL DEFAULT 'free_model',
        routed_provider_key TEXT,
        openai_api_key TEXT,
        github_token TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS slack_workspaces (
        id TEXT PRIMARY KEY,
        access_token TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS integrations (
        id TEXT PRIMARY KEY,
        repository_id TEXT NOT NULL REFERENCES repositories (id),
        user_id TEXT NOT NULL REFERENCES users (id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        slack_workspace_id TEXT,
        slack_channel_id TEXT,
        slack_channel_name TEXT,
        ai_model TEXT,
        max_tokens INTEGER,
        routed_provider_key TEXT,
        include_commit_summaries BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS push_events (
        id TEXT PRIMARY KEY,
        repository_id TEXT NOT NULL,
        integration_id TEXT NOT NULL,
        commit_sha TEXT NOT NULL,
        commit_message TEXT NOT NULL,
        author TEXT NOT NULL,
        branch TEXT NOT NULL,
        pushed_at TIMESTAMPTZ NOT NULL,
        notification_sent BOOLEAN NOT NULL DEFAULT TRUE,
        additions INTEGER NOT NULL DEFAULT 0,
        deletions INTEGER NOT NULL DEFAULT 0,
        ai_summary TEXT,
        ai_impact TEXT,
        ai_category TEXT,
        ai_details TEXT,
        ai_generated BOOLEAN NOT NULL DEFAULT FALSE,
        impact_score INTEGER NOT NULL DEFAULT 0,
        risk_flags JSONB NOT NULL DEFAULT '[]',
        risk_metadata JSONB NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_usage (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        integration_id TEXT NOT NULL,
        push_event_id TEXT NOT NULL REFERENCES push_events (id) ON DELETE CASCADE,
        model TEXT NOT NULL,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        cost BIGINT NOT NULL DEFAULT 0,
        generation_id TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ai_usage_user_created ON ai_usage (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL,
        is_read BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
)


class PgStorageClient:
    """Postgres 连接器。"""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, row_factory=dict_row)


def ensure_schema(client: PgStorageClient) -> None:
    with client.connect() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        conn.commit()


def _fetch_one(client: PgStorageClient, query: str, params: tuple[object, ...]) -> dict[str, object] | None:
    with client.connect() as conn:
        with conn.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()


def _insert(client: PgStorageClient, table: str, row: Mapping[str, object]) -> dict[str, object]:
    columns = list(row.keys())
    values = [Jsonb(row[c]) if c in _JSON_COLUMNS else row[c] for c in columns]
    placeholders = ", ".join(["%s"] * len(columns))
    try:
        with client.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                    values,
                )
                inserted = cur.fetchone()
            conn.commit()
    except psycopg.Error as exc:
        raise PersistenceError(f"Insert into {table} failed: {exc}") from exc
    if inserted is None:
        raise PersistenceError(f"Insert into {table} returned no row")
    return inserted


def _sum_monthly_spend(client: PgStorageClient, user_id: str, since: datetime) -> int:
    row = _fetch_one(
        client,
        "SELECT COALESCE(SUM(cost), 0) AS total FROM ai_usage WHERE user_id = %s AND created_at >= %s",
        (user_id, since),
    )
    return int(row["total"]) if row is not None else 0


def _update_ai_usage(client: PgStorageClient, push_event_id: str, user_id: str, fields: Mapping[str, object]) -> bool:
    unknown = set(fields) - _AI_USAGE_UPDATABLE
    if unknown:
        raise ValueError(f"Unsupported ai_usage fields: {', '.join(sorted(unknown))}")
    if not fields:
        return False
    assignments = ", ".join(f"{column} = %s" for column in fields)
    try:
        with client.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE ai_usage SET {assignments} WHERE push_event_id = %s AND user_id = %s AND cost = 0",
                    (*fields.values(), push_event_id, user_id),
                )
                updated = cur.rowcount > 0
            conn.commit()
    except psycopg.Error as exc:
        raise PersistenceError(f"Update of ai_usage for push event {push_event_id} failed: {exc}") from exc
    return updated


class PgStore:
    """`ConfigStore` + `PersistenceStore` 的 Postgres 实现。"""

    def __init__(self, client: PgStorageClient) -> None:
        self._client = client

    async def _one(self, query: str, *params: object) -> dict[str, object] | None:
        return await anyio.to_thread.run_sync(_fetch_one, self._client, query, params)

    async def get_repository_by_github_id(self, github_id: str) -> RepositoryRecord | None:
        row = await self._one("SELECT * FROM repositories WHERE github_id = %s", github_id)
        return RepositoryRecord.model_validate(row) if row is not None else None

    async def get_active_integration(self, repository_id: str) -> IntegrationRecord | None:
        row = await self._one(
            "SELECT * FROM integrations WHERE repository_id = %s AND is_active LIMIT 1",
            repository_id,
        )
        return IntegrationRecord.model_validate(row) if row is not None else None

    async def get_user(self, user_id: str) -> UserRecord | None:
        row = await self._one("SELECT * FROM users WHERE id = %s", user_id)
        return UserRecord.model_validate(row) if row is not None else None

    async def get_user_monthly_budget(self, user_id: str) -> int | None:
        user = await self.get_user(user_id)
        return user.monthly_budget if user is not None else None

    async def get_user_over_budget_preference(self, user_id: str) -> OverBudgetBehavior:
        user = await self.get_user(user_id)
        return user.over_budget_behavior if user is not None else "free_model"

    async def get_monthly_ai_spend(self, user_id: str, since: datetime) -> int:
        return await anyio.to_thread.run_sync(_sum_monthly_spend, self._client, user_id, since)

    async def get_slack_workspace_token(self, workspace_id: str) -> str | None:
        row = await self._one("SELECT access_token FROM slack_workspaces WHERE id = %s", workspace_id)
        token = row.get("access_token") if row is not None else None
        return token if isinstance(token, str) and token else None

    async def create_push_event(self, fields: Mapping[str, object]) -> PushEventRecord:
        row = await anyio.to_thread.run_sync(_insert, self._client, "push_events", {"id": str(uuid.uuid4()), **fields})
        return PushEventRecord.model_validate(row)

    async def get_push_event(self, push_event_id: str) -> PushEventRecord | None:
        row = await self._one("SELECT * FROM push_events WHERE id = %s", push_event_id)
        return PushEventRecord.model_validate(row) if row is not None else None

    async def create_ai_usage(self, fields: Mapping[str, object]) -> AiUsageRecord:
        row = await anyio.to_thread.run_sync(
            _insert,
            self._client,
            "ai_usage",
            {"id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc), **fields},
        )
        return AiUsageRecord.model_validate(row)

    async def get_ai_usage(self, push_event_id: str, user_id: str) -> AiUsageRecord | None:
        row = await self._one(
            "SELECT * FROM ai_usage WHERE push_event_id = %s AND user_id = %s LIMIT 1",
            push_event_id,
            user_id,
        )
        return AiUsageRecord.model_validate(row) if row is not None else None

    async def update_ai_usage(self, push_event_id: str, user_id: str, fields: Mapping[str, object]) -> bool:
        return await anyio.to_thread.run_sync(_update_ai_usage, self._client, push_event_id, user_id, fields)

    async def create_notification(self, fields: Mapping[str, object]) -> NotificationRecord:
        row = await anyio.to_thread.run_sync(
            _insert,
            self._client,
            "notifications",
            {"id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc), **fields},
        )
        return NotificationRecord.model_validate(row)
