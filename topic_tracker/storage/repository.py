"""Database repositories for topics, sources, watermarks, items, runs and tasks."""

import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from topic_tracker.config.topics import SourceConfig, TopicConfig
from topic_tracker.storage.database import Database, affected_rows
from topic_tracker.storage.schemas import (
    WATERMARK_KIND_TIMESTAMP,
    Item,
    Run,
    RunStatus,
    Source,
    Task,
    TaskKind,
    TaskStatus,
    Topic,
    Watermark,
)

logger = logging.getLogger(__name__)

Executor = Database | asyncpg.Connection

# Order matters: every table references the ones above it.
_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS topics (
    id            UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    slug          TEXT NOT NULL UNIQUE,
    name          TEXT NOT NULL,
    enabled       BOOLEAN NOT NULL DEFAULT TRUE,
    assistant_id  TEXT,
    lookback_days INTEGER,
    config        JSONB NOT NULL DEFAULT '{}',
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sources (
    id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    topic_id   UUID NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
    name       TEXT NOT NULL,
    kind       TEXT NOT NULL,
    url        TEXT NOT NULL,
    enabled    BOOLEAN NOT NULL DEFAULT TRUE,
    meta       JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (topic_id, name)
);

CREATE TABLE IF NOT EXISTS watermarks (
    id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source_id  UUID NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    kind       TEXT NOT NULL DEFAULT 'timestamp',
    value      TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (source_id, kind)
);

CREATE TABLE IF NOT EXISTS items (
    id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    topic_id        UUID NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
    source_id       UUID NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    title           TEXT NOT NULL,
    content         TEXT NOT NULL DEFAULT '',
    url             TEXT,
    published_at    TIMESTAMPTZ,
    content_hash    TEXT NOT NULL,
    similarity_hash TEXT,
    metadata        JSONB NOT NULL DEFAULT '{}',
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (source_id, content_hash)
);

CREATE INDEX IF NOT EXISTS idx_items_topic_created
    ON items(topic_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_items_topic_title
    ON items(topic_id, btrim(title));

CREATE TABLE IF NOT EXISTS runs (
    id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    topic_id     UUID NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
    status       TEXT NOT NULL DEFAULT 'pending',
    started_at   TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    error        TEXT,
    metadata     JSONB NOT NULL DEFAULT '{}',
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_runs_topic_created
    ON runs(topic_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_runs_status
    ON runs(status);

CREATE TABLE IF NOT EXISTS run_items (
    run_id  UUID NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    item_id UUID NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    PRIMARY KEY (run_id, item_id)
);

CREATE INDEX IF NOT EXISTS idx_run_items_item
    ON run_items(item_id);

CREATE TABLE IF NOT EXISTS tasks (
    id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    topic_id     UUID REFERENCES topics(id) ON DELETE SET NULL,
    kind         TEXT NOT NULL,
    params       JSONB NOT NULL DEFAULT '{}',
    status       TEXT NOT NULL DEFAULT 'pending',
    requester    TEXT,
    result       JSONB,
    error        TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at   TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_tasks_status_created
    ON tasks(status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_tasks_topic_slug
    ON tasks((params->>'topic_slug'));
"""


async def create_tables(database: Database) -> None:
    """Create every table and index (idempotent)."""
    await database.execute(_CREATE_TABLES_SQL)
    logger.info("Topic tracker tables ensured")


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _id(value: Any) -> str | None:
    return str(value) if value is not None else None


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

_UPSERT_TOPIC_SQL = """
INSERT INTO topics (slug, name, enabled, assistant_id, lookback_days, config)
VALUES ($1, $2, $3, $4, $5, $6::jsonb)
ON CONFLICT (slug) DO UPDATE SET
    name = EXCLUDED.name,
    enabled = EXCLUDED.enabled,
    assistant_id = EXCLUDED.assistant_id,
    lookback_days = EXCLUDED.lookback_days,
    config = EXCLUDED.config,
    updated_at = NOW()
RETURNING *
"""

_TOPIC_STATS_SQL = """
SELECT
    t.slug,
    t.name,
    t.enabled,
    (SELECT COUNT(*) FROM items i WHERE i.topic_id = t.id) AS items_count,
    (SELECT COUNT(*) FROM runs r WHERE r.topic_id = t.id) AS runs_count,
    lr.created_at AS last_run,
    lr.status AS last_run_status
FROM topics t
LEFT JOIN LATERAL (
    SELECT created_at, status FROM runs r
    WHERE r.topic_id = t.id
    ORDER BY created_at DESC
    LIMIT 1
) lr ON TRUE
WHERE ($1::text IS NULL OR t.slug = $1)
ORDER BY t.slug
"""


def _record_to_topic(record) -> Topic:
    return Topic(
        id=str(record["id"]),
        slug=record["slug"],
        name=record["name"],
        enabled=record["enabled"],
        assistant_id=record["assistant_id"],
        lookback_days=record["lookback_days"],
        config=_json(record["config"]) or {},
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


class TopicRepository:
    """Topic rows mirrored from the topic catalog."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def upsert_from_config(
        self, config: TopicConfig, conn: Executor | None = None
    ) -> Topic:
        """Insert or refresh the row for a configured topic."""
        executor = conn or self._db
        row = await executor.fetchrow(
            _UPSERT_TOPIC_SQL,
            config.slug,
            config.name,
            config.enabled,
            config.assistant_id,
            config.lookback_days,
            config.model_dump_json(),
        )
        return _record_to_topic(row)

    async def get_by_slug(self, slug: str) -> Topic | None:
        row = await self._db.fetchrow("SELECT * FROM topics WHERE slug = $1", slug)
        return _record_to_topic(row) if row else None

    async def delete(self, topic_id: str, conn: Executor | None = None) -> int:
        executor = conn or self._db
        result = await executor.execute("DELETE FROM topics WHERE id = $1", topic_id)
        return affected_rows(result)

    async def get_stats(self, slug: str | None = None) -> list[dict[str, Any]]:
        """Per-topic item/run counts and the latest run."""
        rows = await self._db.fetch(_TOPIC_STATS_SQL, slug)
        return [
            {
                "slug": r["slug"],
                "name": r["name"],
                "enabled": r["enabled"],
                "items_count": r["items_count"],
                "runs_count": r["runs_count"],
                "last_run": r["last_run"].isoformat() if r["last_run"] else None,
                "last_run_status": r["last_run_status"],
            }
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

_UPSERT_SOURCE_SQL = """
INSERT INTO sources (topic_id, name, kind, url, enabled, meta)
VALUES ($1, $2, $3, $4, $5, $6::jsonb)
ON CONFLICT (topic_id, name) DO UPDATE SET
    kind = EXCLUDED.kind,
    url = EXCLUDED.url,
    enabled = EXCLUDED.enabled,
    meta = EXCLUDED.meta,
    updated_at = NOW()
RETURNING *
"""


def _record_to_source(record) -> Source:
    return Source(
        id=str(record["id"]),
        topic_id=str(record["topic_id"]),
        name=record["name"],
        kind=record["kind"],
        url=record["url"],
        enabled=record["enabled"],
        meta=_json(record["meta"]) or {},
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


class SourceRepository:
    """Source rows; (topic_id, name) is unique."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def upsert(
        self, topic_id: str, source: SourceConfig, conn: Executor | None = None
    ) -> Source:
        executor = conn or self._db
        row = await executor.fetchrow(
            _UPSERT_SOURCE_SQL,
            topic_id,
            source.name,
            source.kind.value,
            source.url,
            source.enabled,
            json.dumps(source.meta),
        )
        return _record_to_source(row)

    async def list_for_topic(self, topic_id: str) -> list[Source]:
        rows = await self._db.fetch(
            "SELECT * FROM sources WHERE topic_id = $1 ORDER BY name", topic_id
        )
        return [_record_to_source(r) for r in rows]

    async def delete_for_topic(self, topic_id: str, conn: Executor | None = None) -> int:
        executor = conn or self._db
        result = await executor.execute("DELETE FROM sources WHERE topic_id = $1", topic_id)
        return affected_rows(result)


# ---------------------------------------------------------------------------
# Watermarks
# ---------------------------------------------------------------------------

_UPSERT_WATERMARK_SQL = """
INSERT INTO watermarks (source_id, kind, value)
VALUES ($1, $2, $3)
ON CONFLICT (source_id, kind) DO UPDATE SET
    value = EXCLUDED.value,
    updated_at = NOW()
RETURNING *
"""


def _record_to_watermark(record) -> Watermark:
    return Watermark(
        id=str(record["id"]),
        source_id=str(record["source_id"]),
        kind=record["kind"],
        value=record["value"],
        updated_at=record["updated_at"],
    )


class WatermarkRepository:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(
        self, source_id: str, kind: str = WATERMARK_KIND_TIMESTAMP
    ) -> Watermark | None:
        row = await self._db.fetchrow(
            "SELECT * FROM watermarks WHERE source_id = $1 AND kind = $2",
            source_id,
            kind,
        )
        return _record_to_watermark(row) if row else None

    async def upsert(
        self,
        source_id: str,
        value: str,
        kind: str = WATERMARK_KIND_TIMESTAMP,
        conn: Executor | None = None,
    ) -> Watermark:
        executor = conn or self._db
        row = await executor.fetchrow(_UPSERT_WATERMARK_SQL, source_id, kind, value)
        return _record_to_watermark(row)

    async def delete_for_topic(self, topic_id: str, conn: Executor | None = None) -> int:
        """Drop every watermark of the topic's sources."""
        executor = conn or self._db
        result = await executor.execute(
            """
            DELETE FROM watermarks
            WHERE source_id IN (SELECT id FROM sources WHERE topic_id = $1)
            """,
            topic_id,
        )
        return affected_rows(result)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

# The no-op update makes RETURNING yield the existing id on conflict.
_UPSERT_ITEM_SQL = """
INSERT INTO items (
    topic_id, source_id, title, content, url, published_at,
    content_hash, similarity_hash, metadata
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
ON CONFLICT (source_id, content_hash) DO UPDATE SET
    content_hash = EXCLUDED.content_hash
RETURNING id
"""

_DELETE_UNREFERENCED_SQL = """
DELETE FROM items i
WHERE i.topic_id = $1
  AND i.created_at >= $2
  AND NOT EXISTS (SELECT 1 FROM run_items ri WHERE ri.item_id = i.id)
"""


class ItemRepository:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def upsert(self, item: Item, conn: Executor | None = None) -> str:
        """Insert an item, idempotent on (source_id, content_hash). Returns the row id."""
        executor = conn or self._db
        item_id = await executor.fetchval(
            _UPSERT_ITEM_SQL,
            item.topic_id,
            item.source_id,
            item.title,
            item.content,
            item.url,
            item.published_at,
            item.content_hash,
            item.similarity_hash,
            json.dumps(item.metadata, default=str),
        )
        return str(item_id)

    async def find_recent_title(
        self, topic_id: str, title: str, since: datetime
    ) -> str | None:
        """Id of an item of the topic with the same stripped title created since ``since``."""
        item_id = await self._db.fetchval(
            """
            SELECT id FROM items
            WHERE topic_id = $1 AND btrim(title) = $2 AND created_at >= $3
            LIMIT 1
            """,
            topic_id,
            title.strip(),
            since,
        )
        return _id(item_id)

    async def delete_unreferenced_since(
        self, topic_id: str, cutoff: datetime, conn: Executor | None = None
    ) -> int:
        executor = conn or self._db
        result = await executor.execute(_DELETE_UNREFERENCED_SQL, topic_id, cutoff)
        return affected_rows(result)

    async def delete_for_topic(self, topic_id: str, conn: Executor | None = None) -> int:
        executor = conn or self._db
        result = await executor.execute("DELETE FROM items WHERE topic_id = $1", topic_id)
        return affected_rows(result)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

_RUN_COLUMNS = """
    r.id, r.topic_id, r.status, r.started_at, r.completed_at,
    r.error, r.metadata, r.created_at, t.slug AS topic_slug
"""


def _record_to_run(record) -> Run:
    return Run(
        id=str(record["id"]),
        topic_id=str(record["topic_id"]),
        status=RunStatus(record["status"]),
        started_at=record["started_at"],
        completed_at=record["completed_at"],
        error=record["error"],
        metadata=_json(record["metadata"]) or {},
        created_at=record["created_at"],
        topic_slug=record.get("topic_slug"),
    )


class RunRepository:
    """Pipeline runs and their item links."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(self, topic_id: str, conn: Executor | None = None) -> Run:
        executor = conn or self._db
        row = await executor.fetchrow(
            """
            INSERT INTO runs (topic_id, status) VALUES ($1, 'pending')
            RETURNING *
            """,
            topic_id,
        )
        return _record_to_run(row)

    async def mark_running(self, run_id: str) -> Run:
        row = await self._db.fetchrow(
            """
            UPDATE runs SET status = 'running', started_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            run_id,
        )
        return _record_to_run(row)

    async def complete(self, run_id: str, metadata: dict[str, Any]) -> Run:
        row = await self._db.fetchrow(
            """
            UPDATE runs
            SET status = 'completed', completed_at = NOW(), metadata = $2::jsonb
            WHERE id = $1
            RETURNING *
            """,
            run_id,
            json.dumps(metadata, default=str),
        )
        return _record_to_run(row)

    async def fail(
        self, run_id: str, error: str, metadata: dict[str, Any] | None = None
    ) -> Run:
        row = await self._db.fetchrow(
            """
            UPDATE runs
            SET status = 'failed', completed_at = NOW(), error = $2,
                metadata = metadata || $3::jsonb
            WHERE id = $1
            RETURNING *
            """,
            run_id,
            error,
            json.dumps(metadata or {}, default=str),
        )
        return _record_to_run(row)

    async def link_items(
        self, run_id: str, item_ids: list[str], conn: Executor | None = None
    ) -> int:
        if not item_ids:
            return 0
        executor = conn or self._db
        result = await executor.execute(
            """
            INSERT INTO run_items (run_id, item_id)
            SELECT $1, unnest($2::uuid[])
            ON CONFLICT DO NOTHING
            """,
            run_id,
            item_ids,
        )
        return affected_rows(result)

    async def get(self, run_id: str) -> Run | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM runs r JOIN topics t ON t.id = r.topic_id
            WHERE r.id = $1
            """,
            run_id,
        )
        return _record_to_run(row) if row else None

    async def list_runs(
        self,
        topic_slug: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Run], int]:
        """Paginated list, newest first. Returns (runs, total)."""
        conditions: list[str] = []
        params: list = []
        idx = 1

        if topic_slug:
            conditions.append(f"t.slug = ${idx}")
            params.append(topic_slug)
            idx += 1

        if status:
            conditions.append(f"r.status = ${idx}")
            params.append(status)
            idx += 1

        where_clause = " WHERE " + " AND ".join(conditions) if conditions else ""
        from_clause = "FROM runs r JOIN topics t ON t.id = r.topic_id"

        total = await self._db.fetchval(
            f"SELECT COUNT(*) {from_clause}{where_clause}", *params
        )

        params.extend([limit, offset])
        rows = await self._db.fetch(
            f"""
            SELECT {_RUN_COLUMNS} {from_clause}{where_clause}
            ORDER BY r.created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
            """,
            *params,
        )
        return [_record_to_run(r) for r in rows], total or 0

    async def ids_since(self, topic_id: str, cutoff: datetime) -> list[str]:
        rows = await self._db.fetch(
            "SELECT id FROM runs WHERE topic_id = $1 AND created_at >= $2",
            topic_id,
            cutoff,
        )
        return [str(r["id"]) for r in rows]

    async def delete_many(self, run_ids: list[str], conn: Executor | None = None) -> int:
        """Delete runs and their item links."""
        if not run_ids:
            return 0
        executor = conn or self._db
        await executor.execute(
            "DELETE FROM run_items WHERE run_id = ANY($1::uuid[])", run_ids
        )
        result = await executor.execute(
            "DELETE FROM runs WHERE id = ANY($1::uuid[])", run_ids
        )
        return affected_rows(result)

    async def delete_for_topic(self, topic_id: str, conn: Executor | None = None) -> int:
        executor = conn or self._db
        await executor.execute(
            """
            DELETE FROM run_items
            WHERE run_id IN (SELECT id FROM runs WHERE topic_id = $1)
            """,
            topic_id,
        )
        result = await executor.execute("DELETE FROM runs WHERE topic_id = $1", topic_id)
        return affected_rows(result)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

_TERMINAL = "('completed', 'failed')"

_SET_RUNNING_SQL = f"""
UPDATE tasks SET status = 'running', started_at = NOW()
WHERE id = $1 AND status NOT IN {_TERMINAL}
RETURNING *
"""

_SET_PENDING_SQL = f"""
UPDATE tasks SET status = 'pending', error = $2
WHERE id = $1 AND status NOT IN {_TERMINAL}
RETURNING *
"""

_SET_TERMINAL_SQL = f"""
UPDATE tasks
SET status = $2, result = $3::jsonb, error = $4, completed_at = NOW()
WHERE id = $1 AND status NOT IN {_TERMINAL}
RETURNING *
"""


def _record_to_task(record) -> Task:
    params = _json(record["params"]) or {}
    return Task(
        id=str(record["id"]),
        kind=TaskKind(record["kind"]),
        status=TaskStatus(record["status"]),
        params=params,
        topic_id=_id(record["topic_id"]),
        topic_slug=params.get("topic_slug"),
        requester=record["requester"],
        result=_json(record["result"]),
        error=record["error"],
        created_at=record["created_at"],
        started_at=record["started_at"],
        completed_at=record["completed_at"],
    )


class TaskRepository:
    """Rows behind the task ledger.

    Terminal transitions only apply to non-terminal rows, so a task's
    final status is written exactly once.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(
        self,
        kind: TaskKind,
        params: dict[str, Any],
        requester: str | None,
        topic_id: str | None = None,
    ) -> Task:
        row = await self._db.fetchrow(
            """
            INSERT INTO tasks (topic_id, kind, params, status, requester)
            VALUES ($1, $2, $3::jsonb, 'pending', $4)
            RETURNING *
            """,
            topic_id,
            kind.value,
            json.dumps(params),
            requester,
        )
        return _record_to_task(row)

    async def set_running(self, task_id: str) -> Task | None:
        row = await self._db.fetchrow(_SET_RUNNING_SQL, task_id)
        return _record_to_task(row) if row else None

    async def set_pending(self, task_id: str, error: str | None = None) -> Task | None:
        row = await self._db.fetchrow(_SET_PENDING_SQL, task_id, error)
        return _record_to_task(row) if row else None

    async def set_terminal(
        self,
        task_id: str,
        status: TaskStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Task | None:
        """Write the final status. Returns None if the task was already terminal."""
        row = await self._db.fetchrow(
            _SET_TERMINAL_SQL,
            task_id,
            status.value,
            json.dumps(result, default=str) if result is not None else None,
            error,
        )
        return _record_to_task(row) if row else None

    async def get(self, task_id: str) -> Task | None:
        row = await self._db.fetchrow("SELECT * FROM tasks WHERE id = $1", task_id)
        return _record_to_task(row) if row else None

    async def list_tasks(
        self,
        topic_slug: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Task]:
        conditions: list[str] = []
        params: list = []
        idx = 1

        if topic_slug:
            conditions.append(f"params->>'topic_slug' = ${idx}")
            params.append(topic_slug)
            idx += 1

        if status:
            conditions.append(f"status = ${idx}")
            params.append(status)
            idx += 1

        where_clause = " WHERE " + " AND ".join(conditions) if conditions else ""
        params.append(limit)
        rows = await self._db.fetch(
            f"""
            SELECT * FROM tasks{where_clause}
            ORDER BY created_at DESC
            LIMIT ${idx}
            """,
            *params,
        )
        return [_record_to_task(r) for r in rows]

    async def delete(self, task_id: str) -> bool:
        result = await self._db.execute("DELETE FROM tasks WHERE id = $1", task_id)
        return affected_rows(result) > 0

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        result = await self._db.execute(
            f"""
            DELETE FROM tasks
            WHERE status IN {_TERMINAL} AND created_at < $1
            """,
            cutoff,
        )
        return affected_rows(result)

    async def count_by(self, column: str) -> dict[str, int]:
        """Task counts grouped by ``status`` or ``kind``."""
        if column not in ("status", "kind"):
            raise ValueError(f"Cannot group tasks by {column!r}")
        rows = await self._db.fetch(
            f"SELECT {column} AS key, COUNT(*) AS count FROM tasks GROUP BY {column}"
        )
        return {r["key"]: r["count"] for r in rows}
