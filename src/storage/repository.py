"""
Ingest repository: dedup keys, adapter state, poll log and tracked threads.

The UNIQUE (source_id, item_id) constraint on ingested_items is the only
dedup mechanism. Acceptance is a single INSERT ... ON CONFLICT DO NOTHING,
so replaying an item after a crash is a harmless no-op.
"""

import json
import logging
from typing import Any

from src.ingestion.schemas import IngestItem, TrackedThread
from src.storage.database import Database

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS ingested_items (
    id                  BIGSERIAL PRIMARY KEY,
    source_id           TEXT NOT NULL,
    item_id             TEXT NOT NULL,
    item_hash           TEXT,
    task_id             TEXT,
    title               TEXT,
    origin_adapter_type TEXT,
    origin_channel_id   TEXT,
    origin_sender_id    TEXT,
    origin_thread_id    TEXT,
    origin_metadata     JSONB,
    ingested_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (source_id, item_id)
);

CREATE INDEX IF NOT EXISTS idx_ingested_items_source_ingested
    ON ingested_items(source_id, ingested_at DESC);

CREATE TABLE IF NOT EXISTS adapter_state (
    source_id   TEXT PRIMARY KEY,
    state_json  JSONB NOT NULL DEFAULT '{}',
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS poll_log (
    id          BIGSERIAL PRIMARY KEY,
    source_id   TEXT NOT NULL,
    poll_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    items_found INTEGER NOT NULL DEFAULT 0,
    items_new   INTEGER NOT NULL DEFAULT 0,
    error       TEXT,
    duration_ms INTEGER
);

CREATE INDEX IF NOT EXISTS idx_poll_log_source_poll_at
    ON poll_log(source_id, poll_at DESC);

CREATE TABLE IF NOT EXISTS thread_replies (
    id             BIGSERIAL PRIMARY KEY,
    source_id      TEXT NOT NULL,
    parent_item_id TEXT NOT NULL,
    parent_ts      TEXT NOT NULL,
    task_id        TEXT NOT NULL,
    last_reply_ts  TEXT,
    reply_count    INTEGER NOT NULL DEFAULT 0,
    active         BOOLEAN NOT NULL DEFAULT TRUE,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (source_id, parent_item_id)
);

CREATE INDEX IF NOT EXISTS idx_thread_replies_active
    ON thread_replies(source_id, created_at DESC) WHERE active;
"""

_IS_DUPLICATE_SQL = """
SELECT 1 FROM ingested_items WHERE source_id = $1 AND item_id = $2
"""

_RECORD_ITEM_SQL = """
INSERT INTO ingested_items (
    source_id, item_id, item_hash, task_id, title,
    origin_adapter_type, origin_channel_id, origin_sender_id,
    origin_thread_id, origin_metadata
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
ON CONFLICT (source_id, item_id) DO NOTHING
RETURNING id
"""

_GET_STATE_SQL = """
SELECT state_json FROM adapter_state WHERE source_id = $1
"""

_SET_STATE_SQL = """
INSERT INTO adapter_state (source_id, state_json, updated_at)
VALUES ($1, $2::jsonb, NOW())
ON CONFLICT (source_id) DO UPDATE SET
    state_json = EXCLUDED.state_json,
    updated_at = EXCLUDED.updated_at
"""

_LOG_POLL_SQL = """
INSERT INTO poll_log (source_id, items_found, items_new, error, duration_ms)
VALUES ($1, $2, $3, $4, $5)
"""

_REGISTER_THREAD_SQL = """
INSERT INTO thread_replies (source_id, parent_item_id, parent_ts, task_id)
VALUES ($1, $2, $3, $4)
ON CONFLICT (source_id, parent_item_id) DO NOTHING
"""

_ACTIVE_THREADS_SQL = """
SELECT source_id, parent_item_id, parent_ts, task_id,
       last_reply_ts, reply_count, active, updated_at
FROM thread_replies
WHERE source_id = $1 AND active
ORDER BY created_at DESC
LIMIT $2
"""

_UPDATE_THREAD_CURSOR_SQL = """
UPDATE thread_replies
SET last_reply_ts = $3,
    reply_count = reply_count + $4,
    updated_at = NOW()
WHERE source_id = $1 AND parent_item_id = $2
"""

_DEACTIVATE_THREAD_SQL = """
UPDATE thread_replies SET active = FALSE, updated_at = NOW()
WHERE source_id = $1 AND parent_item_id = $2
"""


def _load_json(value: Any) -> dict[str, Any]:
    """asyncpg returns JSONB as text unless a codec is registered."""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _record_to_thread(record) -> TrackedThread:
    return TrackedThread(
        source_id=record["source_id"],
        parent_item_id=record["parent_item_id"],
        parent_ts=record["parent_ts"],
        task_id=record["task_id"],
        last_reply_ts=record["last_reply_ts"],
        reply_count=record["reply_count"],
        active=record["active"],
        updated_at=record["updated_at"],
    )


class IngestRepository:
    """
    Persistence for the ingestion engine.

    Tables:
        - ingested_items: accepted items, unique per (source_id, item_id)
        - adapter_state: one opaque JSON state per source, last write wins
        - poll_log: append-only record of every poll attempt
        - thread_replies: threads whose replies are appended to work items
    """

    def __init__(self, database: Database):
        """
        Initialize repository.

        Args:
            database: Connected Database instance
        """
        self._db = database

    async def create_tables(self) -> None:
        """Create tables and indexes (idempotent)."""
        await self._db.execute(_CREATE_TABLES_SQL)
        logger.info("Ingest tables ensured")

    # ── Dedup ───────────────────────────────────────────────────

    async def is_duplicate(self, source_id: str, item_id: str) -> bool:
        row = await self._db.fetchrow(_IS_DUPLICATE_SQL, source_id, item_id)
        return row is not None

    async def record_item(
        self,
        source_id: str,
        item: IngestItem,
        task_id: str | None,
    ) -> bool:
        """
        Record acceptance of an item.

        Returns:
            True if the item was newly recorded, False if it already existed
        """
        origin = item.origin
        row = await self._db.fetchrow(
            _RECORD_ITEM_SQL,
            source_id,
            item.id,
            item.hash,
            task_id,
            item.title,
            origin.adapter_type if origin else None,
            origin.channel_id if origin else None,
            origin.sender_id if origin else None,
            origin.thread_id if origin else None,
            json.dumps(origin.metadata) if origin and origin.metadata else None,
        )
        return row is not None

    # ── Adapter state ───────────────────────────────────────────

    async def get_state(self, source_id: str) -> dict[str, Any]:
        """Stored adapter state, or an empty dict for a new source."""
        value = await self._db.fetchval(_GET_STATE_SQL, source_id)
        return _load_json(value)

    async def set_state(self, source_id: str, state: dict[str, Any]) -> None:
        await self._db.execute(_SET_STATE_SQL, source_id, json.dumps(state, default=str))

    # ── Poll log ────────────────────────────────────────────────

    async def log_poll(
        self,
        source_id: str,
        items_found: int,
        items_new: int,
        error: str | None,
        duration_ms: int,
    ) -> None:
        await self._db.execute(
            _LOG_POLL_SQL, source_id, items_found, items_new, error, duration_ms
        )

    async def recent_polls(self, source_id: str, limit: int = 10) -> list[dict[str, Any]]:
        rows = await self._db.fetch(
            """
            SELECT id, source_id, poll_at, items_found, items_new, error, duration_ms
            FROM poll_log WHERE source_id = $1
            ORDER BY poll_at DESC LIMIT $2
            """,
            source_id,
            limit,
        )
        return [dict(r) for r in rows]

    async def last_poll(self, source_id: str) -> dict[str, Any] | None:
        polls = await self.recent_polls(source_id, limit=1)
        return polls[0] if polls else None

    # ── Item queries ────────────────────────────────────────────

    async def item_count(self, source_id: str) -> int:
        count = await self._db.fetchval(
            "SELECT COUNT(*) FROM ingested_items WHERE source_id = $1",
            source_id,
        )
        return int(count or 0)

    async def recent_items(self, source_id: str, limit: int = 20) -> list[dict[str, Any]]:
        rows = await self._db.fetch(
            """
            SELECT item_id, item_hash, task_id, title, origin_adapter_type,
                   origin_channel_id, origin_sender_id, origin_thread_id, ingested_at
            FROM ingested_items WHERE source_id = $1
            ORDER BY ingested_at DESC LIMIT $2
            """,
            source_id,
            limit,
        )
        return [dict(r) for r in rows]

    async def all_source_stats(self) -> list[dict[str, Any]]:
        rows = await self._db.fetch(
            """
            SELECT source_id, COUNT(*) AS total_items, MAX(ingested_at) AS last_ingested
            FROM ingested_items
            GROUP BY source_id
            ORDER BY source_id
            """
        )
        return [dict(r) for r in rows]

    # ── Thread tracking ─────────────────────────────────────────

    async def register_thread(
        self,
        source_id: str,
        parent_item_id: str,
        parent_ts: str,
        task_id: str,
    ) -> None:
        await self._db.execute(
            _REGISTER_THREAD_SQL, source_id, parent_item_id, parent_ts, task_id
        )

    async def active_threads(self, source_id: str, limit: int = 50) -> list[TrackedThread]:
        rows = await self._db.fetch(_ACTIVE_THREADS_SQL, source_id, limit)
        return [_record_to_thread(r) for r in rows]

    async def update_thread_cursor(
        self,
        source_id: str,
        parent_item_id: str,
        last_reply_ts: str,
        new_replies: int = 1,
    ) -> None:
        await self._db.execute(
            _UPDATE_THREAD_CURSOR_SQL,
            source_id,
            parent_item_id,
            last_reply_ts,
            new_replies,
        )

    async def deactivate_thread(self, source_id: str, parent_item_id: str) -> None:
        await self._db.execute(_DEACTIVATE_THREAD_SQL, source_id, parent_item_id)
