"""
PostgreSQL Store

KeyValueStore on three tables:
- kv_records: key, JSONB value, version (optimistic concurrency)
- kv_index: sorted secondary indexes (index_name, member, score)
- kv_sequences: named monotonic counters

Optimistic writes are a single UPDATE ... WHERE version = :expected,
so the row lock taken by Postgres makes the check-and-write atomic.
"""

import json
import logging
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from .base import KeyValueStore

logger = logging.getLogger("fraud_engine.storage")


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS kv_records (
        key TEXT PRIMARY KEY,
        value JSONB NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kv_index (
        index_name TEXT NOT NULL,
        member TEXT NOT NULL,
        score DOUBLE PRECISION NOT NULL,
        PRIMARY KEY (index_name, member)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_kv_index_score
        ON kv_index (index_name, score)
    """,
    """
    CREATE TABLE IF NOT EXISTS kv_sequences (
        name TEXT PRIMARY KEY,
        value BIGINT NOT NULL
    )
    """,
)


def _like_prefix(prefix: str) -> str:
    """Escape LIKE wildcards so the prefix matches literally."""
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"


def _load(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else json.loads(value)


class PostgresStore(KeyValueStore):
    """Key-value store backed by PostgreSQL via SQLAlchemy async + asyncpg."""

    backend = "postgres"

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize Postgres store.

        Args:
            database_url: PostgreSQL connection URL (postgresql+asyncpg://...)
            echo: Log emitted SQL
        """
        self.database_url = database_url
        self.echo = echo
        self.engine = None
        self.session_factory = None

    async def initialize(self) -> None:
        """Initialize database connection and create tables."""
        self.engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self.session_factory() as session:
            for statement in SCHEMA_STATEMENTS:
                await session.execute(text(statement))
            await session.commit()
        logger.info("Postgres store initialized")

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()

    async def health_check(self) -> bool:
        """Check database connectivity."""
        if not self.session_factory:
            raise RuntimeError("Database not initialized")

        async with self.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1

    # =========================================================================
    # Records
    # =========================================================================

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT value FROM kv_records WHERE key = :key"),
                {"key": key},
            )
            row = result.fetchone()
            return _load(row[0]) if row else None

    async def get_many(self, keys: list[str]) -> list[dict[str, Any]]:
        if not keys:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT key, value FROM kv_records WHERE key = ANY(:keys)"),
                {"keys": keys},
            )
            found = {row[0]: _load(row[1]) for row in result.fetchall()}
        return [found[k] for k in keys if k in found]

    async def put(self, key: str, value: dict[str, Any]) -> None:
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO kv_records (key, value, version)
                    VALUES (:key, CAST(:value AS JSONB), :version)
                    ON CONFLICT (key) DO UPDATE SET
                        value = EXCLUDED.value,
                        version = EXCLUDED.version,
                        updated_at = NOW()
                """),
                {
                    "key": key,
                    "value": json.dumps(value),
                    "version": int(value.get("version", 0)),
                },
            )
            await session.commit()

    async def delete(self, key: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                text("DELETE FROM kv_records WHERE key = :key RETURNING key"),
                {"key": key},
            )
            deleted = result.fetchone() is not None
            await session.commit()
            return deleted

    async def compare_and_set(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: Optional[int],
    ) -> bool:
        new_version = 1 if expected_version is None else expected_version + 1
        payload = json.dumps({**value, "version": new_version})

        async with self.session_factory() as session:
            if expected_version is None:
                result = await session.execute(
                    text("""
                        INSERT INTO kv_records (key, value, version)
                        VALUES (:key, CAST(:value AS JSONB), :version)
                        ON CONFLICT (key) DO NOTHING
                        RETURNING key
                    """),
                    {"key": key, "value": payload, "version": new_version},
                )
            else:
                result = await session.execute(
                    text("""
                        UPDATE kv_records
                        SET value = CAST(:value AS JSONB),
                            version = :version,
                            updated_at = NOW()
                        WHERE key = :key AND version = :expected
                        RETURNING key
                    """),
                    {
                        "key": key,
                        "value": payload,
                        "version": new_version,
                        "expected": expected_version,
                    },
                )
            written = result.fetchone() is not None
            await session.commit()
            return written

    async def scan(self, prefix: str) -> list[dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT value FROM kv_records
                    WHERE key LIKE :pattern ESCAPE '\\'
                    ORDER BY key
                """),
                {"pattern": _like_prefix(prefix)},
            )
            return [_load(row[0]) for row in result.fetchall()]

    # =========================================================================
    # Counters
    # =========================================================================

    async def next_sequence(self, name: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    INSERT INTO kv_sequences (name, value) VALUES (:name, 1)
                    ON CONFLICT (name) DO UPDATE SET value = kv_sequences.value + 1
                    RETURNING value
                """),
                {"name": name},
            )
            value = result.scalar()
            await session.commit()
            return int(value)

    # =========================================================================
    # Sorted Indexes
    # =========================================================================

    async def index_add(self, index: str, member: str, score: float) -> None:
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO kv_index (index_name, member, score)
                    VALUES (:index, :member, :score)
                    ON CONFLICT (index_name, member) DO UPDATE SET score = EXCLUDED.score
                """),
                {"index": index, "member": member, "score": float(score)},
            )
            await session.commit()

    async def index_range(
        self,
        index: str,
        min_score: float,
        max_score: float,
    ) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT member FROM kv_index
                    WHERE index_name = :index AND score BETWEEN :min AND :max
                    ORDER BY score, member
                """),
                {"index": index, "min": float(min_score), "max": float(max_score)},
            )
            return [row[0] for row in result.fetchall()]

    async def index_tail(self, index: str, count: int) -> list[str]:
        if count <= 0:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT member FROM (
                        SELECT member, score FROM kv_index
                        WHERE index_name = :index
                        ORDER BY score DESC, member DESC
                        LIMIT :count
                    ) AS tail
                    ORDER BY score, member
                """),
                {"index": index, "count": count},
            )
            return [row[0] for row in result.fetchall()]

    async def index_remove_below(self, index: str, score: float) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    DELETE FROM kv_index
                    WHERE index_name = :index AND score < :score
                    RETURNING member
                """),
                {"index": index, "score": float(score)},
            )
            removed = [row[0] for row in result.fetchall()]
            await session.commit()
            return removed
