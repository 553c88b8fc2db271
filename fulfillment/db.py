"""
Async Postgres entity store: one `documents` table (collection, id, JSONB body, version).
Conditional updates lock the row (SELECT ... FOR UPDATE) inside a transaction; optimistic
transactions re-check every read version under row locks on commit.
"""
import json

import asyncpg

from fulfillment.config import settings
from fulfillment.errors import ConcurrentModification, NotFound
from fulfillment.store import EntityStore, Transaction, apply_changes, check_expected, entity_label

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection VARCHAR(64) NOT NULL,
                id VARCHAR(255) NOT NULL,
                body JSONB NOT NULL,
                version INT NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW(),
                PRIMARY KEY (collection, id)
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_collection
            ON documents(collection);
        """)


def _dumps(body: dict) -> str:
    return json.dumps(body, default=str)


class PostgresTransaction(Transaction):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool
        self.read_versions: dict[tuple[str, str], int] = {}
        self.updates: list[tuple[str, str, dict, dict | None]] = []
        self.increments: list[tuple[str, str, str, str, int]] = []

    async def get(self, collection: str, doc_id: str) -> dict | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT body, version FROM documents WHERE collection = $1 AND id = $2;",
                collection,
                doc_id,
            )
        self.read_versions[(collection, doc_id)] = row["version"] if row else 0
        return json.loads(row["body"]) if row else None

    def update(self, collection: str, doc_id: str, fields: dict, append: dict | None = None) -> None:
        self.updates.append((collection, doc_id, fields, append))

    def increment(self, collection: str, doc_id: str, field: str, key: str, delta: int) -> None:
        self.increments.append((collection, doc_id, field, key, delta))


class PostgresEntityStore(EntityStore):
    def __init__(self, pool: asyncpg.Pool, max_attempts: int | None = None):
        super().__init__(max_attempts)
        self._pool = pool

    async def get(self, collection: str, doc_id: str) -> dict | None:
        async with self._pool.acquire() as conn:
            raw = await conn.fetchval(
                "SELECT body FROM documents WHERE collection = $1 AND id = $2;",
                collection,
                doc_id,
            )
        return json.loads(raw) if raw is not None else None

    async def insert(self, collection: str, doc_id: str, body: dict) -> bool:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO documents (collection, id, body, version, updated_at)
                VALUES ($1, $2, $3::jsonb, 1, NOW())
                ON CONFLICT (collection, id) DO NOTHING;
                """,
                collection,
                doc_id,
                _dumps(body),
            )
        return status.endswith(" 1")

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        append: dict | None = None,
        expected: dict | None = None,
    ) -> dict:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT body FROM documents WHERE collection = $1 AND id = $2 FOR UPDATE;",
                    collection,
                    doc_id,
                )
                if row is None:
                    raise NotFound(entity_label(collection), doc_id)
                body = json.loads(row["body"])
                check_expected(collection, doc_id, body, expected)
                body = apply_changes(body, fields, append)
                await conn.execute(
                    """
                    UPDATE documents SET body = $3::jsonb, version = version + 1, updated_at = NOW()
                    WHERE collection = $1 AND id = $2;
                    """,
                    collection,
                    doc_id,
                    _dumps(body),
                )
        return body

    async def _begin(self) -> PostgresTransaction:
        return PostgresTransaction(self._pool)

    async def _commit(self, tx: PostgresTransaction) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for (collection, doc_id), version in sorted(tx.read_versions.items()):
                    current = await conn.fetchval(
                        "SELECT version FROM documents WHERE collection = $1 AND id = $2 FOR UPDATE;",
                        collection,
                        doc_id,
                    )
                    if (current or 0) != version:
                        raise ConcurrentModification(f"{collection}/{doc_id}")

                for collection, doc_id, fields, append in tx.updates:
                    raw = await conn.fetchval(
                        "SELECT body FROM documents WHERE collection = $1 AND id = $2 FOR UPDATE;",
                        collection,
                        doc_id,
                    )
                    if raw is None:
                        raise NotFound(entity_label(collection), doc_id)
                    body = apply_changes(json.loads(raw), fields, append)
                    await conn.execute(
                        """
                        UPDATE documents SET body = $3::jsonb, version = version + 1, updated_at = NOW()
                        WHERE collection = $1 AND id = $2;
                        """,
                        collection,
                        doc_id,
                        _dumps(body),
                    )

                for collection, doc_id, field, key, delta in tx.increments:
                    status = await conn.execute(
                        """
                        UPDATE documents
                        SET body = jsonb_set(
                                body,
                                ARRAY[$3::text, $4::text],
                                to_jsonb(COALESCE((body -> $3 ->> $4)::int, 0) + $5::int),
                                true
                            ),
                            version = version + 1,
                            updated_at = NOW()
                        WHERE collection = $1 AND id = $2;
                        """,
                        collection,
                        doc_id,
                        field,
                        key,
                        delta,
                    )
                    if status.endswith(" 0"):
                        raise NotFound(entity_label(collection), doc_id)
