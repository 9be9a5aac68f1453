import asyncio
import json
from typing import Any

import asyncpg
import numpy as np
from pgvector.asyncpg import register_vector

from shared.clients.storage.SqlDialect import PostgresDialect, SqlDialect
from shared.clients.storage.StorageClientInterface import SUPPORTED_DIMENSIONS, Statement, StorageClientInterface
from shared.exceptions import ConflictError, KnowledgeError, PersistenceError, TransientIOError, ValidationError
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig

# pgvector cannot build an HNSW index above this many dimensions
HNSW_MAX_DIMENSIONS = 2000

_TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class StorageClientPostgres(StorageClientInterface):
    """PostgreSQL storage with pgvector columns, accessed through an asyncpg pool."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._dsn = self.get_config_val("DSN", default=None, val_type="string")
        self._pool_min = self.get_config_val("POOL_MIN", default=1, val_type="number")
        self._pool_max = self.get_config_val("POOL_MAX", default=5, val_type="number")
        self._pool: asyncpg.Pool | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Postgres"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="DSN", val_type="string", default=None),
            EnvConfig(env_key="POOL_MIN", val_type="number", default=1),
            EnvConfig(env_key="POOL_MAX", val_type="number", default=5),
        ]

    ################ ENGINE HOOKS ##################
    def _create_dialect(self) -> SqlDialect:
        return PostgresDialect()

    def _get_schema_statements(self, dimension: int) -> list[str]:
        dim_columns = ",\n".join(f"dim_{n} vector({n})" for n in SUPPORTED_DIMENSIONS)
        statements = [
            """
            CREATE TABLE IF NOT EXISTS knowledge (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                kind TEXT,
                source TEXT,
                created_at BIGINT NOT NULL,
                is_main BOOLEAN NOT NULL DEFAULT FALSE,
                checksum TEXT,
                document_id TEXT REFERENCES knowledge(id) ON DELETE CASCADE,
                chunk_index INTEGER,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS knowledge_embeddings (
                id TEXT PRIMARY KEY,
                knowledge_id TEXT NOT NULL REFERENCES knowledge(id) ON DELETE CASCADE,
                created_at BIGINT NOT NULL,
                {dim_columns}
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_knowledge_listing ON knowledge (agent_id, is_main, created_at DESC, id DESC)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_document ON knowledge (document_id, chunk_index)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_meta_source ON knowledge ((metadata ->> 'source'))",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_meta_kind ON knowledge ((metadata ->> 'kind'))",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_embeddings_knowledge ON knowledge_embeddings (knowledge_id)",
        ]
        if dimension <= HNSW_MAX_DIMENSIONS:
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_knowledge_embeddings_dim_{dimension} "
                f"ON knowledge_embeddings USING hnsw (dim_{dimension} vector_cosine_ops)"
            )
        return statements

    def _encode_vector(self, vector: list[float]) -> Any:
        return np.asarray(vector, dtype=np.float32)

    def _decode_vector(self, raw: Any) -> list[float] | None:
        if raw is None:
            return None
        return [float(v) for v in raw]

    def _encode_metadata(self, metadata: dict) -> Any:
        # the jsonb codec set in _init_connection serialises dicts
        return metadata

    def _decode_metadata(self, raw: Any) -> dict:
        if raw is None:
            return {}
        if isinstance(raw, str):
            return json.loads(raw)
        return dict(raw)

    def _translate_error(self, error: Exception) -> KnowledgeError:
        if isinstance(error, asyncpg.exceptions.UniqueViolationError):
            return ConflictError(f"Duplicate id: {error.detail or error}")
        if isinstance(error, asyncpg.exceptions.ForeignKeyViolationError):
            return ValidationError(f"Parent document does not exist: {error.detail or error}")
        if isinstance(error, asyncpg.exceptions.DataError):
            return ValidationError(f"Invalid value: {error}")
        if isinstance(error, _TRANSIENT_ERRORS):
            return TransientIOError(f"Postgres unavailable: {error}")
        return PersistenceError(f"Postgres error: {error}")

    ##########################################
    ############ CORE REQUESTS ###############
    ##########################################

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        await register_vector(conn)
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def boot(self) -> None:
        """Ensure the vector extension exists and open the connection pool.

        Raises:
            TransientIOError: If the database cannot be reached.
        """
        try:
            # register_vector needs the extension, so create it before the pool initialises connections
            conn = await asyncpg.connect(self._dsn)
            try:
                await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            finally:
                await conn.close()
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=int(self._pool_min),
                max_size=int(self._pool_max),
                init=self._init_connection,
            )
        except Exception as e:
            raise self._translate_error(e) from e
        self.logging.info("Connected to Postgres (pool %d-%d).", int(self._pool_min), int(self._pool_max))

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Postgres pool not initialised. Call boot() before making requests.")
        return self._pool

    async def _fetch(self, sql: str, params: list[Any]) -> list[dict]:
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(sql, *params)
        return [dict(row) for row in rows]

    async def _execute_in_transaction(self, statements: list[Statement]) -> list[int]:
        counts: list[int] = []
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                for sql, params in statements:
                    status = await conn.execute(sql, *params)
                    # status looks like "DELETE 3" or "INSERT 0 1"
                    last = status.split()[-1] if status else ""
                    counts.append(int(last) if last.isdigit() else 0)
        return counts
