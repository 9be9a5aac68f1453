import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite
import numpy as np

from shared.clients.storage.SqlDialect import SqlDialect, SqliteDialect
from shared.clients.storage.StorageClientInterface import SUPPORTED_DIMENSIONS, Statement, StorageClientInterface
from shared.exceptions import ConflictError, KnowledgeError, PersistenceError, TransientIOError, ValidationError
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


def cosine_distance(a: bytes | None, b: bytes | None) -> float | None:
    """Cosine distance between two float32 blobs, None when undefined.

    Registered as the SQL function ``knowledge_cosine_distance``.
    """
    if a is None or b is None:
        return None
    va = np.frombuffer(a, dtype=np.float32)
    vb = np.frombuffer(b, dtype=np.float32)
    if va.shape != vb.shape:
        return None
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return None
    return 1.0 - float(np.dot(va, vb)) / norm


class StorageClientSqlite(StorageClientInterface):
    """Embedded SQLite storage on one aiosqlite connection.

    Embeddings are float32 BLOBs, similarity is computed by a Python SQL
    function. All statements are serialised by an asyncio.Lock.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        raw_path = self.get_config_val("PATH", default="knowledge.db", val_type="string")
        self._path = raw_path if raw_path == ":memory:" else str(
            helper_config.get_path_val(self._get_config_key_name("PATH"), default=raw_path)
        )
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Sqlite"

    @property
    def path(self) -> str:
        return self._path

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="PATH", val_type="string", default="knowledge.db"),
        ]

    ################ ENGINE HOOKS ##################
    def _create_dialect(self) -> SqlDialect:
        return SqliteDialect()

    def _get_schema_statements(self, dimension: int) -> list[str]:
        dim_columns = ",\n".join(f"dim_{n} BLOB" for n in SUPPORTED_DIMENSIONS)
        return [
            """
            CREATE TABLE IF NOT EXISTS knowledge (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                kind TEXT,
                source TEXT,
                created_at INTEGER NOT NULL,
                is_main INTEGER NOT NULL DEFAULT 0,
                checksum TEXT,
                document_id TEXT REFERENCES knowledge(id) ON DELETE CASCADE,
                chunk_index INTEGER,
                metadata TEXT NOT NULL DEFAULT '{}'
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS knowledge_embeddings (
                id TEXT PRIMARY KEY,
                knowledge_id TEXT NOT NULL REFERENCES knowledge(id) ON DELETE CASCADE,
                created_at INTEGER NOT NULL,
                {dim_columns}
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_knowledge_listing ON knowledge (agent_id, is_main, created_at, id)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_document ON knowledge (document_id, chunk_index)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_meta_source ON knowledge (CAST(json_extract(metadata, '$.source') AS TEXT))",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_meta_kind ON knowledge (CAST(json_extract(metadata, '$.kind') AS TEXT))",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_embeddings_knowledge ON knowledge_embeddings (knowledge_id)",
        ]

    def _encode_vector(self, vector: list[float]) -> Any:
        return np.asarray(vector, dtype=np.float32).tobytes()

    def _decode_vector(self, raw: Any) -> list[float] | None:
        if raw is None:
            return None
        return np.frombuffer(raw, dtype=np.float32).astype(float).tolist()

    def _encode_metadata(self, metadata: dict) -> Any:
        return json.dumps(metadata)

    def _decode_metadata(self, raw: Any) -> dict:
        if not raw:
            return {}
        return json.loads(raw)

    def _translate_error(self, error: Exception) -> KnowledgeError:
        message = str(error)
        if isinstance(error, sqlite3.IntegrityError):
            if "UNIQUE" in message or "PRIMARY KEY" in message:
                return ConflictError(f"Duplicate id: {message}")
            if "FOREIGN KEY" in message:
                return ValidationError(f"Parent document does not exist: {message}")
            return ValidationError(f"Constraint violated: {message}")
        if isinstance(error, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
            return TransientIOError(f"SQLite busy: {message}")
        if isinstance(error, (sqlite3.InterfaceError, sqlite3.DataError)):
            return ValidationError(f"Invalid value: {message}")
        return PersistenceError(f"SQLite error: {message}")

    ##########################################
    ############ CORE REQUESTS ###############
    ##########################################

    async def boot(self) -> None:
        """Open the database file and register the cosine distance function."""
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # autocommit mode, transactions are opened explicitly
            self._conn = await aiosqlite.connect(self._path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA foreign_keys = ON")
            await self._conn.execute("PRAGMA busy_timeout = 5000")
            if self._path != ":memory:":
                await self._conn.execute("PRAGMA journal_mode = WAL")
            await self._conn.create_function("knowledge_cosine_distance", 2, cosine_distance, deterministic=True)
        except sqlite3.Error as e:
            raise self._translate_error(e) from e
        self.logging.info("Opened SQLite knowledge store at %s.", self._path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SQLite connection not initialised. Call boot() before making requests.")
        return self._conn

    async def _fetch(self, sql: str, params: list[Any]) -> list[dict]:
        conn = self._require_conn()
        async with self._lock:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _execute_in_transaction(self, statements: list[Statement]) -> list[int]:
        conn = self._require_conn()
        counts: list[int] = []
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                for sql, params in statements:
                    cursor = await conn.execute(sql, params)
                    counts.append(max(cursor.rowcount, 0))
                    await cursor.close()
                await conn.execute("COMMIT")
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
        return counts
