"""Storage client base: all knowledge SQL shared by the engines.

Engines only provide connection handling, schema DDL, value encoding and
error translation. Statements are rendered through a SqlDialect so the same
query text works with asyncpg ("$1") and aiosqlite ("?").
"""

from abc import abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from shared.clients.ClientInterface import ClientInterface
from shared.clients.storage.FilterCompiler import FilterCompiler
from shared.clients.storage.SqlDialect import QueryParams, SqlDialect
from shared.clients.storage.models.PaginationCursor import PaginationCursor
from shared.exceptions import KnowledgeError, PersistenceError, TransientIOError, ValidationError
from shared.helper.CircuitBreaker import CircuitBreaker
from shared.helper.HelperConfig import HelperConfig
from shared.helper.retry import retry_with_backoff
from shared.models.knowledge import DocumentPage, KnowledgeDocument, KnowledgeFragment, ScoredFragment

T = TypeVar("T")

SUPPORTED_DIMENSIONS = (384, 512, 768, 1024, 1536, 3072)
MAX_PAGE_SIZE = 1000

# a statement and its bind values, executed inside one transaction
Statement = tuple[str, list[Any]]

_DOCUMENT_COLUMNS = "id, agent_id, text, kind, source, created_at, checksum, metadata"
_FRAGMENT_COLUMNS = "k.id, k.document_id, k.agent_id, k.text, k.chunk_index, k.created_at, k.metadata"


class StorageClientInterface(ClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._dialect = self._create_dialect()
        self._filters = FilterCompiler(self._dialect)
        self._dimension: int | None = None

        prefix = self.get_client_type().upper()
        self._retry_max = helper_config.get_number_val(f"{prefix}_RETRY_MAX", default=2)
        self._retry_delay = helper_config.get_number_val(f"{prefix}_RETRY_DELAY", default=0.5)
        self.breaker = CircuitBreaker(
            logger=self.logging,
            name=f"{prefix.lower()}-{self.get_engine_name()}",
            failure_threshold=helper_config.get_number_val(f"{prefix}_FAILURE_THRESHOLD", default=5),
            reset_timeout=helper_config.get_number_val(f"{prefix}_RESET_TIMEOUT", default=60.0),
            half_open_max_attempts=helper_config.get_number_val(f"{prefix}_HALF_OPEN_MAX_ATTEMPTS", default=3),
        )

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "storage"
        """
        return "storage"

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def embedding_column(self) -> str:
        if self._dimension is None:
            raise RuntimeError("Storage not initialised. Call do_initialize() first.")
        return f"dim_{self._dimension}"

    ################ ENGINE HOOKS ##################
    @abstractmethod
    def _create_dialect(self) -> SqlDialect:
        """Return the SQL dialect of the engine."""
        pass

    @abstractmethod
    def _get_schema_statements(self, dimension: int) -> list[str]:
        """Return the idempotent DDL statements creating tables and indexes."""
        pass

    @abstractmethod
    def _encode_vector(self, vector: list[float]) -> Any:
        """Convert an embedding into the bind value of the engine."""
        pass

    @abstractmethod
    def _decode_vector(self, raw: Any) -> list[float] | None:
        """Convert a stored embedding back into a list of floats."""
        pass

    @abstractmethod
    def _encode_metadata(self, metadata: dict) -> Any:
        """Convert a metadata dict into the bind value of the engine."""
        pass

    @abstractmethod
    def _decode_metadata(self, raw: Any) -> dict:
        """Convert a stored metadata value back into a dict."""
        pass

    @abstractmethod
    def _translate_error(self, error: Exception) -> KnowledgeError:
        """Map a driver exception onto the knowledge error taxonomy."""
        pass

    ################ ENGINE PRIMITIVES ##################
    @abstractmethod
    async def _fetch(self, sql: str, params: list[Any]) -> list[dict]:
        """Run a read query and return the rows as dicts."""
        pass

    @abstractmethod
    async def _execute_in_transaction(self, statements: list[Statement]) -> list[int]:
        """Run statements in one transaction and return their affected row counts."""
        pass

    ##########################################
    ############### GUARDING #################
    ##########################################

    async def _guarded(self, context: str, func: Callable[[], Awaitable[T]], write: bool = False) -> T:
        """Run a storage call with retry inside the circuit breaker.

        Transient driver errors are retried with exponential backoff. A write
        that still fails is reported as PersistenceError, a read keeps its
        TransientIOError so callers may try again later.
        """

        async def attempt() -> T:
            try:
                return await func()
            except KnowledgeError:
                raise
            except Exception as e:
                raise self._translate_error(e) from e

        async def with_retry() -> T:
            try:
                return await retry_with_backoff(
                    attempt,
                    self.logging,
                    max_retries=self._retry_max,
                    delay=self._retry_delay,
                    exceptions=(TransientIOError,),
                    context=f"{self.get_engine_name()}.{context}",
                )
            except TransientIOError as e:
                if write:
                    raise PersistenceError(f"{context} failed: {e}") from e
                raise

        return await self.breaker.execute(with_retry, context)

    ##########################################
    ############### ROW MAPPING ##############
    ##########################################

    def _row_to_document(self, row: dict) -> KnowledgeDocument:
        return KnowledgeDocument(
            id=row["id"],
            agent_id=row["agent_id"],
            text=row["text"] or "",
            kind=row["kind"],
            source=row["source"],
            created_at=int(row["created_at"]),
            checksum=row["checksum"],
            metadata=self._decode_metadata(row["metadata"]),
        )

    def _row_to_fragment(self, row: dict) -> KnowledgeFragment:
        return KnowledgeFragment(
            id=row["id"],
            document_id=row["document_id"],
            agent_id=row["agent_id"],
            text=row["text"] or "",
            chunk_index=int(row["chunk_index"]),
            created_at=int(row["created_at"]),
            embedding=self._decode_vector(row["embedding"]) if "embedding" in row else None,
            metadata=self._decode_metadata(row["metadata"]),
        )

    def _document_metadata(self, doc: KnowledgeDocument) -> dict:
        metadata = dict(doc.metadata)
        for key, value in (("source", doc.source), ("kind", doc.kind), ("checksum", doc.checksum)):
            if value is not None:
                metadata[key] = value
        metadata["isMain"] = True
        metadata["isChunk"] = False
        return metadata

    def _fragment_metadata(self, fragment: KnowledgeFragment) -> dict:
        metadata = dict(fragment.metadata)
        metadata["isMain"] = False
        metadata["isChunk"] = True
        metadata["documentId"] = fragment.document_id
        metadata["chunkIndex"] = fragment.chunk_index
        return metadata

    ##########################################
    ########### STATEMENT BUILDERS ###########
    ##########################################

    def _insert_document_statement(self, doc: KnowledgeDocument) -> Statement:
        p = self._dialect.new_params()
        metadata = self._document_metadata(doc)
        values = [
            p.add(doc.id), p.add(doc.agent_id), p.add(doc.text), p.add(doc.kind), p.add(doc.source),
            p.add(doc.created_at), p.add(True), p.add(doc.checksum), p.add(self._encode_metadata(metadata)),
        ]
        sql = (
            "INSERT INTO knowledge (id, agent_id, text, kind, source, created_at, is_main, checksum, metadata) "
            f"VALUES ({', '.join(values)})"
        )
        return sql, p.values

    def _insert_fragment_statements(self, fragment: KnowledgeFragment) -> list[Statement]:
        if fragment.embedding is None or len(fragment.embedding) != self._dimension:
            got = None if fragment.embedding is None else len(fragment.embedding)
            raise ValidationError(f"Fragment {fragment.id} has embedding length {got}, expected {self._dimension}.")
        metadata = self._fragment_metadata(fragment)

        p = self._dialect.new_params()
        values = [
            p.add(fragment.id), p.add(fragment.agent_id), p.add(fragment.text),
            p.add(metadata.get("kind")), p.add(metadata.get("source")), p.add(fragment.created_at),
            p.add(False), p.add(metadata.get("checksum")), p.add(fragment.document_id),
            p.add(fragment.chunk_index), p.add(self._encode_metadata(metadata)),
        ]
        knowledge_sql = (
            "INSERT INTO knowledge (id, agent_id, text, kind, source, created_at, is_main, checksum, "
            f"document_id, chunk_index, metadata) VALUES ({', '.join(values)})"
        )
        knowledge_params = p.values

        p = self._dialect.new_params()
        values = [p.add(fragment.id), p.add(fragment.id), p.add(fragment.created_at), p.add(self._encode_vector(fragment.embedding))]
        embedding_sql = (
            f"INSERT INTO knowledge_embeddings (id, knowledge_id, created_at, {self.embedding_column}) "
            f"VALUES ({', '.join(values)})"
        )
        return [(knowledge_sql, knowledge_params), (embedding_sql, p.values)]

    def _delete_document_statements(self, document_id: str, agent_id: str | None = None) -> list[Statement]:
        statements: list[Statement] = []

        def owned(p: QueryParams) -> str:
            return f" AND agent_id = {p.add(agent_id)}" if agent_id is not None else ""

        p = self._dialect.new_params()
        a, b = p.add(document_id), p.add(document_id)
        statements.append((
            f"DELETE FROM knowledge_embeddings WHERE knowledge_id IN "
            f"(SELECT id FROM knowledge WHERE (id = {a} OR document_id = {b}){owned(p)})",
            p.values,
        ))

        p = self._dialect.new_params()
        statements.append((f"DELETE FROM knowledge WHERE document_id = {p.add(document_id)}{owned(p)}", p.values))

        # last statement: its row count tells whether the document existed
        p = self._dialect.new_params()
        statements.append((f"DELETE FROM knowledge WHERE id = {p.add(document_id)}{owned(p)}", p.values))
        return statements

    def _cursor_condition(self, cursor: str | None, sort: str, params: QueryParams, prefix: str = "") -> list[str]:
        if not cursor:
            return []
        position = PaginationCursor.decode(cursor)
        op = "<" if sort == "desc" else ">"
        a = params.add(position.created_at)
        b = params.add(position.created_at)
        c = params.add(position.id)
        return [f"({prefix}created_at {op} {a} OR ({prefix}created_at = {b} AND {prefix}id {op} {c}))"]

    ##########################################
    ############### OPERATIONS ###############
    ##########################################

    async def do_initialize(self, dimension: int) -> None:
        """Create the schema and select the embedding column for the given dimension.

        Args:
            dimension (int): Length of the embedding vectors.

        Raises:
            ValidationError: If the dimension has no embedding column.
        """
        if dimension not in SUPPORTED_DIMENSIONS:
            raise ValidationError(
                f"Unsupported embedding dimension {dimension}. Supported: {', '.join(map(str, SUPPORTED_DIMENSIONS))}."
            )
        statements = [(sql, []) for sql in self._get_schema_statements(dimension)]
        await self._guarded("initialize", lambda: self._execute_in_transaction(statements), write=True)
        self._dimension = dimension
        self.logging.info("Storage '%s' initialised with embedding column dim_%d.", self.get_engine_name(), dimension)

    async def do_create_document(self, doc: KnowledgeDocument) -> None:
        """Insert the main row of a document.

        Raises:
            ConflictError: If a row with the same id already exists.
            PersistenceError: If the backend rejects the write.
        """
        statement = self._insert_document_statement(doc)
        await self._guarded("create_document", lambda: self._execute_in_transaction([statement]), write=True)

    async def do_create_fragment(self, fragment: KnowledgeFragment) -> None:
        """Insert a fragment row and its embedding in one transaction.

        Raises:
            ValidationError: If the embedding length does not match the dimension.
            ConflictError: If the fragment id already exists.
            PersistenceError: If the backend rejects the write.
        """
        statements = self._insert_fragment_statements(fragment)
        await self._guarded("create_fragment", lambda: self._execute_in_transaction(statements), write=True)

    async def do_replace_document(self, doc: KnowledgeDocument, fragments: list[KnowledgeFragment]) -> None:
        """Replace a document and all of its fragments in one transaction.

        Args:
            doc (KnowledgeDocument): The new main row.
            fragments (list[KnowledgeFragment]): The new fragments, each with an embedding.

        Raises:
            ValidationError: If any embedding length does not match the dimension.
            ConflictError: If the id belongs to a document of another agent.
            PersistenceError: If the backend rejects the write.
        """
        # rows of other agents are never deleted, their id makes the insert conflict instead
        statements = self._delete_document_statements(doc.id, agent_id=doc.agent_id)
        statements.append(self._insert_document_statement(doc))
        for fragment in fragments:
            statements.extend(self._insert_fragment_statements(fragment))
        await self._guarded("replace_document", lambda: self._execute_in_transaction(statements), write=True)

    async def do_delete_document(self, document_id: str, agent_id: str | None = None) -> bool:
        """Delete a document with its fragments and embeddings. Idempotent.

        Args:
            document_id (str): Id of the document.
            agent_id (str | None): Only delete the document if it belongs to this agent.

        Returns:
            bool: True if the document existed.
        """
        statements = self._delete_document_statements(document_id, agent_id=agent_id)
        counts = await self._guarded("delete_document", lambda: self._execute_in_transaction(statements), write=True)
        return counts[-1] > 0

    async def do_clear_agent(self, agent_id: str) -> int:
        """Delete all knowledge of an agent.

        Returns:
            int: Number of documents removed.
        """
        statements: list[Statement] = []
        p = self._dialect.new_params()
        statements.append((
            f"DELETE FROM knowledge_embeddings WHERE knowledge_id IN "
            f"(SELECT id FROM knowledge WHERE agent_id = {p.add(agent_id)})",
            p.values,
        ))
        p = self._dialect.new_params()
        a, b = p.add(agent_id), p.add(False)
        statements.append((f"DELETE FROM knowledge WHERE agent_id = {a} AND is_main = {b}", p.values))
        p = self._dialect.new_params()
        statements.append((f"DELETE FROM knowledge WHERE agent_id = {p.add(agent_id)}", p.values))
        counts = await self._guarded("clear_agent", lambda: self._execute_in_transaction(statements), write=True)
        self.logging.info("Cleared %d documents of agent %s.", counts[-1], agent_id)
        return counts[-1]

    async def do_get_document(self, document_id: str, agent_id: str | None = None) -> KnowledgeDocument | None:
        """Fetch the main row of a document.

        Returns:
            KnowledgeDocument | None: The document, or None if it does not exist.
        """
        p = self._dialect.new_params()
        conditions = [f"id = {p.add(document_id)}", f"is_main = {p.add(True)}"]
        if agent_id is not None:
            conditions.append(f"agent_id = {p.add(agent_id)}")
        sql = f"SELECT {_DOCUMENT_COLUMNS} FROM knowledge WHERE {' AND '.join(conditions)}"
        rows = await self._guarded("get_document", lambda: self._fetch(sql, p.values))
        return self._row_to_document(rows[0]) if rows else None

    async def do_list_fragments(
        self, document_id: str, with_embeddings: bool = False, agent_id: str | None = None
    ) -> list[KnowledgeFragment]:
        """List the fragments of a document ordered by chunk index, optionally only those of one agent."""
        p = self._dialect.new_params()
        columns = _FRAGMENT_COLUMNS
        join = ""
        if with_embeddings and self._dimension is not None:
            columns += f", e.{self.embedding_column} AS embedding"
            join = " LEFT JOIN knowledge_embeddings e ON e.knowledge_id = k.id"
        conditions = [f"k.document_id = {p.add(document_id)}"]
        if agent_id is not None:
            conditions.append(f"k.agent_id = {p.add(agent_id)}")
        sql = (
            f"SELECT {columns} FROM knowledge k{join} "
            f"WHERE {' AND '.join(conditions)} ORDER BY k.chunk_index ASC"
        )
        rows = await self._guarded("list_fragments", lambda: self._fetch(sql, p.values))
        return [self._row_to_fragment(row) for row in rows]

    async def do_list_documents(
        self,
        agent_id: str,
        limit: int = 20,
        cursor: str | None = None,
        sort: str = "desc",
        filters: dict | None = None,
        include_fragments: bool = False,
    ) -> DocumentPage:
        """List the documents of an agent with keyset pagination.

        Args:
            agent_id (str): Owning agent.
            limit (int): Page size, 1..1000.
            cursor (str | None): Cursor returned as next_cursor by the previous page.
            sort (str): "desc" (newest first) or "asc".
            filters (dict | None): Metadata filters.
            include_fragments (bool): Attach the fragments (without embeddings) to each document.

        Returns:
            DocumentPage: The page, next_cursor is set only when more rows exist.

        Raises:
            ValidationError: On a bad limit, sort, cursor or filter.
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit!r}.")
        if sort not in ("asc", "desc"):
            raise ValidationError(f"sort must be 'asc' or 'desc', got {sort!r}.")

        p = self._dialect.new_params()
        conditions = [f"agent_id = {p.add(agent_id)}", f"is_main = {p.add(True)}"]
        conditions.extend(self._cursor_condition(cursor, sort, p))
        conditions.extend(self._filters.compile(filters, p, column="metadata"))
        direction = sort.upper()
        sql = (
            f"SELECT {_DOCUMENT_COLUMNS} FROM knowledge WHERE {' AND '.join(conditions)} "
            f"ORDER BY created_at {direction}, id {direction} LIMIT {p.add(limit + 1)}"
        )
        rows = await self._guarded("list_documents", lambda: self._fetch(sql, p.values))

        has_more = len(rows) > limit
        items = [self._row_to_document(row) for row in rows[:limit]]
        next_cursor = None
        if has_more and items:
            last = items[-1]
            next_cursor = PaginationCursor(created_at=last.created_at, id=last.id).encode()

        if include_fragments and items:
            fragments = await self._list_fragments_of(items)
            for item in items:
                item.fragments = fragments.get(item.id, [])

        return DocumentPage(items=items, next_cursor=next_cursor)

    async def _list_fragments_of(self, documents: list[KnowledgeDocument]) -> dict[str, list[KnowledgeFragment]]:
        p = self._dialect.new_params()
        placeholders = [p.add(doc.id) for doc in documents]
        sql = (
            f"SELECT {_FRAGMENT_COLUMNS} FROM knowledge k WHERE k.document_id IN ({', '.join(placeholders)}) "
            "ORDER BY k.document_id, k.chunk_index ASC"
        )
        rows = await self._guarded("list_fragments", lambda: self._fetch(sql, p.values))
        grouped: dict[str, list[KnowledgeFragment]] = {}
        for row in rows:
            fragment = self._row_to_fragment(row)
            grouped.setdefault(fragment.document_id, []).append(fragment)
        return grouped

    async def do_search_similar(
        self,
        embedding: list[float],
        agent_id: str,
        limit: int = 5,
        threshold: float = 0.5,
        filters: dict | None = None,
    ) -> list[ScoredFragment]:
        """Find the fragments most similar to an embedding.

        Similarity is ``1 - cosine distance``. Only fragments with similarity
        strictly above the threshold are returned, best first, ties by id.

        Raises:
            ValidationError: If the embedding length does not match the dimension or a filter is malformed.
        """
        if len(embedding) != self._dimension:
            raise ValidationError(f"Query embedding has length {len(embedding)}, expected {self._dimension}.")

        # placeholders are numbered in textual order
        p = self._dialect.new_params()
        distance = self._dialect.distance_expr(f"e.{self.embedding_column}", p.add(self._encode_vector(embedding)))
        conditions = [
            f"k.agent_id = {p.add(agent_id)}",
            f"k.is_main = {p.add(False)}",
            f"e.{self.embedding_column} IS NOT NULL",
        ]
        conditions.extend(self._filters.compile(filters, p, column="k.metadata"))
        sql = (
            f"SELECT * FROM (SELECT {_FRAGMENT_COLUMNS}, 1 - {distance} AS similarity "
            f"FROM knowledge k JOIN knowledge_embeddings e ON e.knowledge_id = k.id "
            f"WHERE {' AND '.join(conditions)}) AS scored "
            f"WHERE {self._dialect.valid_number('similarity')} AND similarity > {p.add(float(threshold))} "
            f"ORDER BY similarity DESC, id ASC LIMIT {p.add(limit)}"
        )
        rows = await self._guarded("search_similar", lambda: self._fetch(sql, p.values))
        return [
            ScoredFragment(
                id=row["id"],
                document_id=row["document_id"],
                agent_id=row["agent_id"],
                text=row["text"] or "",
                chunk_index=int(row["chunk_index"]),
                created_at=int(row["created_at"]),
                metadata=self._decode_metadata(row["metadata"]),
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]

    async def do_healthcheck(self) -> bool:
        """Run a trivial query against the backend."""
        await self._guarded("healthcheck", lambda: self._fetch("SELECT 1 AS ok", []))
        return True
