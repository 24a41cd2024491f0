"""
PostgreSQL + pgvector retrieval index for feedback embeddings.

The index is optional: without ``postgres_host`` every write is skipped and
every query returns no matches.
"""

import logging
import psycopg2
from psycopg2.extras import Json
from typing import List, Dict, Any, Optional
from src.config.settings import Settings
from src.models.errors import VectorIndexError
from src.models.schemas import VectorMatch

logger = logging.getLogger(__name__)


class VectorIndex:
    """pgvector-backed nearest-neighbour index keyed by feedback id."""

    def __init__(self, config: Settings):
        self.config = config
        self.conn = None

    @property
    def is_configured(self) -> bool:
        return bool(self.config.postgres_host)

    def connect(self) -> None:
        """Establish database connection."""
        try:
            self.conn = psycopg2.connect(
                host=self.config.postgres_host,
                port=self.config.postgres_port,
                database=self.config.postgres_database,
                user=self.config.postgres_username,
                password=self.config.postgres_password,
                sslmode=self.config.postgres_sslmode
            )
        except psycopg2.Error as e:
            raise VectorIndexError(f"Could not connect to vector index: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def initialize_schema(self) -> None:
        """Create the vector table and index if they don't exist."""
        if not self.is_configured:
            return
        self._ensure_connection()

        schema_sql = f"""
        CREATE EXTENSION IF NOT EXISTS vector;

        CREATE TABLE IF NOT EXISTS feedback_vectors (
            id VARCHAR(255) PRIMARY KEY,
            vector vector({int(self.config.embedding_dimension)}),
            metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS feedback_vectors_vector_idx
        ON feedback_vectors USING hnsw (vector vector_cosine_ops);
        """

        self._execute(schema_sql)

    def upsert(self, id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Insert or replace the vector stored for ``id``.

        Args:
            id: Feedback id
            vector: Embedding vector
            metadata: Small JSON-serializable dict returned with query matches
        """
        if not self.is_configured:
            logger.debug(f"Vector index not configured; skipping upsert for {id}")
            return
        self._ensure_connection()

        query = """
            INSERT INTO feedback_vectors (id, vector, metadata, updated_at)
            VALUES (%s, %s::vector, %s, NOW())
            ON CONFLICT (id) DO UPDATE
            SET vector = EXCLUDED.vector,
                metadata = EXCLUDED.metadata,
                updated_at = EXCLUDED.updated_at
        """

        self._execute(query, (id, list(vector), Json(metadata or {})))

    def query(self, vector: List[float], top_k: int = 5) -> List[VectorMatch]:
        """
        Find nearest vectors by cosine distance.

        Args:
            vector: Query embedding vector
            top_k: Maximum number of matches

        Returns:
            Matches ordered most similar first, score = 1 - cosine distance.
            The caller filters out the query record's own id when needed.
        """
        if not self.is_configured:
            return []
        self._ensure_connection()

        query = """
            SELECT id, 1 - (vector <=> %s::vector) AS score, metadata
            FROM feedback_vectors
            ORDER BY vector <=> %s::vector
            LIMIT %s
        """
        query_vector = list(vector)

        try:
            with self.conn.cursor() as cursor:
                cursor.execute(query, (query_vector, query_vector, top_k))
                rows = cursor.fetchall()
        except psycopg2.Error as e:
            self._rollback()
            raise VectorIndexError(f"Vector query failed: {e}") from e

        return [
            VectorMatch(id=row[0], score=float(row[1]), metadata=row[2] or {})
            for row in rows
        ]

    def _ensure_connection(self) -> None:
        if self.conn is None or self.conn.closed:
            self.connect()

    def _rollback(self) -> None:
        """Roll back a failed statement; drop the connection if it is gone."""
        if self.conn is None:
            return
        if self.conn.closed:
            self.conn = None
            return
        try:
            self.conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Vector index rollback failed, reconnecting on next use: {e}")
            self.conn = None

    def _execute(self, sql: str, params: Optional[tuple] = None) -> None:
        try:
            with self.conn.cursor() as cursor:
                cursor.execute(sql, params)
                self.conn.commit()
        except psycopg2.Error as e:
            self._rollback()
            raise VectorIndexError(f"Vector index write failed: {e}") from e
