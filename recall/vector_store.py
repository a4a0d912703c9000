"""
Chunk embedding store and similarity search.

Vectors are stored as little-endian float32 blobs in ``chunk_embeddings``
next to a denormalized copy of the chunk's text, emotion, prosody and
parent timestamp, so search needs no join.

Search is chunk-level similarity aggregated back to parent entries:

1. Rank all chunks by cosine similarity, keep the top ``chunk_k``
2. Per parent, keep the best-matching chunk
3. Blend that similarity with the parent's recency
4. Sort and truncate to ``k``
"""

import logging
import sqlite3
from typing import Optional, Sequence

import numpy as np

from .database import Database
from .errors import InvalidDimension, SearchFailure, StorageFailure
from .scoring import DEFAULT_DECAY_DAYS, hybrid_score, recency, validate_boost
from .types import EMBEDDING_DIM, Chunk, ChunkMatch, EmbeddingRecord, EmotionLabel, now_ts

logger = logging.getLogger(__name__)

# Little-endian float32
VECTOR_DTYPE = np.dtype("<f4")

DEFAULT_K = 5
DEFAULT_CHUNK_K = 10
DEFAULT_RECENCY_BOOST = 0.3


def encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes, dimension: int) -> np.ndarray:
    """Decode a stored blob, checking its length against the dimension."""
    if len(blob) != dimension * VECTOR_DTYPE.itemsize:
        raise StorageFailure(
            f"corrupt vector: {len(blob)} bytes for dimension {dimension}"
        )
    return np.frombuffer(blob, dtype=VECTOR_DTYPE)


def _unit_rows(matrix: np.ndarray) -> np.ndarray:
    """Normalize each row to unit length; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)


def _row_to_record(row: sqlite3.Row) -> EmbeddingRecord:
    chunk = Chunk(
        parent_id=row["parent_id"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        emotion_label=EmotionLabel(row["emotion_label"]),
        emotion_confidence=row["emotion_confidence"],
        valence=row["emotion_valence"],
        arousal=row["emotion_arousal"],
        token_count=row["token_count"],
        timestamp=row["entry_timestamp"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        avg_pitch=row["avg_pitch"],
        avg_energy=row["avg_energy"],
        avg_rate=row["avg_rate"],
        created_at=row["created_at"],
    )
    vector = decode_vector(row["vector"], row["dimension"])
    return EmbeddingRecord(
        chunk=chunk,
        vector=vector.tolist(),
        dimension=row["dimension"],
        created_at=row["created_at"],
    )


class VectorStore:
    """
    Persistent chunk embeddings with similarity search.

    Args:
        db: Shared Database (schema already migrated)
        dimension: Required length of every stored and query vector
    """

    def __init__(self, db: Database, dimension: int = EMBEDDING_DIM):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._db = db
        self.dimension = dimension

    def _check_dimension(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise InvalidDimension(self.dimension, len(vector))

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def put(self, chunk: Chunk, vector: Sequence[float]) -> None:
        """
        Store or replace the embedding for a chunk.

        The whole record (vector and metadata) is replaced atomically and
        created_at is reset to now.

        Raises:
            InvalidDimension: Vector length differs from the store dimension
            StorageFailure: The write failed
        """
        self._check_dimension(vector)
        blob = encode_vector(vector)
        with self._db.transaction() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO chunk_embeddings (
                    id, parent_id, chunk_index, text, vector, dimension,
                    start_time, end_time,
                    emotion_label, emotion_confidence, emotion_valence, emotion_arousal,
                    avg_pitch, avg_energy, avg_rate,
                    token_count, entry_timestamp, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                chunk.id, chunk.parent_id, chunk.chunk_index, chunk.text,
                blob, self.dimension,
                chunk.start_time, chunk.end_time,
                chunk.emotion_label.value, chunk.emotion_confidence,
                chunk.valence, chunk.arousal,
                chunk.avg_pitch, chunk.avg_energy, chunk.avg_rate,
                chunk.token_count, chunk.timestamp, now_ts(),
            ))
        logger.debug("Stored embedding %s", chunk.id)

    def delete(self, chunk_id: str) -> bool:
        """Delete one chunk embedding. Returns True if it existed."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM chunk_embeddings WHERE id = ?", (chunk_id,)
            )
        return cursor.rowcount > 0

    def delete_for_parent(self, parent_id: str) -> int:
        """Delete every chunk embedding of an entry. Returns the count removed."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM chunk_embeddings WHERE parent_id = ?", (parent_id,)
            )
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, chunk_id: str) -> Optional[list[float]]:
        """The stored vector for a chunk, or None."""
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT vector, dimension FROM chunk_embeddings WHERE id = ?",
                (chunk_id,),
            ).fetchone()
        if row is None:
            return None
        return decode_vector(row["vector"], row["dimension"]).tolist()

    def get_record(self, chunk_id: str) -> Optional[EmbeddingRecord]:
        """The stored vector with its chunk metadata, or None."""
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT * FROM chunk_embeddings WHERE id = ?", (chunk_id,)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def has_embedding(self, chunk_id: str) -> bool:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM chunk_embeddings WHERE id = ?", (chunk_id,)
            ).fetchone()
        return row is not None

    def chunk_ids_for_parent(self, parent_id: str) -> list[str]:
        """Embedded chunk ids of an entry, in chunk order."""
        with self._db.reading() as conn:
            rows = conn.execute("""
                SELECT id FROM chunk_embeddings
                WHERE parent_id = ?
                ORDER BY chunk_index
            """, (parent_id,)).fetchall()
        return [row["id"] for row in rows]

    def count(self) -> int:
        with self._db.reading() as conn:
            return conn.execute("SELECT COUNT(*) FROM chunk_embeddings").fetchone()[0]

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(
        self,
        query: Sequence[float],
        k: int = DEFAULT_K,
        chunk_k: int = DEFAULT_CHUNK_K,
        recency_boost: float = DEFAULT_RECENCY_BOOST,
        *,
        now: Optional[float] = None,
        decay_days: float = DEFAULT_DECAY_DAYS,
    ) -> list[ChunkMatch]:
        """
        Find the entries whose chunks best match a query vector.

        Returns:
            Up to k ChunkMatch(parent_id, score, chunk_id), best first

        Raises:
            InvalidDimension: Query length differs from the store dimension
            SearchFailure: The candidate scan failed
        """
        self._check_dimension(query)
        validate_boost(recency_boost)
        if k <= 0 or chunk_k <= 0:
            return []

        with self._db.reading(SearchFailure) as conn:
            rows = conn.execute("""
                SELECT id, parent_id, vector, dimension, entry_timestamp
                FROM chunk_embeddings
            """).fetchall()
        if not rows:
            return []

        ids, parents, timestamps, vectors = [], [], [], []
        for row in rows:
            if row["dimension"] != self.dimension:
                logger.warning(
                    "Skipping %s: dimension %d, store expects %d",
                    row["id"], row["dimension"], self.dimension,
                )
                continue
            try:
                vector = decode_vector(row["vector"], row["dimension"])
            except StorageFailure as e:
                logger.warning("Skipping %s: %s", row["id"], e)
                continue
            ids.append(row["id"])
            parents.append(row["parent_id"])
            timestamps.append(row["entry_timestamp"])
            vectors.append(vector)
        if not vectors:
            return []

        matrix = _unit_rows(np.vstack(vectors).astype(np.float64))
        q = _unit_rows(np.asarray(query, dtype=np.float64).reshape(1, -1))[0]
        similarities = matrix @ q

        # Stage 1: top chunk_k chunks, ties broken by id
        order = sorted(range(len(ids)), key=lambda i: (-similarities[i], ids[i]))
        candidates = order[:chunk_k]

        # Stage 2: best chunk per parent (first seen is the max)
        best: dict[str, int] = {}
        for i in candidates:
            best.setdefault(parents[i], i)

        # Stage 3: blend with recency of the parent entry
        if now is None:
            now = now_ts()
        matches = [
            ChunkMatch(
                parent_id=parent,
                score=hybrid_score(
                    float(similarities[i]),
                    recency(timestamps[i], now, decay_days),
                    recency_boost,
                ),
                chunk_id=ids[i],
            )
            for parent, i in best.items()
        ]

        # Stage 4
        matches.sort(key=lambda m: (-m.score, m.parent_id))
        logger.debug(
            "Vector search: %d chunks, %d candidates, %d entries",
            len(ids), len(candidates), len(matches),
        )
        return matches[:k]
