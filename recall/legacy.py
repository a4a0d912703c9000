"""
Adapter for the deprecated entry-level embedding API.

Before chunking, each entry had exactly one embedding. Callers of that
API now read and write the entry's first chunk (``{entry}_chunk-0``);
after migration those rows hold the old per-entry vectors.
"""

import warnings
from typing import Optional, Sequence

from .chunking import estimate_tokens
from .document_store import DocumentStore
from .errors import StorageFailure
from .types import Chunk, chunk_id_for
from .vector_store import VectorStore


class LegacyEmbeddingIndex:
    """
    Entry-level embeddings mapped onto chunk 0.

    Deprecated: use VectorStore with Chunker output instead.
    """

    def __init__(self, vector_store: VectorStore, document_store: DocumentStore):
        warnings.warn(
            "LegacyEmbeddingIndex is deprecated; store chunk embeddings with VectorStore",
            DeprecationWarning,
            stacklevel=2,
        )
        self._vectors = vector_store
        self._documents = document_store

    def store_embedding(self, entry_id: str, vector: Sequence[float]) -> None:
        """
        Store a whole-entry vector as the entry's chunk 0.

        Raises:
            InvalidDimension: Vector length differs from the store dimension
            StorageFailure: The entry does not exist
        """
        doc = self._documents.get(entry_id)
        if doc is None:
            raise StorageFailure(f"no document {entry_id!r}")
        chunk = Chunk.from_document(
            doc, 0, doc.text, estimate_tokens(doc.text),
            start_time=0.0 if doc.duration is not None else None,
            end_time=doc.duration,
        )
        self._vectors.put(chunk, vector)

    def fetch_embedding(self, entry_id: str) -> Optional[list[float]]:
        return self._vectors.get(chunk_id_for(entry_id, 0))

    def delete_embedding(self, entry_id: str) -> bool:
        return self._vectors.delete(chunk_id_for(entry_id, 0))

    def find_similar(
        self,
        query: Sequence[float],
        k: int = 5,
        recency_boost: float = 0.3,
    ) -> list[tuple[str, float]]:
        """Similarity search returning (entry_id, score) pairs."""
        return [
            (match.parent_id, match.score)
            for match in self._vectors.search(query, k=k, recency_boost=recency_boost)
        ]
