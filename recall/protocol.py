"""
Protocol definitions for recall's collaborators and storage seams.

Defines interface contracts at two levels:
- EmbeddingProvider: the external model that turns text into vectors
- ChunkEmbeddingIndex / EntryEmbeddingIndex: the current chunk-level
  index and the deprecated entry-level one kept for older callers
"""

from typing import Optional, Protocol, Sequence, runtime_checkable

from .types import Chunk, ChunkMatch


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider instance must be used for both indexing and
    querying to ensure consistent vectors. Providers may raise on empty
    text; callers never pass it.

    Example implementation:
        class HashEmbedding:
            dimension = 462

            def embed(self, text: str) -> list[float]:
                ...

            def embed_batch(self, texts: list[str]) -> list[list[float]]:
                return [self.embed(t) for t in texts]
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


@runtime_checkable
class ChunkEmbeddingIndex(Protocol):
    """
    Chunk-level embedding storage and search.

    Implemented by VectorStore.
    """

    def put(self, chunk: Chunk, vector: Sequence[float]) -> None: ...

    def get(self, chunk_id: str) -> Optional[list[float]]: ...

    def delete(self, chunk_id: str) -> bool: ...

    def count(self) -> int: ...

    def search(
        self,
        query: Sequence[float],
        k: int = 5,
        chunk_k: int = 10,
        recency_boost: float = 0.3,
    ) -> list[ChunkMatch]: ...


@runtime_checkable
class EntryEmbeddingIndex(Protocol):
    """
    Deprecated entry-level embedding interface (one vector per entry).

    Implemented by LegacyEmbeddingIndex on top of chunk 0.
    """

    def store_embedding(self, entry_id: str, vector: Sequence[float]) -> None: ...

    def fetch_embedding(self, entry_id: str) -> Optional[list[float]]: ...

    def delete_embedding(self, entry_id: str) -> bool: ...

    def find_similar(
        self,
        query: Sequence[float],
        k: int = 5,
        recency_boost: float = 0.3,
    ) -> list[tuple[str, float]]: ...
