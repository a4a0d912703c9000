"""
Core API for chunk-aware recall.

- add(): store entry → chunk → embed chunks concurrently → store vectors
- find(): embed query → chunk similarity search, lexical fallback
- get() / delete() / tag(): entry management
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from .chunking import Chunker
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .database import Database
from .document_store import DocumentStore
from .errors import InvalidDimension
from .lexical import LexicalSearch
from .migrations import get_schema_version
from .pending_embeddings import MAX_EMBED_ATTEMPTS, PendingEmbeddingQueue
from .protocol import EmbeddingProvider
from .types import (
    Chunk,
    ChunkMatch,
    Document,
    EmotionLabel,
    EntryMatch,
    SearchHit,
)
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

EMBED_WORKERS = 4


@dataclass
class IngestResult:
    """Outcome of add(): how many chunks were embedded now or queued."""
    id: str
    chunks: int
    embedded: int = 0
    queued: int = 0
    errors: list[str] = field(default_factory=list)


class Recall:
    """
    Journal recall store: entries, chunk embeddings and hybrid search.

    Example:
        rc = Recall()
        rc.add(Document(id="entry-1", text="..."))
        hits = rc.find("trouble sleeping before the exam")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        config: Optional[StoreConfig] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
    ) -> None:
        """
        Open or create a store.

        Args:
            store_path: Store directory. Defaults to RECALL_STORE_PATH or ~/.recall
            config: Pre-loaded config (skips reading recall.toml)
            embedding_provider: Injected provider; otherwise created from
                the [embedding] config section on first use
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).resolve() if store_path is not None else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        self._embedding_provider = embedding_provider
        if embedding_provider is not None:
            self._check_provider(embedding_provider)

        search = self._config.search
        self._db = Database(self._config.db_path)
        self._documents = DocumentStore(self._db)
        self._vectors = VectorStore(self._db, self._config.embedding_dimension)
        self._lexical = LexicalSearch(self._db, k1=search.bm25_k1, b=search.bm25_b)
        self._chunker = Chunker.from_config(self._config.chunking)
        self._pending = PendingEmbeddingQueue(self._config.pending_path)

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -------------------------------------------------------------------------
    # Embedding provider
    # -------------------------------------------------------------------------

    def _check_provider(self, provider: EmbeddingProvider) -> None:
        if provider.dimension != self._config.embedding_dimension:
            raise InvalidDimension(self._config.embedding_dimension, provider.dimension)

    def _get_embedding_provider(self) -> Optional[EmbeddingProvider]:
        """The configured provider, created on first use. None if not configured."""
        if self._embedding_provider is None and self._config.embedding is not None:
            from .providers import create_embedding_provider
            provider = create_embedding_provider(
                self._config.embedding, self._config.embedding_dimension
            )
            self._check_provider(provider)
            self._embedding_provider = provider
        return self._embedding_provider

    # -------------------------------------------------------------------------
    # Write operations
    # -------------------------------------------------------------------------

    def add(self, doc: Document, *, defer: bool = False) -> IngestResult:
        """
        Store an entry and embed its chunks.

        Re-adding an id replaces the entry's text and chunks. Chunks whose
        embedding fails are queued for process_pending(); with defer=True
        every chunk is queued without embedding.
        """
        self._documents.add(doc)
        self._vectors.delete_for_parent(doc.id)
        self._pending.discard_parent(doc.id)

        chunks = self._chunker.chunk(doc)
        result = IngestResult(id=doc.id, chunks=len(chunks))
        embeddable = [c for c in chunks if c.text.strip()]

        if self._config.embedding is None and self._embedding_provider is None:
            logger.info("Added %s (%d chunks, lexical only)", doc.id, len(chunks))
            return result

        if defer:
            for chunk in embeddable:
                self._pending.enqueue(chunk)
            result.queued = len(embeddable)
            logger.info("Added %s, %d chunks queued for embedding", doc.id, result.queued)
            return result

        try:
            provider = self._get_embedding_provider()
        except Exception as e:
            logger.warning("Embedding provider unavailable, queueing %s: %s", doc.id, e)
            for chunk in embeddable:
                self._pending.enqueue(chunk, error=str(e))
            result.queued = len(embeddable)
            result.errors.append(f"{type(e).__name__}: {e}")
            return result

        self._embed_chunks(provider, embeddable, result)
        logger.info(
            "Added %s: %d chunks, %d embedded, %d queued",
            doc.id, result.chunks, result.embedded, result.queued,
        )
        return result

    def _embed_chunks(
        self, provider: EmbeddingProvider, chunks: list[Chunk], result: IngestResult,
    ) -> None:
        """Embed chunks concurrently, storing each vector as it completes."""
        if not chunks:
            return
        with ThreadPoolExecutor(max_workers=min(EMBED_WORKERS, len(chunks))) as pool:
            futures = {pool.submit(provider.embed, chunk.text): chunk for chunk in chunks}
            for future in as_completed(futures):
                chunk = futures[future]
                try:
                    self._vectors.put(chunk, future.result())
                    result.embedded += 1
                except Exception as e:
                    error = f"{type(e).__name__}: {e}"
                    logger.warning("Embedding %s failed, queued for retry: %s", chunk.id, error)
                    self._pending.enqueue(chunk, error=error)
                    result.queued += 1
                    result.errors.append(f"{chunk.id}: {error}")

    def tag(self, id: str, tags: Sequence[str]) -> Optional[Document]:
        """Replace an entry's tags. Returns the updated entry, or None if missing."""
        if not self._documents.update_tags(id, tags):
            return None
        return self._documents.get(id)

    def delete(self, id: str) -> bool:
        """Delete an entry with its chunk embeddings and queued work."""
        self._pending.discard_parent(id)
        deleted = self._documents.delete(id)
        if deleted:
            logger.info("Deleted %s", id)
        return deleted

    # -------------------------------------------------------------------------
    # Query operations
    # -------------------------------------------------------------------------

    def _embed_query(self, query: str) -> Optional[list[float]]:
        if not query.strip():
            return None
        try:
            provider = self._get_embedding_provider()
            if provider is None:
                return None
            return provider.embed(query)
        except Exception as e:
            logger.warning("Query embedding failed, using lexical search: %s", e)
            return None

    def find(
        self,
        query: str,
        k: Optional[int] = None,
        *,
        recency_boost: Optional[float] = None,
    ) -> list[SearchHit]:
        """
        Find entries relevant to a query.

        Uses chunk similarity search when an embedding provider is
        available; falls back to lexical search when there is none, the
        query can't be embedded, or no embedded chunk matches.
        """
        search = self._config.search
        k = search.k if k is None else k
        boost = search.recency_boost if recency_boost is None else recency_boost

        vector = self._embed_query(query)
        if vector is not None:
            matches = self.find_similar(vector, k, recency_boost=boost)
            if matches:
                return [
                    SearchHit(m.parent_id, m.score, m.chunk_id, "vector") for m in matches
                ]
            logger.info("No vector matches for %r, using lexical search", query)

        return [
            SearchHit(m.entry_id, m.score, None, "lexical")
            for m in self.search_text(query, k, recency_boost=boost)
        ]

    def find_similar(
        self,
        vector: Sequence[float],
        k: Optional[int] = None,
        *,
        chunk_k: Optional[int] = None,
        recency_boost: Optional[float] = None,
    ) -> list[ChunkMatch]:
        """Similarity search with a precomputed query vector."""
        search = self._config.search
        return self._vectors.search(
            vector,
            k=search.k if k is None else k,
            chunk_k=search.chunk_k if chunk_k is None else chunk_k,
            recency_boost=search.recency_boost if recency_boost is None else recency_boost,
            decay_days=search.recency_decay_days,
        )

    def search_text(
        self,
        query: str,
        k: Optional[int] = None,
        *,
        recency_boost: Optional[float] = None,
    ) -> list[EntryMatch]:
        """BM25 search blended with recency."""
        search = self._config.search
        return self._lexical.search(
            query,
            k=search.k if k is None else k,
            recency_boost=search.recency_boost if recency_boost is None else recency_boost,
            decay_days=search.recency_decay_days,
        )

    def search_by_tags(
        self, tags: Sequence[str], k: Optional[int] = None, *, exact: bool = False,
    ) -> list[EntryMatch]:
        search = self._config.search
        return self._lexical.search_by_tags(
            tags, k=search.k if k is None else k, exact=exact,
            decay_days=search.recency_decay_days,
        )

    def search_by_emotion(
        self, label: EmotionLabel | str, k: Optional[int] = None,
    ) -> list[EntryMatch]:
        search = self._config.search
        return self._lexical.search_by_emotion(
            label, k=search.k if k is None else k,
            decay_days=search.recency_decay_days,
        )

    def get(self, id: str) -> Optional[Document]:
        return self._documents.get(id)

    def get_many(self, ids: list[str]) -> dict[str, Document]:
        return self._documents.get_many(ids)

    def exists(self, id: str) -> bool:
        return self._documents.exists(id)

    def chunk_ids(self, id: str) -> list[str]:
        """Embedded chunk ids of an entry, in order."""
        return self._vectors.chunk_ids_for_parent(id)

    def list_recent(self, limit: int = 10) -> list[Document]:
        return self._documents.list_recent(limit)

    def list_tags(self) -> list[str]:
        return self._documents.list_tags()

    def count(self) -> int:
        return self._documents.count()

    # -------------------------------------------------------------------------
    # Pending embeddings
    # -------------------------------------------------------------------------

    def process_pending(self, limit: int = 10) -> dict:
        """
        Embed queued chunks.

        Items that have been tried MAX_EMBED_ATTEMPTS times move to the
        dead letter list instead.

        Returns:
            Dict with: processed, failed, abandoned (ints), errors (list)
        """
        result = {"processed": 0, "failed": 0, "abandoned": 0, "errors": []}
        provider = self._get_embedding_provider()
        if provider is None:
            result["errors"].append("no embedding provider configured")
            return result

        for item in self._pending.dequeue(limit=limit):
            if item.attempts > MAX_EMBED_ATTEMPTS:
                self._pending.abandon(item.id, error=item.last_error)
                result["abandoned"] += 1
                continue

            # Entry deleted or re-added since the chunk was queued
            if not self._documents.exists(item.chunk.parent_id):
                self._pending.complete(item.id)
                continue

            try:
                logger.info("Embedding %s (attempt %d)", item.id, item.attempts)
                self._vectors.put(item.chunk, provider.embed(item.chunk.text))
                self._pending.complete(item.id)
                result["processed"] += 1
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                self._pending.fail(item.id, error=error)
                result["failed"] += 1
                result["errors"].append(f"{item.id}: {error}")

        return result

    def pending_count(self) -> int:
        return self._pending.count()

    def pending_stats(self) -> dict:
        return self._pending.stats()

    def list_failed(self) -> list[dict]:
        return self._pending.list_failed()

    def retry_failed(self) -> int:
        return self._pending.retry_failed()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def stats(self) -> dict:
        with self._db.reading() as conn:
            schema_version = get_schema_version(conn)
        return {
            "store_path": str(self._store_path),
            "schema_version": schema_version,
            "documents": self._documents.count(),
            "embeddings": self._vectors.count(),
            "dimension": self._vectors.dimension,
            "embedding_provider": self._config.embedding.name if self._config.embedding else None,
            "pending": self._pending.count(),
        }

    def close(self) -> None:
        """Close databases and detach the ops log."""
        self._pending.close()
        self._db.close()
        if self._ops_log_handler is not None:
            logging.getLogger("recall").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
