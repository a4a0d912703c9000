"""
Chunk-aware hybrid retrieval for journal entries.

Long entries are split into sentence-packed chunks, each chunk is
embedded and stored, and queries are answered by chunk similarity
aggregated back to entries, with a BM25 full-text fallback. Both
search paths blend relevance with recency.

Example:
    from recall import Recall, Document

    with Recall() as rc:
        rc.add(Document(id="entry-1", text="Couldn't sleep before the exam."))
        for hit in rc.find("exam stress"):
            print(hit.entry_id, hit.score)
"""

from .api import IngestResult, Recall
from .chunking import Chunker
from .errors import EmptyQuery, InvalidDimension, RecallError, SearchFailure, StorageFailure
from .types import (
    EMBEDDING_DIM,
    Chunk,
    ChunkMatch,
    Document,
    EmbeddingRecord,
    EmotionLabel,
    EmotionSignal,
    EntryMatch,
    SearchHit,
)

__all__ = [
    "Recall",
    "IngestResult",
    "Chunker",
    "Document",
    "Chunk",
    "EmbeddingRecord",
    "EmotionLabel",
    "EmotionSignal",
    "ChunkMatch",
    "EntryMatch",
    "SearchHit",
    "EMBEDDING_DIM",
    "RecallError",
    "InvalidDimension",
    "StorageFailure",
    "SearchFailure",
    "EmptyQuery",
]
