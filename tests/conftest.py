"""
Shared pytest fixtures for recall tests.

Provides a deterministic embedding provider so no ML model is loaded,
and store fixtures on a temporary SQLite database.
"""

import hashlib
import time

import pytest

from recall.chunking import estimate_tokens
from recall.database import Database
from recall.document_store import DocumentStore
from recall.lexical import LexicalSearch
from recall.types import Chunk, Document, EmotionLabel, EmotionSignal
from recall.vector_store import VectorStore

DAY = 86400.0


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no ML model loading.
    Set ``fail = True`` to make every call raise.
    """

    dimension = 462
    model_name = "mock-model"

    def __init__(self):
        self.embed_calls = 0
        self.fail = False

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        if not text.strip():
            raise ValueError("Cannot embed empty text")
        h = hashlib.md5(text.encode()).hexdigest()
        embedding = [int(h[i:i+2], 16) / 255.0 for i in range(0, 32, 2)]
        return (embedding * 29)[:self.dimension]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "recall.db")
    yield database
    database.close()


@pytest.fixture
def doc_store(db):
    return DocumentStore(db)


@pytest.fixture
def vector_store(db):
    return VectorStore(db)


@pytest.fixture
def lexical(db):
    return LexicalSearch(db)


@pytest.fixture
def now():
    return time.time()


@pytest.fixture
def make_doc(doc_store, now):
    """Factory: store a document authored ``days_ago`` days before ``now``."""
    def _make(id, text="journal entry", *, days_ago=0.0, label=EmotionLabel.NEUTRAL,
              confidence=0.5, tags=(), duration=None, prosody=None):
        doc = Document(
            id=id,
            text=text,
            emotion=EmotionSignal(label, confidence, 0.0, 0.5, prosody or {}),
            timestamp=now - days_ago * DAY,
            tags=tuple(tags),
            duration=duration,
        )
        doc_store.add(doc)
        return doc
    return _make


@pytest.fixture
def make_chunk():
    """Factory: chunk ``index`` of a document, holding the whole text."""
    def _make(doc, index=0, text=None):
        text = doc.text if text is None else text
        return Chunk.from_document(doc, index, text, estimate_tokens(text))
    return _make
