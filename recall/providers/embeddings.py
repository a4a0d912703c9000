"""
Embedding provider implementations.

The sentence-transformers model is imported lazily so that stores
without an [embedding] section (lexical search only) never load it.
"""

import logging
from typing import Any, Callable

import numpy as np

from ..config import ProviderConfig
from ..protocol import EmbeddingProvider

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedding:
    """
    Embeddings from a local sentence-transformers model.

    Vectors are truncated to ``dimension`` (Matryoshka-style models keep
    most of their quality in the leading components) and re-normalized.

    Args:
        model: Model name or path
        dimension: Output width; defaults to the model's native width
        device: Torch device, or None for automatic selection
    """

    def __init__(self, model: str = "all-mpnet-base-v2", dimension: int | None = None,
                 device: str | None = None):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise RuntimeError(
                "sentence-transformers is not installed; "
                "install recall-engine[local] or remove [embedding] from recall.toml"
            ) from e
        logger.info("Loading embedding model %s", model)
        self.model_name = model
        self._model = SentenceTransformer(model, device=device)
        native = self._model.get_sentence_embedding_dimension()
        self._dimension = dimension or native
        if self._dimension > native:
            raise ValueError(
                f"Model {model} produces {native}-dimensional vectors, "
                f"cannot provide {self._dimension}"
            )

    @property
    def dimension(self) -> int:
        return self._dimension

    def _finish(self, matrix: np.ndarray) -> list[list[float]]:
        matrix = np.atleast_2d(matrix)[:, :self._dimension].astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        matrix = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
        return matrix.tolist()

    def embed(self, text: str) -> list[float]:
        if not text.strip():
            raise ValueError("Cannot embed empty text")
        return self._finish(self._model.encode([text]))[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if any(not t.strip() for t in texts):
            raise ValueError("Cannot embed empty text")
        if not texts:
            return []
        return self._finish(self._model.encode(texts))


_PROVIDERS: dict[str, Callable[..., EmbeddingProvider]] = {
    "sentence-transformers": SentenceTransformerEmbedding,
}


def create_embedding_provider(config: ProviderConfig, dimension: int | None = None) -> EmbeddingProvider:
    """
    Instantiate the provider named in an [embedding] config section.

    Args:
        config: Provider name and parameters
        dimension: Store dimension, used when the section doesn't set one

    Raises:
        ValueError: Unknown provider name
    """
    factory = _PROVIDERS.get(config.name)
    if factory is None:
        known = ", ".join(sorted(_PROVIDERS))
        raise ValueError(f"Unknown embedding provider: {config.name} (available: {known})")
    params: dict[str, Any] = dict(config.params)
    if dimension is not None:
        params.setdefault("dimension", dimension)
    return factory(**params)
