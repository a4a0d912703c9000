"""Embedding providers."""

from .embeddings import SentenceTransformerEmbedding, create_embedding_provider

__all__ = ["SentenceTransformerEmbedding", "create_embedding_provider"]
