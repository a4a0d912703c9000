"""
Configuration management for recall stores.

The configuration is stored as a TOML file in the store directory.
It specifies the embedding provider, the chunking budget and the
search defaults.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .types import EMBEDDING_DIM


CONFIG_FILENAME = "recall.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = ".recall"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChunkingConfig:
    """Token budget for chunking."""
    max_tokens_per_chunk: int = 400
    words_per_token: float = 0.75


@dataclass
class SearchConfig:
    """Defaults for similarity and lexical search."""
    k: int = 5
    chunk_k: int = 10
    recency_boost: float = 0.3
    recency_decay_days: float = 30.0
    bm25_k1: float = 1.5
    bm25_b: float = 0.75


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    embedding_dimension: int = EMBEDDING_DIM

    # None means lexical search only
    embedding: Optional[ProviderConfig] = None
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / "recall.db"

    @property
    def pending_path(self) -> Path:
        return self.path / "pending_embeddings.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory from RECALL_STORE_PATH, else ~/.recall."""
    env = os.environ.get("RECALL_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIR


def _section(data: dict, name: str, cls):
    """Build a dataclass from a TOML section, ignoring unknown keys."""
    section = data.get(name, {})
    known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    embedding = None
    if "embedding" in data:
        section = data["embedding"]
        if not section.get("name"):
            raise ValueError("[embedding] section requires a provider name")
        embedding = ProviderConfig(
            name=section["name"],
            params={k: v for k, v in section.items() if k != "name"},
        )

    dimension = int(store.get("embedding_dimension", EMBEDDING_DIM))
    if dimension <= 0:
        raise ValueError(f"embedding_dimension must be positive, got {dimension}")

    chunking = _section(data, "chunking", ChunkingConfig)
    if chunking.max_tokens_per_chunk <= 0 or chunking.words_per_token <= 0:
        raise ValueError("Chunking budget must be positive")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        embedding_dimension=dimension,
        embedding=embedding,
        chunking=chunking,
        search=_section(data, "search", SearchConfig),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
            "embedding_dimension": config.embedding_dimension,
        },
        "chunking": {
            "max_tokens_per_chunk": config.chunking.max_tokens_per_chunk,
            "words_per_token": config.chunking.words_per_token,
        },
        "search": {
            "k": config.search.k,
            "chunk_k": config.search.chunk_k,
            "recency_boost": config.search.recency_boost,
            "recency_decay_days": config.search.recency_decay_days,
            "bm25_k1": config.search.bm25_k1,
            "bm25_b": config.search.bm25_b,
        },
    }
    if config.embedding is not None:
        data["embedding"] = {"name": config.embedding.name, **config.embedding.params}

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
