"""
Data types for chunk-aware retrieval.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple, Optional


# Fixed embedding width for the default model
EMBEDDING_DIM = 462

# Prosody feature keys carried from the emotion signal onto chunks
PITCH_KEY = "pitch_mean"
ENERGY_KEY = "energy_mean"
RATE_KEY = "speaking_rate"


def now_ts() -> float:
    """Current time as epoch seconds.

    All timestamps in recall are UTC epoch seconds stored as REAL.
    """
    return time.time()


def chunk_id_for(parent_id: str, chunk_index: int) -> str:
    """Deterministic chunk identifier: ``{parent_id}_chunk-{index}``."""
    return f"{parent_id}_chunk-{chunk_index}"


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(value)))


class EmotionLabel(str, Enum):
    """Primary emotion category."""
    NEUTRAL = "neutral"
    POSITIVE = "positive"
    ANXIOUS = "anxious"
    SAD = "sad"


@dataclass(frozen=True)
class EmotionSignal:
    """
    Aggregate emotion for a document (text sentiment + prosody).

    Confidence and arousal are clamped to [0, 1], valence to [-1, 1].
    """
    label: EmotionLabel
    confidence: float
    valence: float
    arousal: float
    prosody: dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "label", EmotionLabel(self.label))
        object.__setattr__(self, "confidence", _clamp(self.confidence, 0.0, 1.0))
        object.__setattr__(self, "valence", _clamp(self.valence, -1.0, 1.0))
        object.__setattr__(self, "arousal", _clamp(self.arousal, 0.0, 1.0))

    @classmethod
    def neutral(cls) -> "EmotionSignal":
        return cls(EmotionLabel.NEUTRAL, confidence=0.5, valence=0.0, arousal=0.5)

    @property
    def is_high_confidence(self) -> bool:
        return self.confidence >= 0.7


@dataclass(frozen=True)
class Document:
    """
    A user-authored journal entry.

    Attributes:
        id: Stable identifier
        text: Full entry text (transcribed or typed)
        emotion: Aggregate emotion signal
        timestamp: When the entry was authored (epoch seconds)
        tags: Free-form topic tags
        duration: Audio length in seconds, None for typed entries
    """
    id: str
    text: str
    emotion: EmotionSignal = field(default_factory=EmotionSignal.neutral)
    timestamp: float = field(default_factory=now_ts)
    tags: tuple[str, ...] = ()
    duration: Optional[float] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Document id must not be empty")
        object.__setattr__(self, "tags", tuple(self.tags))


@dataclass(frozen=True)
class Chunk:
    """
    A contiguous text segment of a Document, the unit of embedding.

    Emotion and prosody are copies of the parent's aggregate until
    per-segment emotion is available. ``timestamp`` is the parent's
    authored time (used for recency); ``created_at`` is when the chunk
    was produced.
    """
    parent_id: str
    chunk_index: int
    text: str
    emotion_label: EmotionLabel
    emotion_confidence: float
    valence: float
    arousal: float
    token_count: int
    timestamp: float
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    avg_pitch: Optional[float] = None
    avg_energy: Optional[float] = None
    avg_rate: Optional[float] = None
    created_at: float = field(default_factory=now_ts)

    @property
    def id(self) -> str:
        return chunk_id_for(self.parent_id, self.chunk_index)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    @classmethod
    def from_document(
        cls,
        doc: Document,
        chunk_index: int,
        text: str,
        token_count: int,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
    ) -> "Chunk":
        """Build a chunk that inherits the document's emotion and prosody."""
        prosody = doc.emotion.prosody
        return cls(
            parent_id=doc.id,
            chunk_index=chunk_index,
            text=text,
            emotion_label=doc.emotion.label,
            emotion_confidence=doc.emotion.confidence,
            valence=doc.emotion.valence,
            arousal=doc.emotion.arousal,
            token_count=token_count,
            timestamp=doc.timestamp,
            start_time=start_time,
            end_time=end_time,
            avg_pitch=prosody.get(PITCH_KEY),
            avg_energy=prosody.get(ENERGY_KEY),
            avg_rate=prosody.get(RATE_KEY),
        )

    def to_dict(self) -> dict:
        return {
            "parent_id": self.parent_id,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "emotion_label": self.emotion_label.value,
            "emotion_confidence": self.emotion_confidence,
            "valence": self.valence,
            "arousal": self.arousal,
            "token_count": self.token_count,
            "timestamp": self.timestamp,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "avg_pitch": self.avg_pitch,
            "avg_energy": self.avg_energy,
            "avg_rate": self.avg_rate,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Chunk":
        return cls(**{**data, "emotion_label": EmotionLabel(data["emotion_label"])})


@dataclass(frozen=True)
class EmbeddingRecord:
    """A stored chunk embedding with its denormalized chunk metadata."""
    chunk: Chunk
    vector: list[float]
    dimension: int
    created_at: float

    @property
    def id(self) -> str:
        return self.chunk.id


class ChunkMatch(NamedTuple):
    """Similarity search result: parent entry, blended score, best chunk."""
    parent_id: str
    score: float
    chunk_id: str


class EntryMatch(NamedTuple):
    """Lexical search result: entry and blended score."""
    entry_id: str
    score: float


class SearchHit(NamedTuple):
    """
    A find() result from either search path.

    ``chunk_id`` is the best-matching chunk for vector hits and None for
    lexical hits; ``source`` is "vector" or "lexical".
    """
    entry_id: str
    score: float
    chunk_id: Optional[str] = None
    source: str = "vector"
