"""
Lexical search over entry text: BM25 blended with recency.

Used when no embedding is available for a query, and for tag and
emotion lookups that need no vectors at all.

Query text is sanitized to ASCII letters, digits, whitespace and quotes.
Each remaining term (or double-quoted phrase) becomes a quoted FTS5
string and the terms are OR-ed together, so user input can never form
FTS5 operators or column filters.

FTS5 finds the candidates; BM25 itself is computed here from the index
statistics (``documents_fts_vocab``) so that k1 and b are honoured.
Raw scores follow the SQLite convention: negative, more negative is a
stronger match.
"""

import logging
import math
import re
from collections import Counter
from typing import Optional, Sequence

from .database import Database
from .errors import EmptyQuery, SearchFailure
from .scoring import (
    DEFAULT_DECAY_DAYS,
    emotion_score,
    hybrid_score,
    normalize_bm25,
    recency,
    validate_boost,
)
from .types import EmotionLabel, EntryMatch, now_ts

logger = logging.getLogger(__name__)

DEFAULT_K1 = 1.5
DEFAULT_B = 0.75

# Candidates fetched per requested result, before recency re-ranking
OVERFETCH = 2

_DISALLOWED_RE = re.compile(r"[^a-zA-Z0-9\s\"']")
_TERM_RE = re.compile(r'"([^"]*)"|(\S+)')
_SEARCHABLE_RE = re.compile(r"[A-Za-z0-9]")

# Approximates the unicode61 tokenizer: runs of letters and digits, case-folded
_TOKEN_RE = re.compile(r"[^\W_]+")

# FTS5 clamps IDF to a small positive value for very common terms
_MIN_IDF = 1e-6


def tokenize(text: str) -> list[str]:
    return [t.lower() for t in _TOKEN_RE.findall(text)]


def sanitize_query(query: str) -> str:
    """Drop every character FTS5 could read as syntax."""
    return _DISALLOWED_RE.sub("", query).strip()


def query_terms(query: str) -> list[str]:
    """
    Split a query into searchable terms.

    Double-quoted spans stay together as phrases. Terms without a
    letter or digit are dropped.
    """
    terms = []
    for match in _TERM_RE.finditer(sanitize_query(query)):
        phrase, word = match.groups()
        term = " ".join(phrase.split()) if phrase is not None else word.replace('"', "")
        if _SEARCHABLE_RE.search(term):
            terms.append(term)
    return terms


def compile_query(query: str) -> str:
    """
    Build an FTS5 MATCH expression: quoted terms joined with OR.

    Raises:
        EmptyQuery: Nothing searchable remains after sanitization
    """
    terms = query_terms(query)
    if not terms:
        raise EmptyQuery(query)
    return " OR ".join(f'"{term}"' for term in terms)


class LexicalSearch:
    """
    BM25 search over the documents full-text index.

    Args:
        db: Shared Database (schema already migrated)
        k1: Term frequency saturation
        b: Document length normalization
    """

    def __init__(self, db: Database, k1: float = DEFAULT_K1, b: float = DEFAULT_B):
        self._db = db
        self.k1 = k1
        self.b = b

    def _bm25(
        self,
        query_tokens: list[str],
        candidates: list[tuple[str, str]],
        doc_freq: dict[str, int],
        total_docs: int,
        avg_len: float,
    ) -> dict[str, float]:
        """Raw (negative) BM25 per candidate id."""
        scores = {}
        for doc_id, text in candidates:
            tokens = tokenize(text)
            tf = Counter(tokens)
            length_norm = 1.0 - self.b + self.b * (len(tokens) / avg_len if avg_len else 0.0)
            score = 0.0
            for token in query_tokens:
                freq = tf.get(token, 0)
                if not freq:
                    continue
                n = doc_freq.get(token, 0)
                idf = max(math.log((total_docs - n + 0.5) / (n + 0.5)), _MIN_IDF)
                score += idf * freq * (self.k1 + 1.0) / (freq + self.k1 * length_norm)
            scores[doc_id] = -score
        return scores

    def search(
        self,
        query: str,
        k: int = 5,
        recency_boost: float = 0.3,
        *,
        now: Optional[float] = None,
        decay_days: float = DEFAULT_DECAY_DAYS,
    ) -> list[EntryMatch]:
        """
        Full-text search blended with recency.

        Returns:
            Up to k EntryMatch(entry_id, score), best first. An empty or
            unsearchable query returns [] without touching the index.

        Raises:
            SearchFailure: The full-text query failed
        """
        validate_boost(recency_boost)
        if k <= 0:
            return []
        try:
            expression = compile_query(query)
        except EmptyQuery:
            logger.debug("Empty lexical query: %r", query)
            return []

        # Phrases are scored by their individual tokens
        query_tokens = list(dict.fromkeys(
            token for term in query_terms(query) for token in tokenize(term)
        ))

        with self._db.reading(SearchFailure) as conn:
            rows = conn.execute("""
                SELECT d.id, d.text, d.timestamp
                FROM documents_fts f
                JOIN documents d ON d.rowid = f.rowid
                WHERE documents_fts MATCH ?
            """, (expression,)).fetchall()
            if not rows:
                return []

            total_docs = conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            total_tokens = conn.execute(
                "SELECT COALESCE(SUM(cnt), 0) FROM documents_fts_vocab"
            ).fetchone()[0]
            placeholders = ",".join("?" * len(query_tokens))
            doc_freq = {
                row["term"]: row["doc"]
                for row in conn.execute(
                    f"SELECT term, doc FROM documents_fts_vocab WHERE term IN ({placeholders})",
                    query_tokens,
                )
            }

        avg_len = total_tokens / total_docs if total_docs else 0.0
        raw = self._bm25(
            query_tokens,
            [(row["id"], row["text"]) for row in rows],
            doc_freq, total_docs, avg_len,
        )
        timestamps = {row["id"]: row["timestamp"] for row in rows}

        # Strongest matches first, then re-rank the over-fetched window
        ranked = sorted(raw, key=lambda doc_id: (raw[doc_id], doc_id))
        candidates = ranked[:k * OVERFETCH]

        if now is None:
            now = now_ts()
        matches = [
            EntryMatch(
                doc_id,
                hybrid_score(
                    normalize_bm25(raw[doc_id]),
                    recency(timestamps[doc_id], now, decay_days),
                    recency_boost,
                ),
            )
            for doc_id in candidates
        ]
        matches.sort(key=lambda m: (-m.score, m.entry_id))
        logger.debug(
            "Lexical search %r: %d matches, %d candidates", expression, len(rows), len(candidates)
        )
        return matches[:k]

    def search_by_tags(
        self,
        tags: Sequence[str],
        k: int = 5,
        *,
        exact: bool = False,
        now: Optional[float] = None,
        decay_days: float = DEFAULT_DECAY_DAYS,
    ) -> list[EntryMatch]:
        """
        Entries carrying any of the tags, scored by recency only.

        By default a tag matches as a substring ("work" finds "homework");
        with exact=True only whole tags match.
        """
        tags = [t.strip() for t in tags if t.strip()]
        if not tags or k <= 0:
            return []

        if exact:
            column = "(',' || tags || ',')"
            patterns = [f"%,{_escape_like(t)},%" for t in tags]
        else:
            column = "tags"
            patterns = [f"%{_escape_like(t)}%" for t in tags]
        conditions = " OR ".join(f"{column} LIKE ? ESCAPE '\\'" for _ in tags)

        with self._db.reading(SearchFailure) as conn:
            rows = conn.execute(f"""
                SELECT id, timestamp FROM documents
                WHERE {conditions}
                ORDER BY timestamp DESC, id ASC
                LIMIT ?
            """, (*patterns, k)).fetchall()

        if now is None:
            now = now_ts()
        return [
            EntryMatch(row["id"], recency(row["timestamp"], now, decay_days))
            for row in rows
        ]

    def search_by_emotion(
        self,
        label: EmotionLabel | str,
        k: int = 5,
        *,
        now: Optional[float] = None,
        decay_days: float = DEFAULT_DECAY_DAYS,
    ) -> list[EntryMatch]:
        """Entries with an emotion label, scored 0.7 * confidence + 0.3 * recency."""
        label = EmotionLabel(label)
        if k <= 0:
            return []

        with self._db.reading(SearchFailure) as conn:
            rows = conn.execute("""
                SELECT id, timestamp, emotion_confidence FROM documents
                WHERE emotion_label = ?
                ORDER BY timestamp DESC, id ASC
                LIMIT ?
            """, (label.value, k * OVERFETCH)).fetchall()

        if now is None:
            now = now_ts()
        matches = [
            EntryMatch(
                row["id"],
                emotion_score(
                    row["emotion_confidence"],
                    recency(row["timestamp"], now, decay_days),
                ),
            )
            for row in rows
        ]
        matches.sort(key=lambda m: (-m.score, m.entry_id))
        return matches[:k]


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
