"""
Sentence-aware chunking of journal entries.

Long entries are split at sentence boundaries so that every chunk stays
under the embedding model's token budget. Sentences are packed greedily;
a single sentence longer than the budget is split by words.

Token counts are estimated from whitespace word counts, so the same text
always yields the same chunks.
"""

import logging
import re
from typing import Callable

from .types import Chunk, Document

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS_PER_CHUNK = 400
DEFAULT_WORDS_PER_TOKEN = 0.75

# Terminal punctuation followed by optional closing quotes/brackets.
# Latin-script terminators need trailing whitespace; CJK full-width
# terminators end a sentence on their own.
_TERMINATOR_RE = re.compile(
    r'[.!?…]+["\'\)\]”’»]*(?=\s|$)'
    r'|[。！？]+[」』”）]*'
)

_PARAGRAPH_RE = re.compile(r'\n\s*\n')

# Lowercase, without the trailing period
_ABBREVIATIONS = frozenset({
    "mr", "mrs", "ms", "dr", "prof", "sr", "jr", "st", "mt", "vs", "etc",
    "e.g", "i.e", "cf", "approx", "dept", "est", "fig", "inc", "ltd", "co",
    "no", "vol", "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep",
    "sept", "oct", "nov", "dec", "a.m", "p.m",
})


def word_count(text: str) -> int:
    """Count whitespace-separated words."""
    return len(text.split())


def estimate_tokens(text: str, words_per_token: float = DEFAULT_WORDS_PER_TOKEN) -> int:
    """Rough token estimate: word count / words_per_token."""
    return int(word_count(text) / words_per_token)


def _is_abbreviation(paragraph: str, match: re.Match) -> bool:
    """True if a lone period ends an abbreviation or an initial."""
    if match.group(0) != ".":
        return False
    preceding = paragraph[:match.start()].rsplit(None, 1)
    if not preceding:
        return False
    word = preceding[-1].lstrip("(\"'“‘").lower()
    if word in _ABBREVIATIONS:
        return True
    # Single-letter initials: "J. R. R. Tolkien"
    return len(word) == 1 and word.isalpha()


def _continues_lowercase(paragraph: str, end: int) -> bool:
    """True if the next word starts lowercase (not a new sentence)."""
    rest = paragraph[end:].lstrip()
    return bool(rest) and rest[0].islower()


def split_sentences(text: str) -> list[str]:
    """
    Split text into sentences.

    Never returns an empty list for non-empty input: when no boundary is
    found the whole text is one sentence.
    """
    sentences: list[str] = []
    for paragraph in _PARAGRAPH_RE.split(text):
        start = 0
        for match in _TERMINATOR_RE.finditer(paragraph):
            if _is_abbreviation(paragraph, match):
                continue
            if match.group(0).startswith(".") and _continues_lowercase(paragraph, match.end()):
                continue
            sentence = paragraph[start:match.end()].strip()
            if sentence:
                sentences.append(sentence)
            start = match.end()
        tail = paragraph[start:].strip()
        if tail:
            sentences.append(tail)

    return sentences if sentences else [text]


class Chunker:
    """
    Splits documents into chunks under a token budget.

    Every chunk inherits the parent's emotion and prosody; per-chunk
    emotion needs per-segment signals that entries don't carry yet.
    """

    def __init__(
        self,
        max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK,
        words_per_token: float = DEFAULT_WORDS_PER_TOKEN,
        sentence_splitter: Callable[[str], list[str]] = split_sentences,
    ):
        if max_tokens_per_chunk <= 0:
            raise ValueError("max_tokens_per_chunk must be positive")
        if words_per_token <= 0:
            raise ValueError("words_per_token must be positive")
        self.max_tokens_per_chunk = max_tokens_per_chunk
        self.words_per_token = words_per_token
        self._split_sentences = sentence_splitter

    @classmethod
    def from_config(cls, config) -> "Chunker":
        """Build from a ChunkingConfig."""
        return cls(
            max_tokens_per_chunk=config.max_tokens_per_chunk,
            words_per_token=config.words_per_token,
        )

    @property
    def max_words_per_chunk(self) -> int:
        return max(1, int(self.max_tokens_per_chunk * self.words_per_token))

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text, self.words_per_token)

    def needs_chunking(self, doc: Document) -> bool:
        """True if the document exceeds the per-chunk token budget."""
        return self.estimate_tokens(doc.text) > self.max_tokens_per_chunk

    def chunk(self, doc: Document) -> list[Chunk]:
        """
        Create chunks for a document.

        Short documents (including empty text) yield exactly one chunk
        holding the text verbatim.
        """
        if not self.needs_chunking(doc):
            if doc.duration is not None:
                start, end = 0.0, doc.duration
            else:
                start, end = None, None
            return [Chunk.from_document(
                doc, 0, doc.text, self.estimate_tokens(doc.text),
                start_time=start, end_time=end,
            )]

        texts = self._pack(self._split_sentences(doc.text))
        logger.debug("Split %s into %d chunks", doc.id, len(texts))
        return [
            Chunk.from_document(doc, index, text, self.estimate_tokens(text))
            for index, text in enumerate(texts)
        ]

    def _pack(self, sentences: list[str]) -> list[str]:
        """Greedily group sentences into chunks of at most max_words words."""
        max_words = self.max_words_per_chunk
        chunks: list[str] = []
        current: list[str] = []
        current_words = 0

        for sentence in sentences:
            count = word_count(sentence)

            if count > max_words:
                if current:
                    chunks.append(" ".join(current))
                    current = []
                    current_words = 0
                chunks.extend(self._split_long_sentence(sentence))
                continue

            if current_words + count > max_words and current:
                chunks.append(" ".join(current))
                current = [sentence]
                current_words = count
            else:
                current.append(sentence)
                current_words += count

        if current:
            chunks.append(" ".join(current))

        return chunks if chunks else [" ".join(sentences)]

    def _split_long_sentence(self, sentence: str) -> list[str]:
        """Split an oversized sentence into fixed-size word groups."""
        words = sentence.split()
        size = self.max_words_per_chunk
        return [" ".join(words[i:i + size]) for i in range(0, len(words), size)]
