"""Text segmentation for content sent to the generation capability.

Three splitters share the ``split_text`` contract:

- ``RecursiveCharacterTextSplitter``: separator-priority splitting with greedy
  merging and a fixed-width fallback. Pure and synchronous.
- ``SemanticTextSplitter``: groups sentences by embedding similarity under a token
  budget. Falls back to the structural splitter whenever embeddings are missing
  or fail.
- ``TokenTextSplitter``: fixed token windows using tiktoken.

All splitters return ``Chunk`` values, drop empty chunks and collapse whitespace.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .exceptions import InvalidConfiguration

if TYPE_CHECKING:
    from .config import SplitterSettings
    from .providers import Embedder

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", ".", ", ", ",", " ", "")
RESEARCH_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", " ")
DEFAULT_SIMILARITY_THRESHOLD = 0.65
DEFAULT_ENCODING = "o200k_base"

_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")
_LINE_ENDING_RE = re.compile(r"\r\n?")


@dataclass(frozen=True, slots=True)
class Chunk:
    """A bounded piece of source text."""

    text: str
    approx_size: int

    @classmethod
    def of(cls, text: str, size: int | None = None) -> Chunk:
        return cls(text=text, approx_size=len(text) if size is None else size)


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _check_sizes(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size < 1:
        raise InvalidConfiguration(f"chunk_size must be >= 1, got {chunk_size}")
    if chunk_overlap < 0:
        raise InvalidConfiguration(f"chunk_overlap must be >= 0, got {chunk_overlap}")
    if chunk_overlap >= chunk_size:
        raise InvalidConfiguration("Cannot have chunk_overlap >= chunk_size")


class RecursiveCharacterTextSplitter:
    """Structural splitter: paragraph, line, sentence, comma and word boundaries, then hard cuts."""

    def __init__(
        self,
        chunk_size: int = 50,
        chunk_overlap: int = 10,
        separators: Sequence[str] | None = None,
    ):
        _check_sizes(chunk_size, chunk_overlap)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators: tuple[str, ...] = tuple(separators) if separators is not None else DEFAULT_SEPARATORS

    def split_text(self, text: str) -> list[Chunk]:
        if not text:
            return []

        pieces: list[str] = []
        self._split(text, 0, pieces)

        chunks = []
        for piece in pieces:
            cleaned = normalize_whitespace(piece)
            if cleaned:
                chunks.append(Chunk.of(cleaned))
        return chunks

    def _hard_cut(self, text: str, out: list[str]) -> None:
        step = max(1, self.chunk_size - self.chunk_overlap)
        for start in range(0, len(text), step):
            piece = text[start : start + self.chunk_size].strip()
            if piece:
                out.append(piece)
            if start + self.chunk_size >= len(text):
                break

    def _split(self, text: str, sep_index: int, out: list[str]) -> None:
        # Parts keep their inner newlines until emitted so line separators still match;
        # sizes are always measured on the whitespace-normalized text.
        trimmed = text.strip()
        if not trimmed:
            return
        if self._size(trimmed) <= self.chunk_size:
            out.append(trimmed)
            return

        if sep_index >= len(self.separators) or self.separators[sep_index] == "":
            self._hard_cut(normalize_whitespace(trimmed), out)
            return

        separator = self.separators[sep_index]
        parts = [p.strip() for p in trimmed.split(separator)]
        parts = [p for p in parts if p]

        buffer = ""
        for part in parts:
            candidate = f"{buffer} {part}" if buffer else part
            if self._size(candidate) <= self.chunk_size:
                buffer = candidate
                continue

            if buffer:
                out.append(buffer)
            if self._size(part) > self.chunk_size:
                self._split(part, sep_index + 1, out)
                buffer = ""
            else:
                buffer = part

        if buffer:
            out.append(buffer)

    @staticmethod
    def _size(text: str) -> int:
        return len(normalize_whitespace(text))


def research_splitter(splitter_settings: SplitterSettings | None = None) -> RecursiveCharacterTextSplitter:
    """Splitter applied to fetched search content before learning extraction."""
    if splitter_settings is None:
        return RecursiveCharacterTextSplitter(chunk_size=140, chunk_overlap=20, separators=RESEARCH_SEPARATORS)
    return RecursiveCharacterTextSplitter(
        chunk_size=splitter_settings.chunk_size,
        chunk_overlap=splitter_settings.chunk_overlap,
        separators=splitter_settings.separators,
    )


def load_token_counter(encoding_name: str = DEFAULT_ENCODING) -> Callable[[str], int]:
    """Return a tiktoken-backed token counter, or a chars/4 estimate if the encoding is unavailable."""
    try:
        import tiktoken

        encoding = tiktoken.get_encoding(encoding_name)
    except Exception as e:
        logger.warning(f"tiktoken encoding '{encoding_name}' unavailable, estimating tokens: {e}")
        return estimate_tokens

    def count(text: str) -> int:
        return len(encoding.encode(text))

    return count


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not len(a) or not len(b) or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def split_sentences(text: str) -> list[str]:
    return [s for s in (normalize_whitespace(p) for p in _SENTENCE_BOUNDARY_RE.split(text)) if s]


class SemanticTextSplitter:
    """Groups consecutive sentences whose embeddings stay close to the running chunk centroid."""

    def __init__(
        self,
        chunk_size: int = 140,
        chunk_overlap: int = 20,
        embedder: Embedder | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        separators: Sequence[str] | None = None,
        token_counter: Callable[[str], int] | None = None,
        encoding_name: str = DEFAULT_ENCODING,
    ):
        _check_sizes(chunk_size, chunk_overlap)
        if not 0.0 <= similarity_threshold <= 1.0:
            raise InvalidConfiguration(f"similarity_threshold must be within [0, 1], got {similarity_threshold}")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold
        self._encoding_name = encoding_name
        self._token_counter = token_counter
        self._fallback = RecursiveCharacterTextSplitter(chunk_size=chunk_size, chunk_overlap=chunk_overlap, separators=separators)

    def count_tokens(self, text: str) -> int:
        if self._token_counter is None:
            self._token_counter = load_token_counter(self._encoding_name)
        try:
            return self._token_counter(text)
        except Exception:
            return estimate_tokens(text)

    async def split_text(self, text: str) -> list[Chunk]:
        if not text or not text.strip():
            return []

        normalized = _LINE_ENDING_RE.sub("\n", text)
        sentences = split_sentences(normalized)
        if len(sentences) <= 1 or self.embedder is None:
            return self._fallback.split_text(normalized)

        try:
            embeddings = [list(await self.embedder.embed(s)) for s in sentences]
        except Exception as e:
            logger.warning(f"Embedding failed, falling back to structural splitting: {e}")
            return self._fallback.split_text(normalized)

        return self._group(sentences, embeddings)

    def _group(self, sentences: list[str], embeddings: list[list[float]]) -> list[Chunk]:
        chunks: list[Chunk] = []
        seed: int | None = None
        i = 0
        while i < len(sentences):
            current = sentences[i]
            centroid = np.asarray(embeddings[i], dtype=float)
            # The overlap sentence only ever prefixes a chunk; it is never a chunk on its own.
            if seed is not None:
                seeded = f"{sentences[seed]} {current}"
                seed_vector = np.asarray(embeddings[seed], dtype=float)
                if self.count_tokens(seeded) <= self.chunk_size and seed_vector.shape == centroid.shape:
                    current = seeded
                    centroid = (seed_vector + centroid) / 2
            seed = None
            i += 1

            topic_break = False
            while i < len(sentences):
                nxt = np.asarray(embeddings[i], dtype=float)
                merged = f"{current} {sentences[i]}"
                if self.count_tokens(merged) > self.chunk_size:
                    break
                if cosine_similarity(centroid, nxt) < self.similarity_threshold:
                    topic_break = True
                    break
                current = merged
                if centroid.shape == nxt.shape:
                    centroid = (centroid + nxt) / 2
                i += 1

            cleaned = normalize_whitespace(current)
            if cleaned:
                chunks.append(Chunk.of(cleaned, self.count_tokens(cleaned)))

            # Overlap carries across a size break only; after a topic break the next chunk starts clean.
            if i < len(sentences) and self.chunk_overlap > 0 and not topic_break:
                seed = i - 1

        return chunks


class TokenTextSplitter:
    """Fixed-size token windows with overlap."""

    def __init__(self, chunk_size: int = 1500, chunk_overlap: int = 200, encoding_name: str = DEFAULT_ENCODING):
        _check_sizes(chunk_size, chunk_overlap)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._encoding_name = encoding_name

    def split_text(self, text: str) -> list[Chunk]:
        if not text:
            return []

        try:
            import tiktoken

            encoding = tiktoken.get_encoding(self._encoding_name)
            ids = encoding.encode(text)
            decode = encoding.decode
        except Exception as e:
            logger.warning(f"tiktoken unavailable, splitting on UTF-8 bytes: {e}")
            ids = list(text.encode("utf-8"))

            def decode(tokens: list[int]) -> str:
                return bytes(tokens).decode("utf-8", errors="ignore")

        step = max(1, self.chunk_size - self.chunk_overlap)
        chunks: list[Chunk] = []
        for start in range(0, len(ids), step):
            window = ids[start : start + self.chunk_size]
            piece = normalize_whitespace(decode(window))
            if piece:
                chunks.append(Chunk.of(piece, len(window)))
            if start + self.chunk_size >= len(ids):
                break
        return chunks


async def semantic_chunking(text: str, splitter: SemanticTextSplitter | RecursiveCharacterTextSplitter | None = None) -> list[Chunk]:
    """Split text without ever raising; on failure the whole text is one chunk."""
    effective = splitter or SemanticTextSplitter()
    try:
        result = effective.split_text(text)
        if not isinstance(result, list):
            result = await result
        return result
    except Exception as e:
        logger.error(f"Chunking error: {e}")
        return [Chunk.of(text)] if text else []
