"""Overlapping character-window chunking for document retrieval.

This module splits normalized document text into overlapping chunks that are
the unit of embedding and retrieval.
"""

import math
import re
from typing import List, Optional

from app.schemas.documents import ChunkInput, ChunkMetadata
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_ARABIC_RE = re.compile(r"[\u0600-\u06ff]")
_LATIN_RE = re.compile(r"[a-zA-Z]")

MIN_CHUNK_CHARS = 200
MIN_BOUNDARY_FRACTION = 0.6


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def detect_language(text: str) -> Optional[str]:
    """Best-effort script detection: ``ar`` for Arabic, ``en`` for Latin letters."""
    if _ARABIC_RE.search(text):
        return "ar"
    if _LATIN_RE.search(text):
        return "en"
    return None


def estimate_token_count(text: str) -> int:
    """Heuristic token estimate of four characters per token."""
    stripped = text.strip()
    if not stripped:
        return 0
    return max(1, math.ceil(len(stripped) / 4))


class TextChunker:
    """Character-window chunker with word-boundary back-off.

    Windows of ``chunk_chars`` characters are cut at the last space before
    the window end, unless that would shrink the chunk below 60% of the
    target. Consecutive windows overlap by ``overlap_chars``.
    """

    def __init__(self, chunk_chars: int = 1200, overlap_chars: int = 200, max_chunks: int = 200):
        """Initialize the chunker.

        Args:
            chunk_chars: Target chunk length; values below 200 are raised to 200
            overlap_chars: Overlap between consecutive chunks, clamped to
                [0, chunk_chars // 2]
            max_chunks: Maximum number of chunks produced for one text
        """
        self.chunk_chars = max(MIN_CHUNK_CHARS, chunk_chars)
        self.overlap_chars = max(0, min(overlap_chars, self.chunk_chars // 2))
        self.max_chunks = max(1, max_chunks)
        self.min_boundary = math.floor(self.chunk_chars * MIN_BOUNDARY_FRACTION)

    def split(self, text: str) -> List[ChunkInput]:
        """Split text into overlapping chunks.

        Args:
            text: Raw document text

        Returns:
            Chunks in document order. ``char_start`` and ``char_end`` are the
            window bounds in the normalized text; the window may begin on the
            space left by the overlap, which ``content`` does not carry.
        """
        normalized = normalize_whitespace(text)
        if not normalized:
            return []

        chunks: List[ChunkInput] = []
        text_length = len(normalized)
        start = 0
        reached_end = False

        while start < text_length and len(chunks) < self.max_chunks:
            target_end = min(text_length, start + self.chunk_chars)
            end = target_end

            if target_end < text_length:
                boundary = normalized.rfind(" ", 0, target_end + 1)
                if boundary > start + self.min_boundary:
                    end = boundary

            window = normalized[start:end]
            content = window.strip()
            if not content:
                break

            chunks.append(
                ChunkInput(
                    chunk_index=len(chunks),
                    content=content,
                    content_lang=detect_language(content),
                    token_count=estimate_token_count(content),
                    metadata=ChunkMetadata(char_start=start, char_end=end),
                )
            )

            if end >= text_length:
                reached_end = True
                break

            start = max(start + 1, end - self.overlap_chars)

        if chunks and not reached_end:
            LOGGER.warning(
                f"Chunk limit reached; text truncated at {self.max_chunks} chunks",
                extra={"text_length": text_length}
            )

        return chunks
