"""Unit tests for the overlapping character-window chunker."""

import pytest

from app.services.documents.text_chunker import (
    TextChunker,
    detect_language,
    estimate_token_count,
    normalize_whitespace,
)

CONTRACT_TEXT = ("Contract between A and B " + " ".join(["clause"] * 100))[:600]


class TestTextHelpers:

    def test_normalize_whitespace_collapses_runs(self):
        assert normalize_whitespace("  Article 1\n\n\tScope   applies ") == "Article 1 Scope applies"

    def test_normalize_whitespace_handles_none(self):
        assert normalize_whitespace(None) == ""

    def test_detect_language(self):
        assert detect_language("المادة 1") == "ar"
        assert detect_language("Article 1") == "en"
        assert detect_language("12 34 -- 56") is None

    def test_estimate_token_count(self):
        assert estimate_token_count("") == 0
        assert estimate_token_count("abc") == 1
        assert estimate_token_count("a" * 9) == 3


class TestTextChunker:

    def test_empty_text_yields_no_chunks(self):
        assert TextChunker().split("   \n\t ") == []

    def test_hard_cut_without_whitespace(self):
        """600 chars with no spaces: the first window is cut at exactly 400."""
        chunker = TextChunker(chunk_chars=400, overlap_chars=50)
        chunks = chunker.split("a" * 600)

        assert len(chunks) == 2
        first, second = chunks
        assert first.metadata.char_start == 0
        assert first.metadata.char_end == 400
        assert second.metadata.char_start == first.metadata.char_end - 50
        assert second.metadata.char_end == 600
        assert [chunk.chunk_index for chunk in chunks] == [0, 1]

    def test_two_chunks_with_overlap(self):
        """600 chars of words, target 400, overlap 50: second chunk starts at end - 50."""
        chunker = TextChunker(chunk_chars=400, overlap_chars=50)
        chunks = chunker.split(CONTRACT_TEXT)

        assert len(CONTRACT_TEXT) == 600
        assert len(chunks) == 2
        first, second = chunks
        assert first.metadata.char_start == 0
        assert 240 <= first.metadata.char_end <= 400
        assert CONTRACT_TEXT[first.metadata.char_end] == " "
        assert first.content.startswith("Contract between A and B")
        assert second.metadata.char_start == first.metadata.char_end - 50
        assert second.metadata.char_end == 600

    def test_overlap_landing_on_a_space_keeps_window_start(self):
        chunker = TextChunker(chunk_chars=400, overlap_chars=49)
        first, second = chunker.split(CONTRACT_TEXT)

        assert first.metadata.char_end == 395
        assert second.metadata.char_start == 346
        assert CONTRACT_TEXT[346] == " "
        assert second.content == CONTRACT_TEXT[346:600].strip()

    @pytest.mark.parametrize("overlap", [0, 25, 49, 50, 100])
    def test_content_lies_within_window(self, overlap):
        for chunk in TextChunker(chunk_chars=400, overlap_chars=overlap).split(CONTRACT_TEXT):
            window = CONTRACT_TEXT[chunk.metadata.char_start:chunk.metadata.char_end]
            assert chunk.content == window.strip()

    def test_backs_off_to_word_boundary(self):
        words = " ".join(["regulation"] * 80)
        chunker = TextChunker(chunk_chars=400, overlap_chars=0)
        chunks = chunker.split(words)

        first = chunks[0]
        assert not first.content.endswith("regulatio")
        assert first.content.endswith("regulation")
        assert len(first.content) > chunker.min_boundary

    def test_ignores_boundary_below_minimum(self):
        text = "intro " + "x" * 700
        chunker = TextChunker(chunk_chars=400, overlap_chars=0)
        chunks = chunker.split(text)

        assert chunks[0].metadata.char_end == 400

    def test_small_sizes_are_raised_and_overlap_clamped(self):
        chunker = TextChunker(chunk_chars=50, overlap_chars=500)

        assert chunker.chunk_chars == 200
        assert chunker.overlap_chars == 100
        assert chunker.min_boundary == 120

    def test_negative_overlap_is_clamped_to_zero(self):
        assert TextChunker(chunk_chars=400, overlap_chars=-10).overlap_chars == 0

    def test_max_chunks_caps_output(self):
        chunker = TextChunker(chunk_chars=200, overlap_chars=0, max_chunks=3)
        chunks = chunker.split("b" * 5000)

        assert len(chunks) == 3

    @pytest.mark.parametrize("text", ["a" * 1000, " ".join(["word"] * 400)])
    def test_chunks_always_advance(self, text):
        chunks = TextChunker(chunk_chars=200, overlap_chars=100).split(text)
        starts = [chunk.metadata.char_start for chunk in chunks]

        assert starts == sorted(set(starts))
        assert chunks[-1].metadata.char_end == len(normalize_whitespace(text))

    def test_chunk_carries_language_and_tokens(self):
        chunk = TextChunker().split("Article 1 applies to all licensed entities.")[0]

        assert chunk.content_lang == "en"
        assert chunk.token_count == estimate_token_count(chunk.content)
        assert chunk.embedding is None
