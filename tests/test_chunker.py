"""Unit tests for document chunking."""

from app.services.chunker import TextChunk, chunk_text


def _sentences(count: int) -> str:
    return ("Drive documents are split into overlapping chunks. " * count).strip()


class TestChunkText:
    """Test cases for chunk_text."""

    def test_blank_input_yields_no_chunks(self):
        assert chunk_text("") == []
        assert chunk_text("   \n\n \t ") == []

    def test_short_text_is_one_trimmed_chunk(self):
        chunks = chunk_text("  \n Meeting notes for Monday.\n\nAction items follow.  \n")

        assert chunks == [TextChunk(index=0, text="Meeting notes for Monday.\n\nAction items follow.")]

    def test_five_thousand_chars_with_two_breaks_gives_two_chunks(self, five_thousand_char_text):
        assert 4900 <= len(five_thousand_char_text) <= 5100

        chunks = chunk_text(five_thousand_char_text)

        assert len(chunks) == 2
        assert [c.index for c in chunks] == [0, 1]

    def test_next_chunk_starts_with_overlap_from_previous(self, five_thousand_char_text):
        first, second = chunk_text(five_thousand_char_text)

        overlap = second.text.split("\n\n")[0]
        assert 0 < len(overlap) <= 400
        assert first.text.endswith(overlap)
        # Overlap is trimmed to a sentence start
        assert overlap.startswith("The quick")

    def test_chunking_is_deterministic(self):
        text = "\n\n".join(_sentences(n) for n in (10, 40, 25, 70, 5, 90))

        assert chunk_text(text) == chunk_text(text)

    def test_indices_are_contiguous_from_zero(self):
        text = "\n\n".join(_sentences(n) for n in (30, 60, 15, 80, 45, 20, 55))

        chunks = chunk_text(text)

        assert len(chunks) > 2
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_oversized_paragraph_is_split_by_sentences(self):
        text = _sentences(200)  # one ~10k char paragraph

        chunks = chunk_text(text)

        assert len(chunks) >= 4
        assert all(len(c.text) <= 3000 for c in chunks)
        assert all(c.text.endswith(".") for c in chunks)

    def test_run_on_text_without_punctuation_is_hard_cut(self):
        text = "x" * 7000

        chunks = chunk_text(text)

        assert [len(c.text) for c in chunks] == [3000, 3000, 1000]
        assert "".join(c.text for c in chunks) == text

    def test_text_without_final_terminator_is_kept(self):
        text = _sentences(100) + " and a trailing fragment without a period"

        chunks = chunk_text(text)

        assert chunks[-1].text.endswith("a trailing fragment without a period")

    def test_paragraphs_landing_exactly_on_target_stay_together(self):
        first = "a" * 50
        second = "b" * 50

        chunks = chunk_text(f"{first}\n\n{second}", target_size=100, overlap=10)

        assert len(chunks) == 1
        assert chunks[0].text == f"{first}\n\n{second}"

    def test_exceeding_target_starts_a_new_chunk(self):
        first = "a" * 50
        second = "b" * 51

        chunks = chunk_text(f"{first}\n\n{second}", target_size=100, overlap=0)

        assert [c.text.strip() for c in chunks] == [first, second]
