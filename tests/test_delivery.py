"""Tests for the delivery splitter and deliver_text."""

from __future__ import annotations

import pytest

from tasseo.core.errors import DeliveryContractError
from tasseo.services.delivery import deliver_text, split_message, utf16_len
from tests.fakes import RecordingTransport


def rejoin(chunks, text):
    """Walk `text` and confirm each chunk appears in order, separated only by whitespace."""
    pos = 0
    for chunk in chunks:
        idx = text.index(chunk, pos)
        assert text[pos:idx].strip() == ""
        pos = idx + len(chunk)
    assert text[pos:].strip() == ""


class TestSplitMessage:
    def test_empty_input(self):
        assert split_message("") == []

    def test_short_text_is_one_chunk(self):
        assert split_message("hello world", limit=50) == ["hello world"]

    def test_prefers_paragraph_boundary(self):
        text = "a" * 60 + "\n\n" + "b" * 60
        assert split_message(text, limit=100) == ["a" * 60, "b" * 60]

    def test_paragraph_too_early_falls_back_to_line(self):
        text = "a" * 20 + "\n\n" + "b" * 40 + "\n" + "c" * 60
        chunks = split_message(text, limit=100)
        assert chunks[0] == "a" * 20 + "\n\n" + "b" * 40
        assert chunks[1] == "c" * 60

    def test_sentence_boundary(self):
        text = "x" * 40 + ". " + "y" * 80
        chunks = split_message(text, limit=100)
        assert chunks[0] == "x" * 40 + "."
        assert chunks[1] == "y" * 80

    def test_word_boundary(self):
        text = "w" * 50 + " " + "z" * 80
        assert split_message(text, limit=100) == ["w" * 50, "z" * 80]

    def test_hard_split_without_boundaries(self):
        text = "q" * 250
        chunks = split_message(text, limit=100)
        assert chunks == ["q" * 100, "q" * 100, "q" * 50]

    def test_never_splits_inside_entity(self):
        text = "a" * 97 + "&amp;" + "b" * 20
        chunks = split_message(text, limit=100)
        assert all("&am" not in c or "&amp;" in c for c in chunks)
        assert chunks[0] == "a" * 97
        assert chunks[1].startswith("&amp;")

    def test_never_splits_inside_tag(self):
        text = "a" * 98 + "<b>bold</b>"
        chunks = split_message(text, limit=100)
        assert chunks[0] == "a" * 98
        assert chunks[1] == "<b>bold</b>"

    def test_chunks_respect_limit_and_reconstruct(self):
        text = ("Line one of the reading. " * 30 + "\n") * 20
        chunks = split_message(text, limit=400)
        assert all(0 < len(c) <= 400 for c in chunks)
        rejoin(chunks, text)

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            split_message("abc", limit=0)

    def test_emoji_count_as_two_units(self):
        text = ("\U0001F52E" * 200 + " word") * 20
        chunks = split_message(text, limit=4000)
        assert len(chunks) > 1
        assert all(0 < utf16_len(c) <= 4000 for c in chunks)
        rejoin(chunks, text)

    def test_hard_split_keeps_astral_characters_whole(self):
        assert split_message("\U0001F52E" * 5, limit=4) == ["\U0001F52E" * 2, "\U0001F52E" * 2, "\U0001F52E"]
        assert split_message("\U0001F52E" * 3, limit=3) == ["\U0001F52E"] * 3

    def test_utf16_len(self):
        assert utf16_len("abc") == 3
        assert utf16_len("a\U0001F52E") == 3


class TestDeliverText:
    @pytest.mark.asyncio
    async def test_single_chunk_edits_placeholder(self):
        transport = RecordingTransport()

        ids = await deliver_text(transport, 1, 50, "short text")

        assert ids == [50]
        assert transport.methods() == ["edit_message_text"]

    @pytest.mark.asyncio
    async def test_multi_chunk_deletes_placeholder_and_sends_in_order(self):
        transport = RecordingTransport()
        text = "a" * 60 + "\n\n" + "b" * 60

        ids = await deliver_text(transport, 1, 50, text, limit=100)

        assert transport.methods() == ["delete_message", "send_message", "send_message"]
        assert transport.texts("send_message") == ["a" * 60, "b" * 60]
        assert ids == [1001, 1002]

    @pytest.mark.asyncio
    async def test_zero_chunks_is_a_contract_violation(self):
        with pytest.raises(DeliveryContractError):
            await deliver_text(RecordingTransport(), 1, 50, "")
