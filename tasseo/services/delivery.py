"""
Tasseo Engine - Delivery Splitter

Chunks an interpretation into transport-sized messages and delivers them in
order. Boundary preference, strongest first:

    paragraph  "\\n\\n"          only if past 50% of the limit
    line       "\\n"            only if past 50%
    sentence   ". " "! " "? "   only if past 30%
    word       " "              only if past 30%
    hard split at the limit

A cut is never placed inside an HTML entity (`&amp;`) or tag (`<b>`). Only
the boundary whitespace is dropped, so joining the chunks back (with the
boundaries) gives the original text. Lengths are UTF-16 code units, the
unit the Bot API counts message length in.
"""

from __future__ import annotations

import logging
import re

from tasseo.core.errors import DeliveryContractError
from tasseo.interfaces import Transport

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 4000

_SENTENCE_END = re.compile(r"[.!?] ")
_ENTITY = re.compile(r"&(?:#\d{1,7}|#x[0-9a-fA-F]{1,6}|[a-zA-Z][a-zA-Z0-9]{1,31});")
_ENTITY_SPAN = 40


def _protect_markup(text: str, cut: int) -> int:
    """Move `cut` left so it does not land inside a tag or an entity."""
    lt = text.rfind("<", 0, cut)
    if lt != -1 and text.rfind(">", lt, cut) == -1 and text.find(">", cut) != -1:
        cut = lt
    for match in _ENTITY.finditer(text, max(0, cut - _ENTITY_SPAN), cut + _ENTITY_SPAN):
        if match.start() < cut < match.end():
            cut = match.start()
            break
    return cut


def _find_cut(text: str, limit: int) -> tuple[int, int]:
    """Return (cut, skip): the chunk is text[:cut], then `skip` boundary chars are dropped."""
    paragraph = text.rfind("\n\n", 0, limit)
    if paragraph >= limit * 0.5:
        return paragraph, 2

    line = text.rfind("\n", 0, limit)
    if line >= limit * 0.5:
        return line, 1

    sentence = -1
    for match in _SENTENCE_END.finditer(text, 0, limit + 1):
        sentence = match.start() + 1
    if sentence >= limit * 0.3:
        return sentence, 1

    word = text.rfind(" ", 0, limit + 1)
    if word >= limit * 0.3:
        return word, 1

    return limit, 0


def utf16_len(text: str) -> int:
    """Length as the Bot API counts it: UTF-16 code units."""
    return len(text.encode("utf-16-le")) // 2


def _fit(text: str, limit: int) -> int:
    """Number of leading characters of `text` that fit in `limit` UTF-16 units."""
    units = 0
    for index, char in enumerate(text):
        units += 2 if ord(char) > 0xFFFF else 1
        if units > limit:
            return index
    return len(text)


def split_message(text: str, limit: int = DEFAULT_LIMIT) -> list[str]:
    """
    Split `text` into chunks of at most `limit` UTF-16 code units.

    Returns [] for empty input and a single chunk when the text already fits.
    A character outside the BMP counts as two units and is never cut in half.
    """
    if limit < 1:
        raise ValueError("limit must be positive")
    if not text:
        return []

    chunks: list[str] = []
    rest = text
    while utf16_len(rest) > limit:
        window = max(_fit(rest, limit), 1)
        cut, skip = _find_cut(rest, window)
        safe = _protect_markup(rest, cut)
        if safe != cut:
            # boundary moved off the whitespace; nothing is dropped
            cut, skip = (safe, 0) if safe > 0 else (window, 0)
        chunks.append(rest[:cut])
        rest = rest[cut + skip :]
    if rest:
        chunks.append(rest)
    return chunks


async def deliver_text(
    transport: Transport,
    chat_id: int,
    placeholder_id: int,
    text: str,
    *,
    limit: int = DEFAULT_LIMIT,
) -> list[int]:
    """
    Deliver `text` in place of the placeholder message.

    One chunk edits the placeholder; several chunks delete it and send each
    chunk as a new message, in order. Returns the ids of the messages that now
    carry the text.
    """
    chunks = split_message(text, limit)
    if not chunks:
        raise DeliveryContractError("split_message returned no chunks")

    if len(chunks) == 1:
        await transport.edit_message_text(chat_id, placeholder_id, chunks[0])
        return [placeholder_id]

    logger.info("delivery_multi_chunk chat_id=%s chunks=%s", chat_id, len(chunks))
    await transport.delete_message(chat_id, placeholder_id)
    sent: list[int] = []
    for chunk in chunks:
        sent.append(await transport.send_message(chat_id, chunk))
    return sent

