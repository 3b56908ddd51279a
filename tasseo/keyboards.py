"""
Inline keyboards for facet selection.

Telegram limits callback_data to 64 bytes, so:
  - the topic keyboard (shown right after a photo upload) refers to the photo
    through a short id held in a 15-minute TTL registry;
  - the retopic keyboard refers to the completed AnalysisRecord by UUID,
    `rt:{facet}:{record_id}`, which always fits.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Optional, Sequence
from uuid import UUID

from . import messages
from .core.ttl_cache import TTLCache
from .models import SINGLE_FACETS, Facet

logger = logging.getLogger(__name__)

RETOPIC_PREFIX = "rt"
TOPIC_PREFIX = "topic"

FILE_ID_TTL_SECONDS = 15 * 60
SHORT_ID_BYTES = 8  # token_urlsafe -> 11 chars

InlineKeyboard = dict[str, Any]


def _button(text: str, data: str) -> dict[str, str]:
    return {"text": text, "callback_data": data}


def _grid(buttons: Sequence[dict[str, str]], per_row: int = 2) -> list[list[dict[str, str]]]:
    return [list(buttons[i : i + per_row]) for i in range(0, len(buttons), per_row)]


# =============================================================================
# RETOPIC
# =============================================================================


def retopic_keyboard(record_id: UUID, remaining: Sequence[str], language: str) -> Optional[InlineKeyboard]:
    """Buttons for the facets not yet read in this session; None when nothing is left."""
    if not remaining:
        return None
    buttons = [
        _button(messages.facet_label(facet, language), f"{RETOPIC_PREFIX}:{facet}:{record_id}")
        for facet in remaining
    ]
    return {"inline_keyboard": _grid(buttons)}


def parse_retopic_callback(data: str) -> Optional[tuple[str, UUID]]:
    parts = (data or "").split(":")
    if len(parts) != 3 or parts[0] != RETOPIC_PREFIX:
        return None
    facet, raw_id = parts[1], parts[2]
    if facet not in {f.value for f in SINGLE_FACETS}:
        return None
    try:
        return facet, UUID(raw_id)
    except ValueError:
        return None


# =============================================================================
# TOPIC (initial selection)
# =============================================================================


class FileIdRegistry:
    """short id -> Telegram file id, expiring after FILE_ID_TTL_SECONDS."""

    def __init__(self, ttl_seconds: float = FILE_ID_TTL_SECONDS, max_entries: int = 10_000) -> None:
        self._cache: TTLCache[str, str] = TTLCache(ttl_seconds, max_entries)

    def store(self, file_id: str) -> str:
        short_id = secrets.token_urlsafe(SHORT_ID_BYTES)
        self._cache.set(short_id, file_id)
        return short_id

    def resolve(self, short_id: str) -> Optional[str]:
        return self._cache.get(short_id)

    def sweep(self) -> int:
        removed = self._cache.sweep()
        if removed:
            logger.debug("file_id_registry_sweep removed=%s remaining=%s", removed, len(self._cache))
        return removed


def topic_keyboard(file_id: str, language: str, registry: FileIdRegistry) -> InlineKeyboard:
    """2x3 grid of single facets plus a bottom row for the pro "all" reading."""
    short_id = registry.store(file_id)
    buttons = [
        _button(messages.facet_label(facet.value, language), f"{TOPIC_PREFIX}:{facet.value}:{short_id}")
        for facet in SINGLE_FACETS
    ]
    rows = _grid(buttons)
    rows.append(
        [_button(messages.facet_label(Facet.ALL.value, language), f"{TOPIC_PREFIX}:{Facet.ALL.value}:{short_id}")]
    )
    return {"inline_keyboard": rows}


def parse_topic_callback(data: str, registry: FileIdRegistry) -> Optional[tuple[str, str]]:
    """Return (facet, file_id), or None if malformed or the short id expired."""
    parts = (data or "").split(":")
    if len(parts) != 3 or parts[0] != TOPIC_PREFIX:
        return None
    facet, short_id = parts[1], parts[2]
    if facet not in {f.value for f in Facet}:
        return None
    file_id = registry.resolve(short_id)
    if file_id is None:
        return None
    return facet, file_id
