"""
Tasseo Engine - Validation Gate

Decides whether a submitted image proceeds to paid interpretation and, when it
does not, which rejection text the user gets.

Policy:
    reject  <=>  not is_valid AND confidence >= threshold

Anything else (valid, or invalid but uncertain) proceeds.

Personalized rejection texts cost a model call, so they are rate limited per
identity per UTC day through two atomic RPCs:

    claim_invalid_slot(p_telegram_user_id, p_limit) -> {claimed: bool, count: int}
        resets the counter on a new UTC day, increments iff count < limit
    release_invalid_slot(p_telegram_user_id) -> int
        gives a claimed slot back when generation failed

No credits are ever touched here.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from tasseo import messages
from tasseo.config import Settings, get_settings
from tasseo.core.retry import RetryPolicy, call_with_retry
from tasseo.interfaces import RejectionWriter
from tasseo.models import RejectionNotice, ValidationResult
from tasseo.supabase_client import execute, get_supabase_client

logger = logging.getLogger(__name__)


def should_reject(result: ValidationResult, threshold: float) -> bool:
    return not result.is_valid and result.confidence >= threshold


class ValidationGate:
    def __init__(
        self,
        writer: RejectionWriter,
        client: Any = None,
        *,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._writer = writer
        self._client = client
        self.threshold = settings.rejection_threshold
        self.daily_limit = settings.max_daily_invalid_responses
        self._retry = retry_policy or RetryPolicy.from_settings(settings)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    def should_reject(self, result: ValidationResult) -> bool:
        return should_reject(result, self.threshold)

    async def rejection_notice(
        self,
        identity: int,
        result: ValidationResult,
        language: str,
        user_name: Optional[str] = None,
    ) -> RejectionNotice:
        """
        Produce the text for a rejected submission.

        A personalized text is generated only after a slot was claimed; if
        generation fails the slot is released and the static fallback is
        returned instead.
        """
        if not await self._claim_slot(identity):
            logger.info("rejection_fallback identity=%s reason=daily_limit", identity)
            return RejectionNotice(messages.invalid_image_fallback(language), personalized=False)

        try:
            text = await call_with_retry(
                self._retry,
                "rejection_writer",
                self._writer.write,
                result.description or result.category,
                language,
                user_name,
            )
        except Exception as exc:
            logger.warning(
                "rejection_generation_failed identity=%s error=%s; releasing slot",
                identity,
                exc,
            )
            await self._release_slot(identity)
            return RejectionNotice(messages.invalid_image_fallback(language), personalized=False)

        if not text or not text.strip():
            await self._release_slot(identity)
            return RejectionNotice(messages.invalid_image_fallback(language), personalized=False)

        logger.info("rejection_personalized identity=%s", identity)
        return RejectionNotice(text.strip(), personalized=True)

    async def _claim_slot(self, identity: int) -> bool:
        try:
            response = await execute(
                self.client.rpc(
                    "claim_invalid_slot",
                    {"p_telegram_user_id": identity, "p_limit": self.daily_limit},
                )
            )
        except Exception as exc:
            logger.warning("invalid_slot_claim_failed identity=%s error=%s", identity, exc)
            return False

        data = response.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            logger.warning("invalid_slot_claim_unexpected identity=%s data=%r", identity, data)
            return False
        claimed = bool(data.get("claimed"))
        logger.debug(
            "invalid_slot_claim identity=%s claimed=%s count=%s limit=%s",
            identity,
            claimed,
            data.get("count"),
            self.daily_limit,
        )
        return claimed

    async def _release_slot(self, identity: int) -> None:
        try:
            await execute(
                self.client.rpc("release_invalid_slot", {"p_telegram_user_id": identity})
            )
        except Exception as exc:
            # Leaves one slot consumed for today; the next UTC day resets it.
            logger.error("invalid_slot_release_failed identity=%s error=%s", identity, exc)
