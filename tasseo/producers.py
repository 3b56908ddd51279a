"""
Tasseo Engine - Producer Side

What the bot process does before a job reaches the queue:

- JobProducer: validated, idempotent enqueue of analysis and chat jobs
- TopicSelectionHandler: photo uploaded -> topic keyboard -> fresh AnalysisJob
- RetopicRequestHandler: retopic button -> continuation AnalysisJob

Both callback handlers follow the same order: validate, disable the keyboard
by editing the message to the loading text (no markup), check the balance,
then either enqueue or edit the message to the insufficient-credits text.
The balance check here is advisory; the worker's consume is authoritative.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from tasseo import messages
from tasseo.config import Settings, get_settings
from tasseo.core.errors import FacetAlreadyCoveredError, SessionExpiredError
from tasseo.core.retry import RetryPolicy, with_retry
from tasseo.interfaces import JobQueue, Transport
from tasseo.keyboards import (
    FileIdRegistry,
    parse_retopic_callback,
    parse_topic_callback,
    retopic_keyboard,
    topic_keyboard,
)
from tasseo.models import CreditType, Facet, Persona, credit_type_for_facet
from tasseo.services.ledger import CreditLedger
from tasseo.services.sessions import SessionService, remaining_facets
from tasseo.workers.envelope import ANALYZE_PHOTO, CHAT_REPLY, AnalysisJob, ChatReplyJob
from tasseo.workers.queue_client import QueueClient

logger = logging.getLogger(__name__)


class CallbackOutcome(str, Enum):
    ENQUEUED = "enqueued"
    IGNORED = "ignored"
    EXPIRED = "expired"
    COVERED = "covered"
    INSUFFICIENT = "insufficient"


def analysis_idempotency_key(job: AnalysisJob) -> str:
    if job.continuation_of is not None:
        return f"retopic:{job.continuation_of}:{job.facet.value}"
    return f"analyze:{job.chat_id}:{job.message_id}"


class JobProducer:
    """Fire-and-forget enqueue; the queue client is sync, so calls run in a thread."""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        *,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._queue = queue or QueueClient(settings)
        # Idempotency keys make a replayed queue_job harmless
        self._enqueue = with_retry(retry_policy or RetryPolicy.from_settings(settings))(self._queue.enqueue)

    async def enqueue_analysis(self, job: AnalysisJob) -> Optional[int]:
        key = analysis_idempotency_key(job)
        msg_id = await asyncio.to_thread(
            self._enqueue, ANALYZE_PHOTO, job.model_dump(mode="json", exclude_none=True), key
        )
        logger.info(
            "analysis_enqueued msg_id=%s identity=%s facet=%s continuation=%s",
            msg_id,
            job.telegram_user_id,
            job.facet.value,
            job.continuation_of,
        )
        return msg_id

    async def enqueue_chat_reply(self, job: ChatReplyJob) -> Optional[int]:
        key = f"chat:{job.chat_id}:{job.message_id}"
        msg_id = await asyncio.to_thread(self._enqueue, CHAT_REPLY, job.model_dump(mode="json"), key)
        logger.info("chat_reply_enqueued msg_id=%s identity=%s", msg_id, job.telegram_user_id)
        return msg_id


async def _answer(transport: Transport, callback_query_id: Optional[str], text: Optional[str] = None) -> None:
    if not callback_query_id:
        return
    try:
        await transport.answer_callback_query(callback_query_id, text, show_alert=bool(text))
    except Exception as exc:
        logger.debug("answer_callback_failed error=%s", exc)


class TopicSelectionHandler:
    def __init__(
        self,
        *,
        registry: FileIdRegistry,
        ledger: CreditLedger,
        transport: Transport,
        producer: JobProducer,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._transport = transport
        self._producer = producer

    async def offer(self, chat_id: int, file_id: str, language: str) -> int:
        """Reply to an uploaded photo with the facet keyboard."""
        keyboard = topic_keyboard(file_id, language, self._registry)
        return await self._transport.send_message(
            chat_id, messages.topic_prompt(language), reply_markup=keyboard
        )

    async def handle(
        self,
        *,
        callback_data: str,
        identity: int,
        chat_id: int,
        message_id: int,
        language: str,
        persona: Persona = Persona.ARINA,
        user_name: Optional[str] = None,
        callback_query_id: Optional[str] = None,
    ) -> CallbackOutcome:
        parsed = parse_topic_callback(callback_data, self._registry)
        if parsed is None:
            logger.info("topic_callback_expired identity=%s data=%s", identity, callback_data)
            await _answer(self._transport, callback_query_id, messages.session_expired(language))
            return CallbackOutcome.EXPIRED
        facet, file_id = parsed
        credit_type = credit_type_for_facet(facet)

        await _answer(self._transport, callback_query_id)
        await self._transport.edit_message_text(chat_id, message_id, messages.loading(persona.value, language))

        if not await self._ledger.has_balance(identity, credit_type):
            await self._transport.edit_message_text(
                chat_id, message_id, messages.insufficient_credits(credit_type.value, language)
            )
            logger.info("topic_insufficient_credits identity=%s type=%s", identity, credit_type.value)
            return CallbackOutcome.INSUFFICIENT

        job = AnalysisJob(
            telegram_user_id=identity,
            chat_id=chat_id,
            message_id=message_id,
            file_id=file_id,
            facet=Facet(facet),
            persona=persona,
            language=language,
            credit_type=credit_type,
            user_name=user_name,
        )
        await self._producer.enqueue_analysis(job)
        return CallbackOutcome.ENQUEUED

    def sweep(self) -> int:
        return self._registry.sweep()


class RetopicRequestHandler:
    def __init__(
        self,
        *,
        sessions: SessionService,
        ledger: CreditLedger,
        transport: Transport,
        producer: JobProducer,
    ) -> None:
        self._sessions = sessions
        self._ledger = ledger
        self._transport = transport
        self._producer = producer

    async def handle(
        self,
        *,
        callback_data: str,
        identity: int,
        chat_id: int,
        message_id: int,
        language: str,
        user_name: Optional[str] = None,
        callback_query_id: Optional[str] = None,
    ) -> CallbackOutcome:
        parsed = parse_retopic_callback(callback_data)
        if parsed is None:
            logger.warning("retopic_callback_unparsed identity=%s data=%s", identity, callback_data)
            await _answer(self._transport, callback_query_id)
            return CallbackOutcome.IGNORED
        facet, record_id = parsed

        try:
            continuation = await self._sessions.load_continuation(record_id, identity, facet)
        except SessionExpiredError as exc:
            logger.info("retopic_session_expired identity=%s record=%s reason=%s", identity, record_id, exc.reason)
            await _answer(self._transport, callback_query_id, messages.session_expired(language))
            return CallbackOutcome.EXPIRED
        except FacetAlreadyCoveredError:
            await _answer(self._transport, callback_query_id, messages.facet_already_covered(language))
            return CallbackOutcome.COVERED

        persona = continuation.source.persona
        await _answer(self._transport, callback_query_id)
        # Disable the keyboard before anything else so a double tap finds no buttons
        await self._transport.edit_message_text(chat_id, message_id, messages.loading(persona, language))

        try:
            affordable = await self._ledger.has_balance(identity, CreditType.BASIC)
        except Exception:
            await self._restore_keyboard(chat_id, message_id, record_id, continuation.covered, language)
            raise

        if not affordable:
            await self._transport.edit_message_text(
                chat_id, message_id, messages.insufficient_credits(CreditType.BASIC.value, language)
            )
            logger.info("retopic_insufficient_credits identity=%s record=%s", identity, record_id)
            return CallbackOutcome.INSUFFICIENT

        job = AnalysisJob(
            telegram_user_id=identity,
            chat_id=chat_id,
            message_id=message_id,
            facet=Facet(facet),
            persona=Persona(persona),
            language=language,
            credit_type=CreditType.BASIC,
            user_name=user_name,
            continuation_of=record_id,
            session_group_id=continuation.session_group_id,
        )
        await self._producer.enqueue_analysis(job)
        return CallbackOutcome.ENQUEUED

    async def _restore_keyboard(
        self, chat_id: int, message_id: int, record_id: UUID, covered: Any, language: str
    ) -> None:
        keyboard = retopic_keyboard(record_id, remaining_facets(covered), language)
        try:
            await self._transport.edit_message_text(
                chat_id, message_id, messages.retopic_prompt(language), reply_markup=keyboard
            )
        except Exception as exc:
            logger.warning("retopic_keyboard_restore_failed record=%s error=%s", record_id, exc)
