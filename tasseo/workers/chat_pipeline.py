"""
Tasseo Engine - Chat Reply Pipeline

Handles `chat_reply` jobs: free-text follow-up questions answered by the chat
model with the recent conversation as context.

Each reply costs one basic credit, taken before the model is called and held
in a CreditHold. Too few credits is a decline: the placeholder says so and
the job is acked. Any exception after the debit refunds it once and is
re-raised for redelivery; the user gets the apology only on the final attempt.
"""

from __future__ import annotations

import logging
from typing import Optional

from tasseo import messages
from tasseo.config import Settings, get_settings
from tasseo.core.errors import describe_error
from tasseo.core.retry import RetryPolicy, call_with_retry
from tasseo.interfaces import ChatResponder, Transport
from tasseo.logging_setup import job_logger
from tasseo.models import CreditType
from tasseo.repositories.analyses import ChatHistoryRepository
from tasseo.services.delivery import deliver_text
from tasseo.services.ledger import CreditLedger

from .envelope import ChatReplyJob, DeliveryContext, QueueMessage, parse_job
from .pipeline import CreditHold, QueueHandler

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 20
CHAT_CREDIT_TYPE = CreditType.BASIC


class ChatPipeline:
    def __init__(
        self,
        *,
        ledger: CreditLedger,
        responder: ChatResponder,
        transport: Transport,
        history: Optional[ChatHistoryRepository] = None,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._ledger = ledger
        self._responder = responder
        self._transport = transport
        self._history = history
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._chunk_limit = settings.TELEGRAM_SAFE_LIMIT

    async def handle(self, job: ChatReplyJob, delivery: DeliveryContext) -> list[int]:
        """Returns the ids of the messages carrying the reply, [] when declined."""
        log = job_logger(logger, job_id=delivery.msg_id, identity=job.telegram_user_id)
        log.info("chat_reply_start attempt=%s/%s", delivery.attempt, delivery.max_attempts)
        hold = CreditHold(self._ledger, job.telegram_user_id, CHAT_CREDIT_TYPE)
        try:
            if not await hold.acquire(1):
                log.info("chat_reply_declined reason=insufficient_credits:%s", hold.credit_type.value)
                await self._edit_quietly(
                    job, messages.insufficient_credits(hold.credit_type.value, job.language), log
                )
                return []

            context = await self._load_history(job, log)
            answer = await call_with_retry(
                self._retry,
                "chat_reply",
                self._responder.reply,
                job.telegram_user_id,
                job.text,
                job.language,
                context,
            )
            sent = await deliver_text(
                self._transport, job.chat_id, job.message_id, answer.text, limit=self._chunk_limit
            )
        except Exception as exc:
            refunded = await hold.release(log)
            log.error(
                "chat_reply_failed consumed=%s refunded=%s error=%s",
                hold.amount,
                refunded,
                describe_error(exc),
            )
            if delivery.is_final_attempt:
                await self._edit_quietly(job, messages.chat_failure(job.language, refunded=refunded), log)
            raise

        await self._remember(job, answer.text, log)
        log.info("chat_reply_completed chunks=%s tokens=%s", len(sent), answer.tokens_used)
        return sent

    async def _edit_quietly(self, job: ChatReplyJob, text: str, log: logging.LoggerAdapter) -> None:
        try:
            await self._transport.edit_message_text(job.chat_id, job.message_id, text)
        except Exception as exc:
            log.warning("notify_failed message_id=%s error=%s", job.message_id, exc)

    async def _load_history(self, job: ChatReplyJob, log: logging.LoggerAdapter) -> list[dict]:
        if self._history is None:
            return []
        try:
            return await self._history.recent(job.telegram_user_id, HISTORY_WINDOW)
        except Exception as exc:
            log.warning("chat_history_load_failed error=%s", exc)
            return []

    async def _remember(self, job: ChatReplyJob, answer: str, log: logging.LoggerAdapter) -> None:
        if self._history is None:
            return
        try:
            await self._history.append(job.telegram_user_id, "user", job.text)
            await self._history.append(job.telegram_user_id, "assistant", answer)
        except Exception as exc:
            log.warning("chat_history_append_failed error=%s", exc)


def make_chat_handler(pipeline: ChatPipeline, settings: Settings | None = None) -> QueueHandler:
    max_attempts = (settings or get_settings()).queue_max_attempts

    async def handler(message: QueueMessage) -> list[int]:
        job = parse_job(ChatReplyJob, message.payload)
        delivery = DeliveryContext(msg_id=message.msg_id, attempt=message.read_ct, max_attempts=max_attempts)
        return await pipeline.handle(job, delivery)

    return handler
