"""
Tasseo Engine - Analysis Pipeline

Drives one delivery of an `analyze_photo` job:

    1. create AnalysisRecord (processing)
    2. fresh: download the photo           continuation: load the session
    3. fresh: classify + validation gate    (rejected / expired -> DECLINED)
    4. fresh: first stage, cache the intermediate result on the record
    5. consume credits                      (insufficient -> DECLINED)
    6. second stage (persona, facet, language)
    7. record -> completed
    8. deliver, then offer the remaining facets

The debit in step 5 is held in a CreditHold. Any exception after it refunds
exactly the held amount once (the compensating step), marks the record
failed and is re-raised for the queue to redeliver. The user hears about the
failure only on the final delivery attempt.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from tasseo import messages
from tasseo.config import Settings, get_settings
from tasseo.core.errors import (
    FacetAlreadyCoveredError,
    SessionExpiredError,
    describe_error,
)
from tasseo.core.retry import RetryPolicy, call_with_retry
from tasseo.interfaces import InterpretationService, Transport, ValidationClassifier
from tasseo.keyboards import retopic_keyboard
from tasseo.logging_setup import job_logger
from tasseo.models import CreditType, Facet, IntermediateResult
from tasseo.repositories.analyses import AnalysisRepository, ChatHistoryRepository
from tasseo.services.delivery import deliver_text
from tasseo.services.ledger import CreditLedger
from tasseo.services.sessions import SessionService, remaining_facets
from tasseo.services.validation_gate import ValidationGate

from .envelope import AnalysisJob, DeliveryContext, QueueMessage, parse_job

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    COMPLETED = "completed"
    DECLINED = "declined"  # rejection, insufficient credits, expired/covered session
    FAILED = "failed"  # attempt failure; compensated, re-raised by handle()


@dataclass
class PipelineResult:
    outcome: Outcome
    record_id: Optional[UUID] = None
    reason: Optional[str] = None
    refunded: bool = False
    error: Optional[BaseException] = None


@dataclass
class CreditHold:
    """
    The debit taken for one attempt.

    `amount` is what the ledger actually consumed (0 until acquire succeeds),
    so release() can never refund more than was taken, nor refund twice.
    """

    ledger: CreditLedger
    identity: int
    credit_type: CreditType
    amount: int = 0
    released: bool = False

    @property
    def held(self) -> bool:
        return self.amount > 0 and not self.released

    async def acquire(self, amount: int = 1) -> bool:
        if await self.ledger.consume(self.identity, self.credit_type, amount):
            self.amount = amount
            return True
        return False

    async def release(self, log: logging.LoggerAdapter | logging.Logger = logger) -> bool:
        """Refund the held amount. Returns True only if the refund went through."""
        if not self.held:
            return False
        self.released = True
        try:
            refunded = await self.ledger.refund(self.identity, self.credit_type, self.amount)
        except Exception as exc:
            log.critical(
                "refund_failed identity=%s type=%s amount=%s error=%s",
                self.identity,
                self.credit_type.value,
                self.amount,
                exc,
            )
            return False
        if not refunded:
            log.critical(
                "refund_failed identity=%s type=%s amount=%s error=ledger_returned_false",
                self.identity,
                self.credit_type.value,
                self.amount,
            )
            return False
        log.info("refund_issued type=%s amount=%s", self.credit_type.value, self.amount)
        return True


class AnalysisPipeline:
    def __init__(
        self,
        *,
        ledger: CreditLedger,
        gate: ValidationGate,
        sessions: SessionService,
        repository: AnalysisRepository,
        interpreter: InterpretationService,
        classifier: ValidationClassifier,
        transport: Transport,
        chat_history: Optional[ChatHistoryRepository] = None,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._ledger = ledger
        self._gate = gate
        self._sessions = sessions
        self._repository = repository
        self._interpreter = interpreter
        self._classifier = classifier
        self._transport = transport
        self._chat_history = chat_history
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._chunk_limit = settings.TELEGRAM_SAFE_LIMIT
        self._photo_limit = settings.PHOTO_SIZE_LIMIT_BYTES

    async def handle(self, job: AnalysisJob, delivery: DeliveryContext) -> PipelineResult:
        """Queue entry point: returns COMPLETED / DECLINED, raises on attempt failure."""
        result = await self.run(job, delivery)
        if result.outcome is Outcome.FAILED and result.error is not None:
            raise result.error
        return result

    async def run(self, job: AnalysisJob, delivery: DeliveryContext) -> PipelineResult:
        log = job_logger(logger, job_id=delivery.msg_id, identity=job.telegram_user_id)
        started = time.monotonic()
        hold = CreditHold(self._ledger, job.telegram_user_id, job.billed_as)
        record_id: Optional[UUID] = None
        completed = False

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        log.info(
            "analysis_start facet=%s persona=%s continuation=%s attempt=%s/%s",
            job.facet.value,
            job.persona.value,
            job.continuation_of,
            delivery.attempt,
            delivery.max_attempts,
        )
        try:
            record = await self._repository.create(
                identity=job.telegram_user_id,
                persona=job.persona.value,
                facet=job.facet.value,
                session_group_id=job.session_group_id,
                analysis_type="retopic" if job.is_continuation else "photo",
            )
            record_id = record.id
            group_id = job.session_group_id

            intermediate: IntermediateResult
            if job.is_continuation:
                try:
                    continuation = await self._sessions.load_continuation(
                        job.continuation_of, job.telegram_user_id, job.facet.value
                    )
                except SessionExpiredError as exc:
                    return await self._decline(
                        job,
                        record_id,
                        f"session_expired:{exc.reason}",
                        messages.session_expired(job.language),
                        elapsed_ms(),
                        log,
                    )
                except FacetAlreadyCoveredError as exc:
                    if await self._already_delivered(delivery, exc, log):
                        return await self._decline(
                            job,
                            record_id,
                            f"facet_already_covered:{exc.facet}:redelivered",
                            None,
                            elapsed_ms(),
                            log,
                        )
                    return await self._decline(
                        job,
                        record_id,
                        f"facet_already_covered:{exc.facet}",
                        messages.facet_already_covered(job.language),
                        elapsed_ms(),
                        log,
                    )
                intermediate = continuation.intermediate
                group_id = continuation.session_group_id
                if record.session_group_id != group_id:
                    await self._repository.assign_group(record_id, group_id)
            else:
                image = await call_with_retry(
                    self._retry,
                    "download_file",
                    self._transport.download_file,
                    job.file_id,
                    max_bytes=self._photo_limit,
                )
                verdict = await call_with_retry(self._retry, "classify", self._classifier.classify, image)
                if self._gate.should_reject(verdict):
                    return await self._reject(job, record_id, verdict, elapsed_ms(), log)

                await self._typing(job.chat_id, log)
                intermediate = await call_with_retry(
                    self._retry, "first_stage", self._interpreter.first_stage, image
                )
                await self._repository.save_intermediate(record_id, intermediate)

            if not await hold.acquire(1):
                return await self._decline(
                    job,
                    record_id,
                    f"insufficient_credits:{hold.credit_type.value}",
                    messages.insufficient_credits(hold.credit_type.value, job.language),
                    elapsed_ms(),
                    log,
                )

            await self._typing(job.chat_id, log)
            interpretation = await call_with_retry(
                self._retry,
                "second_stage",
                self._interpreter.second_stage,
                intermediate,
                job.persona.value,
                job.facet.value,
                job.language,
                job.user_name,
            )

            await self._repository.mark_completed(
                record_id,
                interpretation=interpretation.text,
                model_used=interpretation.model,
                tokens_used=interpretation.tokens_used,
                processing_time_ms=elapsed_ms(),
            )
            completed = True

            await deliver_text(
                self._transport, job.chat_id, job.message_id, interpretation.text, limit=self._chunk_limit
            )
            if job.facet is not Facet.ALL and group_id is not None:
                await self._offer_retopic(job, record_id, group_id, log)
            await self._remember(job, interpretation.text, log)

            log.info("analysis_completed record=%s ms=%s", record_id, elapsed_ms())
            return PipelineResult(Outcome.COMPLETED, record_id=record_id)

        except Exception as exc:
            refunded = await hold.release(log)
            log.error(
                "analysis_failed record=%s consumed=%s refunded=%s error=%s",
                record_id,
                hold.amount,
                refunded,
                describe_error(exc),
            )
            if record_id is not None:
                await self._record_failure(record_id, exc, completed, elapsed_ms(), log)
            if delivery.is_final_attempt:
                await self._edit_quietly(
                    job.chat_id,
                    job.message_id,
                    messages.failure(job.language, refunded=refunded),
                    log,
                )
            return PipelineResult(
                Outcome.FAILED,
                record_id=record_id,
                reason=describe_error(exc),
                refunded=refunded,
                error=exc,
            )

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def _reject(self, job: AnalysisJob, record_id: UUID, verdict: Any, ms: int, log: Any) -> PipelineResult:
        notice = await self._gate.rejection_notice(
            job.telegram_user_id, verdict, job.language, job.user_name
        )
        await self._repository.mark_rejected(record_id, verdict.detail(), processing_time_ms=ms)
        await self._edit_quietly(job.chat_id, job.message_id, notice.text, log)
        log.info(
            "analysis_rejected record=%s category=%s confidence=%.2f personalized=%s",
            record_id,
            verdict.category,
            verdict.confidence,
            notice.personalized,
        )
        return PipelineResult(Outcome.DECLINED, record_id=record_id, reason="rejected")

    async def _decline(
        self, job: AnalysisJob, record_id: UUID, reason: str, text: Optional[str], ms: int, log: Any
    ) -> PipelineResult:
        await self._repository.mark_failed(record_id, reason, processing_time_ms=ms)
        if text is not None:
            await self._edit_quietly(job.chat_id, job.message_id, text, log)
        log.info("analysis_declined record=%s reason=%s", record_id, reason)
        return PipelineResult(Outcome.DECLINED, record_id=record_id, reason=reason)

    async def _already_delivered(
        self, delivery: DeliveryContext, exc: FacetAlreadyCoveredError, log: Any
    ) -> bool:
        """
        A redelivered continuation whose facet was completed by a retopic
        reading in the same group is this job's own earlier attempt whose ack
        was lost. The placeholder already carries that reading.
        """
        if delivery.attempt <= 1 or exc.session_group_id is None:
            return False
        try:
            return await self._repository.has_completed_retopic(exc.session_group_id, exc.facet)
        except Exception as lookup_exc:
            log.warning("redelivery_check_failed group=%s error=%s", exc.session_group_id, lookup_exc)
            return False

    async def _record_failure(self, record_id: UUID, exc: BaseException, completed: bool, ms: int, log: Any) -> None:
        try:
            if completed:
                await self._repository.reopen_as_failed(record_id, f"delivery_failed: {describe_error(exc)}")
            else:
                await self._repository.mark_failed(record_id, describe_error(exc), processing_time_ms=ms)
        except Exception as mark_exc:
            log.error("analysis_mark_failed_error record=%s error=%s", record_id, mark_exc)

    # ------------------------------------------------------------------
    # Best-effort side channels
    # ------------------------------------------------------------------

    async def _offer_retopic(self, job: AnalysisJob, record_id: UUID, group_id: UUID, log: Any) -> None:
        try:
            covered = await self._sessions.covered_facets(group_id)
            covered.add(job.facet.value)
            keyboard = retopic_keyboard(record_id, remaining_facets(covered), job.language)
            if keyboard is None:
                return
            await self._transport.send_message(
                job.chat_id, messages.retopic_prompt(job.language), reply_markup=keyboard
            )
        except Exception as exc:
            log.warning("retopic_keyboard_failed record=%s error=%s", record_id, exc)

    async def _remember(self, job: AnalysisJob, text: str, log: Any) -> None:
        if self._chat_history is None:
            return
        try:
            await self._chat_history.append(job.telegram_user_id, "assistant", text, message_type="reading")
        except Exception as exc:
            log.warning("chat_history_append_failed error=%s", exc)

    async def _typing(self, chat_id: int, log: Any) -> None:
        try:
            await self._transport.send_chat_action(chat_id, "typing")
        except Exception as exc:
            log.debug("chat_action_failed error=%s", exc)

    async def _edit_quietly(self, chat_id: int, message_id: int, text: str, log: Any) -> None:
        try:
            await self._transport.edit_message_text(chat_id, message_id, text)
        except Exception as exc:
            log.warning("notify_failed chat_id=%s message_id=%s error=%s", chat_id, message_id, exc)


QueueHandler = Callable[[QueueMessage], Awaitable[Any]]


def make_queue_handler(pipeline: AnalysisPipeline, settings: Settings | None = None) -> QueueHandler:
    """Adapt the pipeline to the runner: parse the payload, attach the delivery counters."""
    max_attempts = (settings or get_settings()).queue_max_attempts

    async def handler(message: QueueMessage) -> PipelineResult:
        job = parse_job(AnalysisJob, message.payload)
        delivery = DeliveryContext(msg_id=message.msg_id, attempt=message.read_ct, max_attempts=max_attempts)
        return await pipeline.handle(job, delivery)

    return handler
