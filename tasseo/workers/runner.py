"""
Tasseo Engine - Worker Runner

Polls the `analyze_photo` and `chat_reply` queues and hands each message to its
pipeline handler.

Ack rules:
    handler returns (completed or expected outcome)   -> ack
    handler raises InvalidJobError                     -> dead_letter + ack
    handler raises on the final attempt                -> dead_letter + ack
    handler raises on an earlier attempt               -> no ack (pgmq redelivers
                                                          after the visibility
                                                          timeout with read_ct + 1)

Run with:
    python -m tasseo.workers.runner
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from tasseo.clients.llm import OpenRouterClient
from tasseo.clients.telegram import TelegramTransport
from tasseo.config import Settings, get_settings
from tasseo.core.backoff import BackoffState
from tasseo.core.errors import InvalidJobError, describe_error
from tasseo.logging_setup import configure_logging
from tasseo.repositories.analyses import AnalysisRepository, ChatHistoryRepository
from tasseo.services.interpretation import VisionInterpreter
from tasseo.services.ledger import CreditLedger
from tasseo.services.sessions import SessionService
from tasseo.services.validation_gate import ValidationGate
from tasseo.supabase_client import get_supabase_client

from .chat_pipeline import ChatPipeline, make_chat_handler
from .envelope import ANALYZE_PHOTO, CHAT_REPLY, DEAD_LETTER, QueueMessage
from .pipeline import AnalysisPipeline, QueueHandler, make_queue_handler
from .queue_client import QueueClient, QueueRpcNotFound

logger = logging.getLogger(__name__)

CACHE_SWEEP_INTERVAL_SECONDS = 60.0


def _dead_letter(client: QueueClient, kind: str, message: QueueMessage, exc: BaseException) -> bool:
    """Copy a message to the dead-letter queue. Returns False if that failed."""
    payload = {
        "source_kind": kind,
        "msg_id": message.msg_id,
        "read_ct": message.read_ct,
        "idempotency_key": message.idempotency_key,
        "payload": message.payload,
        "error": describe_error(exc),
    }
    try:
        client.enqueue(DEAD_LETTER, payload, f"dlq:{kind}:{message.msg_id}")
    except Exception:
        logger.exception("dead_letter_enqueue_failed kind=%s msg_id=%s", kind, message.msg_id)
        return False
    logger.error(
        "job_dead_lettered kind=%s msg_id=%s read_ct=%s error=%s",
        kind,
        message.msg_id,
        message.read_ct,
        describe_error(exc),
    )
    return True


def _ack(client: QueueClient, kind: str, msg_id: int) -> None:
    try:
        client.ack(kind, msg_id)
    except Exception:
        logger.exception("Failed to acknowledge job %s on %s", msg_id, kind)


async def worker_loop(
    kind: str,
    handler: QueueHandler,
    poll_interval: float = 1.0,
    max_attempts: int = 4,
    *,
    settings: Settings | None = None,
    stop: Optional[asyncio.Event] = None,
) -> None:
    client = QueueClient(settings)
    backoff = BackoffState()

    try:
        logger.info(
            "Starting worker loop for kind=%s, poll_interval=%.2fs, max_attempts=%s",
            kind,
            poll_interval,
            max_attempts,
        )
        while stop is None or not stop.is_set():
            try:
                raw = await asyncio.to_thread(client.dequeue, kind)
            except QueueRpcNotFound:
                logger.critical(
                    "Queue RPC dequeue_job/queue_job missing for kind=%s. Apply migrations and restart.",
                    kind,
                )
                break
            except Exception as exc:
                delay = backoff.record_failure()
                log = logger.critical if backoff.is_in_crash_loop() else logger.warning
                log(
                    "dequeue_failed kind=%s consecutive=%s retry_in=%.1fs error=%s",
                    kind,
                    backoff.consecutive_failures,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                continue

            backoff.record_success()
            if not raw:
                await asyncio.sleep(poll_interval)
                continue

            message = QueueMessage.from_raw(raw)
            if message.msg_id is None:
                logger.warning("Job without usable msg_id on %s: %s", kind, raw)
                continue

            try:
                await handler(message)
            except InvalidJobError as exc:
                logger.error("invalid_job kind=%s msg_id=%s error=%s", kind, message.msg_id, exc)
                if _dead_letter(client, kind, message, exc):
                    _ack(client, kind, message.msg_id)
                continue
            except Exception as exc:
                if message.read_ct >= max_attempts:
                    logger.error(
                        "Job %s on queue %s failed on final attempt %s/%s",
                        message.msg_id,
                        kind,
                        message.read_ct,
                        max_attempts,
                    )
                    if _dead_letter(client, kind, message, exc):
                        _ack(client, kind, message.msg_id)
                else:
                    logger.warning(
                        "Job %s on queue %s attempt %s/%s failed; leaving for redelivery: %s",
                        message.msg_id,
                        kind,
                        message.read_ct,
                        max_attempts,
                        describe_error(exc),
                    )
                await asyncio.sleep(poll_interval)
                continue

            _ack(client, kind, message.msg_id)
    finally:
        client.close()


async def sweep_caches(ledger: CreditLedger, interval: float = CACHE_SWEEP_INTERVAL_SECONDS) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = ledger.sweep_cache()
        if removed:
            logger.debug("link_cache_sweep removed=%s", removed)


def build_handlers(settings: Settings, client: Any = None) -> tuple[dict[str, QueueHandler], list[Any]]:
    """
    Wire the pipelines to their adapters.

    Returns the handler per queue kind plus the resources to close on shutdown
    (the ledger is among them so the caller can sweep its cache).
    """
    client = client or get_supabase_client()
    llm = OpenRouterClient(settings)
    interpreter = VisionInterpreter(llm, settings)
    transport = TelegramTransport(settings)
    repository = AnalysisRepository(client)
    history = ChatHistoryRepository(client)
    ledger = CreditLedger(client, settings=settings)

    analysis = AnalysisPipeline(
        ledger=ledger,
        gate=ValidationGate(interpreter, client, settings=settings),
        sessions=SessionService(repository),
        repository=repository,
        interpreter=interpreter,
        classifier=interpreter,
        transport=transport,
        chat_history=history,
        settings=settings,
    )
    chat = ChatPipeline(
        ledger=ledger, responder=interpreter, transport=transport, history=history, settings=settings
    )
    handlers = {
        ANALYZE_PHOTO: make_queue_handler(analysis, settings),
        CHAT_REPLY: make_chat_handler(chat, settings),
    }
    return handlers, [ledger, llm, transport]


async def run_workers(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    handlers, resources = build_handlers(settings)
    ledger, llm, transport = resources

    loops = [
        worker_loop(
            kind,
            handler,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            max_attempts=settings.queue_max_attempts,
            settings=settings,
        )
        for kind, handler in handlers.items()
        for _ in range(settings.WORKER_CONCURRENCY)
    ]
    sweeper = asyncio.create_task(sweep_caches(ledger))
    logger.info(
        "workers_started kinds=%s concurrency=%s env=%s",
        ",".join(handlers),
        settings.WORKER_CONCURRENCY,
        settings.environment,
    )
    try:
        await asyncio.gather(*loops)
    finally:
        sweeper.cancel()
        await llm.aclose()
        await transport.aclose()


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(run_workers(settings))


if __name__ == "__main__":
    main()
