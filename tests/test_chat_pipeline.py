"""Tests for tasseo.workers.chat_pipeline."""

from __future__ import annotations

import logging

import pytest

from tasseo import messages
from tasseo.core.errors import InvalidJobError, TransientError, TransportApiError
from tasseo.core.retry import NO_DELAY
from tasseo.repositories.analyses import CHAT_TABLE
from tasseo.workers.chat_pipeline import ChatPipeline, make_chat_handler
from tasseo.workers.envelope import ChatReplyJob, DeliveryContext, QueueMessage
from tests.conftest import CHAT_ID, IDENTITY, PLACEHOLDER_ID
from tests.fakes import ScriptedResponder


def question(text: str = "Will the trip go well?") -> ChatReplyJob:
    return ChatReplyJob(telegram_user_id=IDENTITY, chat_id=CHAT_ID, message_id=PLACEHOLDER_ID, text=text, language="en")


def attempt(n: int) -> DeliveryContext:
    return DeliveryContext(msg_id=1, attempt=n, max_attempts=4)


def credit_rpcs(supabase, action: str) -> list[str]:
    return [name for name in supabase.rpc_names() if name.startswith(f"{action}_")]


@pytest.fixture
def responder() -> ScriptedResponder:
    return ScriptedResponder()


@pytest.fixture
def chat(ledger, responder, transport, chat_history, settings) -> ChatPipeline:
    return ChatPipeline(
        ledger=ledger,
        responder=responder,
        transport=transport,
        history=chat_history,
        settings=settings,
        retry_policy=NO_DELAY,
    )


@pytest.fixture
def funded(ledger_store):
    ledger_store.set_balance("legacy", IDENTITY, "basic", 2)
    return ledger_store


@pytest.mark.asyncio
async def test_reply_replaces_placeholder_and_is_remembered(chat, funded, responder, transport, supabase):
    supabase.tables[CHAT_TABLE] = [
        {"telegram_user_id": IDENTITY, "role": "assistant", "content": "Your cup shows a bird.", "created_at": "1"},
    ]

    sent = await chat.handle(question(), attempt(1))

    assert sent == [PLACEHOLDER_ID]
    assert transport.texts("edit_message_text") == [responder.text]
    [(_, text, language, history)] = responder.calls
    assert text == "Will the trip go well?"
    assert language == "en"
    assert [h["content"] for h in history] == ["Your cup shows a bird."]
    roles = [row["role"] for row in supabase.tables[CHAT_TABLE][1:]]
    assert roles == ["user", "assistant"]


@pytest.mark.asyncio
async def test_reply_costs_one_basic_credit(chat, funded, supabase):
    await chat.handle(question(), attempt(1))

    assert funded.balance("legacy", IDENTITY, "basic") == 1
    assert credit_rpcs(supabase, "consume") == ["consume_legacy_credits"]
    assert credit_rpcs(supabase, "refund") == []


@pytest.mark.asyncio
async def test_zero_balance_declines_without_calling_model(chat, ledger_store, responder, transport, supabase):
    sent = await chat.handle(question(), attempt(1))

    assert sent == []
    assert responder.calls == []
    assert transport.texts("edit_message_text") == [messages.insufficient_credits("basic", "en")]
    assert credit_rpcs(supabase, "refund") == []
    assert supabase.tables.get(CHAT_TABLE, []) == []


@pytest.mark.asyncio
async def test_delivery_failure_refunds_the_credit(chat, funded, transport, supabase):
    transport.fail_on["edit_message_text"] = TransportApiError("editMessageText", 400, "chat not found")

    with pytest.raises(TransportApiError):
        await chat.handle(question(), attempt(2))

    assert funded.balance("legacy", IDENTITY, "basic") == 2
    assert credit_rpcs(supabase, "refund") == ["refund_legacy_credits"]
    assert supabase.tables.get(CHAT_TABLE, []) == []


@pytest.mark.asyncio
async def test_history_failure_does_not_block_reply(chat, funded, responder, supabase):
    supabase.failures[(CHAT_TABLE, "select")] = RuntimeError("history down")

    await chat.handle(question(), attempt(1))

    assert responder.calls[0][3] == []


@pytest.mark.asyncio
async def test_failure_is_silent_before_final_attempt(ledger, funded, transport, chat_history, settings):
    responder = ScriptedResponder(fail=TransientError("model busy"))
    chat = ChatPipeline(
        ledger=ledger,
        responder=responder,
        transport=transport,
        history=chat_history,
        settings=settings,
        retry_policy=NO_DELAY,
    )

    with pytest.raises(TransientError):
        await chat.handle(question(), attempt(2))

    assert len(responder.calls) == 3
    assert transport.texts("edit_message_text") == []
    assert funded.balance("legacy", IDENTITY, "basic") == 2


@pytest.mark.asyncio
async def test_final_attempt_apologises_and_says_credit_returned(ledger, funded, transport, settings):
    chat = ChatPipeline(
        ledger=ledger,
        responder=ScriptedResponder(fail=ValueError("bad answer")),
        transport=transport,
        settings=settings,
        retry_policy=NO_DELAY,
    )

    with pytest.raises(ValueError):
        await chat.handle(question(), attempt(4))

    assert transport.texts("edit_message_text") == [messages.chat_failure("en", refunded=True)]


@pytest.mark.asyncio
async def test_refund_failure_is_critical(ledger, funded, transport, settings, caplog):
    funded.fail["refund"] = RuntimeError("refund rpc broken")
    chat = ChatPipeline(
        ledger=ledger,
        responder=ScriptedResponder(fail=ValueError("bad answer")),
        transport=transport,
        settings=settings,
        retry_policy=NO_DELAY,
    )

    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(ValueError):
            await chat.handle(question(), attempt(4))

    assert any(r.levelno == logging.CRITICAL and "refund_failed" in r.getMessage() for r in caplog.records)
    assert transport.texts("edit_message_text") == [messages.chat_failure("en", refunded=False)]


@pytest.mark.asyncio
async def test_queue_handler_rejects_empty_question(chat, settings):
    handler = make_chat_handler(chat, settings)
    payload = {"telegram_user_id": IDENTITY, "chat_id": CHAT_ID, "message_id": 5, "text": ""}

    with pytest.raises(InvalidJobError):
        await handler(QueueMessage.from_raw({"msg_id": 9, "read_ct": 1, "payload": payload}))
