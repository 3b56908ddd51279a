"""Tests for the Bot API transport, the OpenRouter client and VisionInterpreter.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""

from __future__ import annotations

import json

import httpx
import pytest

from tasseo.clients.llm import OpenRouterClient
from tasseo.clients.telegram import TelegramTransport
from tasseo.core.errors import ArtifactTooLargeError, TransientError, TransportApiError, is_transient
from tasseo.models import IntermediateResult
from tasseo.services.interpretation import VisionInterpreter


def ok(result):
    return httpx.Response(200, json={"ok": True, "result": result})


def api_error(status, description, **extra):
    return httpx.Response(status, json={"ok": False, "error_code": status, "description": description, **extra})


@pytest.fixture
def bot(settings):
    requests = []
    routes = {}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        method = request.url.path.rsplit("/", 1)[-1]
        route = routes.get(method) or routes.get(request.url.path)
        if route is None:
            return ok(True)
        return route(request) if callable(route) else route

    transport = TelegramTransport(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    transport.requests = requests
    transport.routes = routes
    return transport


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestTelegramTransport:
    @pytest.mark.asyncio
    async def test_send_message_posts_html_with_markup(self, bot):
        bot.routes["sendMessage"] = ok({"message_id": 501})
        markup = {"inline_keyboard": [[{"text": "x", "callback_data": "y"}]]}

        message_id = await bot.send_message(7, "<b>hi</b>", reply_markup=markup)

        assert message_id == 501
        [request] = bot.requests
        assert request.url.path == "/bot123:abc/sendMessage"
        assert body(request) == {"chat_id": 7, "text": "<b>hi</b>", "parse_mode": "HTML", "reply_markup": markup}

    @pytest.mark.asyncio
    async def test_edit_without_markup_removes_keyboard(self, bot):
        await bot.edit_message_text(7, 8, "loading")

        assert "reply_markup" not in body(bot.requests[0])

    @pytest.mark.asyncio
    async def test_not_modified_edit_is_success(self, bot):
        bot.routes["editMessageText"] = api_error(400, "Bad Request: message is not modified")

        await bot.edit_message_text(7, 8, "same text")

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, bot):
        bot.routes["sendMessage"] = api_error(429, "Too Many Requests", parameters={"retry_after": 3})

        with pytest.raises(TransientError) as exc_info:
            await bot.send_message(7, "hi")
        assert is_transient(exc_info.value)

    @pytest.mark.asyncio
    async def test_bad_request_is_not_transient(self, bot):
        bot.routes["deleteMessage"] = api_error(400, "Bad Request: message can't be deleted")

        with pytest.raises(TransportApiError) as exc_info:
            await bot.delete_message(7, 8)
        assert exc_info.value.status == 400
        assert not is_transient(exc_info.value)

    @pytest.mark.asyncio
    async def test_callback_answer_alert_only_with_text(self, bot):
        await bot.answer_callback_query("cb-1")
        await bot.answer_callback_query("cb-2", "Session expired", show_alert=True)

        assert body(bot.requests[0]) == {"callback_query_id": "cb-1"}
        assert body(bot.requests[1]) == {"callback_query_id": "cb-2", "text": "Session expired", "show_alert": True}

    @pytest.mark.asyncio
    async def test_download_file(self, bot):
        bot.routes["getFile"] = ok({"file_path": "photos/file_1.jpg", "file_size": 4})
        bot.routes["/file/bot123:abc/photos/file_1.jpg"] = httpx.Response(200, content=b"\xff\xd8ok")

        assert await bot.download_file("file-1", max_bytes=10) == b"\xff\xd8ok"

    @pytest.mark.asyncio
    async def test_download_refuses_oversized_file_before_fetching(self, bot):
        bot.routes["getFile"] = ok({"file_path": "photos/big.jpg", "file_size": 11})

        with pytest.raises(ArtifactTooLargeError):
            await bot.download_file("file-1", max_bytes=10)
        assert len(bot.requests) == 1


def llm_client(settings, handler) -> OpenRouterClient:
    http = httpx.AsyncClient(base_url="https://openrouter.test/api/v1", transport=httpx.MockTransport(handler))
    return OpenRouterClient(settings, http_client=http)


def completion(content, tokens=42, model="vendor/model-x"):
    return httpx.Response(
        200,
        json={
            "model": model,
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"total_tokens": tokens},
        },
    )


class TestOpenRouterClient:
    @pytest.mark.asyncio
    async def test_complete(self, settings):
        seen = []

        def handler(request):
            seen.append(body(request))
            return completion("  hello  ")

        result = await llm_client(settings, handler).complete("m", [{"role": "user", "content": "hi"}], json_mode=True)

        assert (result.text, result.tokens_used, result.model) == ("hello", 42, "vendor/model-x")
        assert seen[0]["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_empty_completion_is_transient(self, settings):
        client = llm_client(settings, lambda request: completion("   "))

        with pytest.raises(TransientError):
            await client.complete("m", [])

    @pytest.mark.asyncio
    async def test_http_errors_propagate(self, settings):
        client = llm_client(settings, lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await client.complete("m", [])
        assert is_transient(exc_info.value)


class TestVisionInterpreter:
    @pytest.mark.asyncio
    async def test_first_stage_parses_fenced_json(self, settings):
        text = '```json\n{"description": "a bird", "symbols": ["bird", "ring"]}\n```'
        interpreter = VisionInterpreter(llm_client(settings, lambda r: completion(text, tokens=80)), settings)

        result = await interpreter.first_stage(b"img")

        assert result.description == "a bird"
        assert result.symbols == ["bird", "ring"]
        assert result.tokens_used == 80

    @pytest.mark.asyncio
    async def test_malformed_json_is_transient(self, settings):
        interpreter = VisionInterpreter(llm_client(settings, lambda r: completion("not json")), settings)

        with pytest.raises(TransientError):
            await interpreter.classify(b"img")

    @pytest.mark.asyncio
    async def test_classify(self, settings):
        text = '{"is_valid": false, "category": "cat", "confidence": 0.93, "description": "a cat"}'
        interpreter = VisionInterpreter(llm_client(settings, lambda r: completion(text)), settings)

        verdict = await interpreter.classify(b"img")

        assert verdict.is_valid is False
        assert verdict.confidence == 0.93

    @pytest.mark.asyncio
    async def test_second_stage_prompt_carries_persona_facet_language(self, settings):
        seen = []

        def handler(request):
            seen.append(body(request))
            return completion("Your love line is bright.", tokens=100)

        interpreter = VisionInterpreter(llm_client(settings, handler), settings)
        intermediate = IntermediateResult(description="a heart", symbols=["heart"], tokens_used=50)

        result = await interpreter.second_stage(intermediate, "cassandra", "love", "zh", "Ann")

        system, user = seen[0]["messages"]
        assert "Cassandra" in system["content"]
        assert "love and relationships" in user["content"]
        assert "Simplified Chinese" in user["content"]
        assert "Ann" in user["content"]
        assert result.tokens_used == 150

    @pytest.mark.asyncio
    async def test_reply_keeps_conversation_order(self, settings):
        seen = []

        def handler(request):
            seen.append(body(request))
            return completion("Be patient.")

        interpreter = VisionInterpreter(llm_client(settings, handler), settings)
        history = [
            {"role": "assistant", "content": "Your cup shows a road."},
            {"role": "system", "content": "ignored"},
        ]

        answer = await interpreter.reply(1, "When?", "en", history)

        roles = [m["role"] for m in seen[0]["messages"]]
        assert roles == ["system", "assistant", "user"]
        assert answer.text == "Be patient."
