"""
Tasseo Engine - Telegram Bot API Transport

Minimal async Bot API client covering what the pipeline and producers need:
send / edit / delete message, chat actions, callback answers and file
download.

Rate limits (429) and server errors surface as TransientError so the caller
retries; other API errors raise TransportApiError. Editing a message to the
text it already has is treated as success.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from tasseo.config import Settings, get_settings
from tasseo.core.errors import (
    ERR_VENDOR_TRANSPORT,
    ArtifactTooLargeError,
    TransientError,
    TransportApiError,
)

logger = logging.getLogger(__name__)

NOT_MODIFIED = "message is not modified"


class TelegramTransport:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        parse_mode: Optional[str] = "HTML",
    ) -> None:
        settings = settings or get_settings()
        self._api_url = settings.TELEGRAM_API_URL.rstrip("/")
        self._token = settings.TELEGRAM_BOT_TOKEN
        self._parse_mode = parse_mode
        self._client = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        response = await self._client.post(f"{self._api_url}/bot{self._token}/{method}", json=payload)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code < 400 and data.get("ok"):
            return data.get("result")

        description = str(data.get("description") or response.text[:200])
        status = int(data.get("error_code") or response.status_code)
        if status == 429 or status >= 500:
            retry_after = (data.get("parameters") or {}).get("retry_after")
            logger.warning(
                "telegram_transient method=%s status=%s retry_after=%s",
                method,
                status,
                retry_after,
            )
            raise TransientError(f"{method} failed ({status}): {description}", error_code=ERR_VENDOR_TRANSPORT)
        raise TransportApiError(method, status, description)

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> int:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if self._parse_mode:
            payload["parse_mode"] = self._parse_mode
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        result = await self._call("sendMessage", payload)
        return int(result["message_id"])

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> None:
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if self._parse_mode:
            payload["parse_mode"] = self._parse_mode
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        try:
            await self._call("editMessageText", payload)
        except TransportApiError as exc:
            if NOT_MODIFIED in exc.description.lower():
                return
            raise

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> None:
        await self._call("sendChatAction", {"chat_id": chat_id, "action": action})

    async def answer_callback_query(
        self, callback_query_id: str, text: Optional[str] = None, *, show_alert: bool = False
    ) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = show_alert
        await self._call("answerCallbackQuery", payload)

    async def download_file(self, file_id: str, *, max_bytes: Optional[int] = None) -> bytes:
        info = await self._call("getFile", {"file_id": file_id})
        file_path = info.get("file_path")
        if not file_path:
            raise TransportApiError("getFile", 400, "no file_path in response")
        size = info.get("file_size")
        if max_bytes is not None and size is not None and int(size) > max_bytes:
            raise ArtifactTooLargeError(f"file {file_id} is {size} bytes, limit {max_bytes}")

        response = await self._client.get(f"{self._api_url}/file/bot{self._token}/{file_path}")
        response.raise_for_status()
        content = response.content
        if max_bytes is not None and len(content) > max_bytes:
            raise ArtifactTooLargeError(f"file {file_id} is {len(content)} bytes, limit {max_bytes}")
        logger.debug("telegram_file_downloaded file_id=%s bytes=%s", file_id, len(content))
        return content
