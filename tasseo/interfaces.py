"""
Collaborator protocols consumed by the pipeline.

The real adapters live in `tasseo.clients` and `tasseo.services.interpretation`;
tests substitute scripted fakes.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .models import IntermediateResult, Interpretation, ValidationResult


class InterpretationService(Protocol):
    async def first_stage(self, image_bytes: bytes) -> IntermediateResult: ...

    async def second_stage(
        self,
        intermediate: IntermediateResult,
        persona: str,
        facet: str,
        language: str,
        user_name: Optional[str] = None,
    ) -> Interpretation: ...


class ValidationClassifier(Protocol):
    async def classify(self, image_bytes: bytes) -> ValidationResult: ...


class RejectionWriter(Protocol):
    async def write(self, description: str, language: str, user_name: Optional[str] = None) -> str: ...


class ChatResponder(Protocol):
    async def reply(
        self,
        identity: int,
        text: str,
        language: str,
        history: Optional[list[dict[str, Any]]] = None,
    ) -> Interpretation: ...


class Transport(Protocol):
    """Bot platform surface. Message handles are integer message ids."""

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> int: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> None: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> None: ...

    async def download_file(self, file_id: str, *, max_bytes: Optional[int] = None) -> bytes: ...

    async def answer_callback_query(
        self, callback_query_id: str, text: Optional[str] = None, *, show_alert: bool = False
    ) -> None: ...


class JobQueue(Protocol):
    def enqueue(
        self, kind: str, payload: dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Optional[int]: ...

    def dequeue(self, kind: str) -> Optional[dict[str, Any]]: ...

    def ack(self, kind: str, msg_id: int) -> bool: ...
