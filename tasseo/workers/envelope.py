"""
Tasseo Engine - Job Envelope Schema

Contracts for messages on the `analyze_photo` and `chat_reply` queues.

A dequeued pgmq message looks like:

    {"msg_id": 12, "read_ct": 1, "vt": "...",
     "body": {"idempotency_key": "...", "kind": "analyze_photo", "payload": {...}}}

QueueMessage unwraps that shape; AnalysisJob / ChatReplyJob validate the
inner payload. A payload that fails validation is fatal: the runner moves it
to the dead-letter queue before any side effect.

Usage:
    from tasseo.workers.envelope import AnalysisJob, QueueMessage, parse_job

    message = QueueMessage.from_raw(raw)
    job = parse_job(AnalysisJob, message.payload)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Type, TypeVar
from uuid import NAMESPACE_URL, UUID, uuid5

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tasseo.core.errors import InvalidJobError
from tasseo.models import (
    CreditType,
    Facet,
    Persona,
    credit_type_for_facet,
    normalize_language,
)

ANALYZE_PHOTO = "analyze_photo"
CHAT_REPLY = "chat_reply"
DEAD_LETTER = "dead_letter"

JobT = TypeVar("JobT", bound=BaseModel)


def _reject_bool(v: Any) -> Any:
    if isinstance(v, bool):
        raise ValueError("must be an integer, not a boolean")
    return v


class AnalysisJob(BaseModel):
    """
    One request for a reading, fresh (file_id) or continuation (continuation_of).

    Immutable once enqueued: every redelivery carries the same payload, so the
    session_group_id is shared by all attempts of the job.
    """

    model_config = {"extra": "ignore", "frozen": True}

    telegram_user_id: int = Field(..., gt=0)
    chat_id: int
    message_id: int = Field(..., gt=0, description="Placeholder message edited with the result")
    file_id: Optional[str] = Field(default=None, min_length=1)
    facet: Facet = Facet.ALL
    persona: Persona = Persona.ARINA
    language: str = "ru"
    credit_type: Optional[CreditType] = None
    user_name: Optional[str] = Field(default=None, max_length=128)
    continuation_of: Optional[UUID] = None
    session_group_id: Optional[UUID] = None

    @field_validator("telegram_user_id", "chat_id", "message_id", mode="before")
    @classmethod
    def _no_bools(cls, v: Any) -> Any:
        return _reject_bool(v)

    @field_validator("language", mode="before")
    @classmethod
    def _normalize_language(cls, v: Any) -> str:
        return normalize_language(v if isinstance(v, str) else None)

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("credit_type") is None:
            try:
                data["credit_type"] = credit_type_for_facet(data.get("facet") or Facet.ALL).value
            except ValueError:
                pass  # the facet field reports the error
        if data.get("session_group_id") is None and data.get("continuation_of") is None:
            # Deterministic, so every redelivery of this payload lands in the same group
            seed = "tasseo:{}:{}:{}:{}".format(
                data.get("telegram_user_id"),
                data.get("chat_id"),
                data.get("message_id"),
                data.get("file_id"),
            )
            data["session_group_id"] = str(uuid5(NAMESPACE_URL, seed))
        return data

    @model_validator(mode="after")
    def _check_shape(self) -> "AnalysisJob":
        if self.continuation_of is None and not self.file_id:
            raise ValueError("fresh jobs require file_id")
        if self.continuation_of is not None and self.facet is Facet.ALL:
            raise ValueError("continuation jobs must request a single facet")
        return self

    @property
    def is_continuation(self) -> bool:
        return self.continuation_of is not None

    @property
    def billed_as(self) -> CreditType:
        return self.credit_type or credit_type_for_facet(self.facet)


class ChatReplyJob(BaseModel):
    model_config = {"extra": "ignore", "frozen": True}

    telegram_user_id: int = Field(..., gt=0)
    chat_id: int
    message_id: int = Field(..., gt=0)
    text: str = Field(..., min_length=1, max_length=10_000)
    language: str = "ru"

    @field_validator("telegram_user_id", "chat_id", "message_id", mode="before")
    @classmethod
    def _no_bools(cls, v: Any) -> Any:
        return _reject_bool(v)

    @field_validator("language", mode="before")
    @classmethod
    def _normalize_language(cls, v: Any) -> str:
        return normalize_language(v if isinstance(v, str) else None)


def parse_job(model: Type[JobT], payload: Any) -> JobT:
    """Validate a queue payload, raising InvalidJobError (fatal) on mismatch."""
    if not isinstance(payload, dict):
        raise InvalidJobError(f"payload must be an object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidJobError.from_validation_error(exc, payload) from exc


@dataclass(frozen=True)
class QueueMessage:
    """A dequeued message with its delivery counters."""

    msg_id: Optional[int]
    read_ct: int
    kind: Optional[str]
    payload: Any
    idempotency_key: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "QueueMessage":
        msg_id_raw = raw.get("msg_id")
        try:
            msg_id = int(msg_id_raw) if msg_id_raw is not None else None
        except (TypeError, ValueError):
            msg_id = None
        try:
            read_ct = max(1, int(raw.get("read_ct") or 1))
        except (TypeError, ValueError):
            read_ct = 1

        body = raw.get("payload")
        if body is None:
            body = raw.get("body")
        kind = None
        key = None
        if isinstance(body, dict) and "payload" in body and "kind" in body:
            kind = body.get("kind")
            key = body.get("idempotency_key")
            body = body.get("payload")
        return cls(msg_id=msg_id, read_ct=read_ct, kind=kind, payload=body, idempotency_key=key, raw=raw)


@dataclass(frozen=True)
class DeliveryContext:
    """
    What the pipeline knows about the current delivery.

    pgmq's read_ct counts deliveries including this one, so the attempt is
    final once read_ct reaches the configured ceiling.
    """

    msg_id: Optional[int]
    attempt: int
    max_attempts: int

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts
