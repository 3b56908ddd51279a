"""
Tasseo Engine - Analysis Record Repository

CRUD over `analysis_history`. A record is created in `processing` by the
attempt that owns it and driven to exactly one terminal state by that same
attempt. Terminal updates are guarded with `status = processing`, so a record
that already reached a terminal state is never rewritten.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from tasseo.core.errors import RecordNotFoundError
from tasseo.models import AnalysisRecord, AnalysisStatus, Facet, IntermediateResult
from tasseo.supabase_client import execute, get_supabase_client

logger = logging.getLogger(__name__)

ANALYSIS_TABLE = "analysis_history"
CHAT_TABLE = "chat_messages"

_SELECT_COLUMNS = (
    "id, telegram_user_id, persona, topic, analysis_type, status, vision_result, "
    "interpretation, error_message, session_group_id, model_used, tokens_used, "
    "processing_time_ms, created_at, completed_at"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AnalysisRepository:
    def __init__(self, client: Any = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    async def create(
        self,
        *,
        identity: int,
        persona: str,
        facet: str,
        session_group_id: Optional[UUID],
        analysis_type: str = "photo",
    ) -> AnalysisRecord:
        row = {
            "telegram_user_id": identity,
            "persona": persona,
            "topic": facet,
            "analysis_type": analysis_type,
            "status": AnalysisStatus.PROCESSING.value,
            "session_group_id": str(session_group_id) if session_group_id else None,
        }
        response = await execute(self.client.table(ANALYSIS_TABLE).insert(row))
        rows = response.data or []
        if not rows:
            raise RecordNotFoundError("analysis_history insert returned no row")
        record = AnalysisRecord.from_row(rows[0])
        logger.info(
            "analysis_record_created id=%s identity=%s facet=%s group=%s",
            record.id,
            identity,
            facet,
            session_group_id,
        )
        return record

    async def get(self, record_id: UUID | str) -> Optional[AnalysisRecord]:
        response = await execute(
            self.client.table(ANALYSIS_TABLE)
            .select(_SELECT_COLUMNS)
            .eq("id", str(record_id))
            .limit(1)
        )
        rows = response.data or []
        return AnalysisRecord.from_row(rows[0]) if rows else None

    async def assign_group(self, record_id: UUID, session_group_id: UUID) -> None:
        await execute(
            self.client.table(ANALYSIS_TABLE)
            .update({"session_group_id": str(session_group_id)})
            .eq("id", str(record_id))
        )

    async def save_intermediate(self, record_id: UUID, intermediate: IntermediateResult) -> None:
        await execute(
            self.client.table(ANALYSIS_TABLE)
            .update({"vision_result": intermediate.model_dump(mode="json")})
            .eq("id", str(record_id))
        )

    async def _finish(self, record_id: UUID, status: AnalysisStatus, fields: dict[str, Any]) -> None:
        payload = {"status": status.value, **fields}
        response = await execute(
            self.client.table(ANALYSIS_TABLE)
            .update(payload)
            .eq("id", str(record_id))
            .eq("status", AnalysisStatus.PROCESSING.value)
        )
        if not (response.data or []):
            logger.warning(
                "analysis_record_not_transitioned id=%s to=%s (missing or already terminal)",
                record_id,
                status.value,
            )
            return
        logger.info("analysis_record_%s id=%s", status.value, record_id)

    async def mark_completed(
        self,
        record_id: UUID,
        *,
        interpretation: str,
        model_used: Optional[str],
        tokens_used: int,
        processing_time_ms: int,
    ) -> None:
        await self._finish(
            record_id,
            AnalysisStatus.COMPLETED,
            {
                "interpretation": interpretation,
                "model_used": model_used,
                "tokens_used": tokens_used,
                "processing_time_ms": processing_time_ms,
                "completed_at": _now_iso(),
            },
        )

    async def mark_failed(
        self, record_id: UUID, error_message: str, *, processing_time_ms: Optional[int] = None
    ) -> None:
        await self._finish(
            record_id,
            AnalysisStatus.FAILED,
            {"error_message": error_message, "processing_time_ms": processing_time_ms},
        )

    async def mark_rejected(
        self, record_id: UUID, error_message: str, *, processing_time_ms: Optional[int] = None
    ) -> None:
        await self._finish(
            record_id,
            AnalysisStatus.REJECTED,
            {"error_message": error_message, "processing_time_ms": processing_time_ms},
        )

    async def reopen_as_failed(self, record_id: UUID, error_message: str) -> None:
        """
        Move a `completed` record to `failed` when delivery of its text failed
        and the credit was refunded.
        """
        await execute(
            self.client.table(ANALYSIS_TABLE)
            .update({"status": AnalysisStatus.FAILED.value, "error_message": error_message})
            .eq("id", str(record_id))
            .eq("status", AnalysisStatus.COMPLETED.value)
        )
        logger.info("analysis_record_failed_after_completion id=%s", record_id)

    async def completed_facets(self, session_group_id: UUID) -> set[str]:
        response = await execute(
            self.client.table(ANALYSIS_TABLE)
            .select("topic")
            .eq("session_group_id", str(session_group_id))
            .eq("status", AnalysisStatus.COMPLETED.value)
            .neq("topic", Facet.ALL.value)
        )
        return {row["topic"] for row in (response.data or []) if row.get("topic")}

    async def has_completed_retopic(self, session_group_id: UUID, facet: str) -> bool:
        """True when a retopic reading of `facet` already completed in the group."""
        response = await execute(
            self.client.table(ANALYSIS_TABLE)
            .select("id")
            .eq("session_group_id", str(session_group_id))
            .eq("status", AnalysisStatus.COMPLETED.value)
            .eq("topic", facet)
            .eq("analysis_type", "retopic")
            .limit(1)
        )
        return bool(response.data)


class ChatHistoryRepository:
    """Conversation log used as context by the chat responder."""

    def __init__(self, client: Any = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    async def append(self, identity: int, role: str, content: str, *, message_type: str = "text") -> None:
        await execute(
            self.client.table(CHAT_TABLE).insert(
                {
                    "telegram_user_id": identity,
                    "role": role,
                    "content": content,
                    "message_type": message_type,
                }
            )
        )

    async def recent(self, identity: int, limit: int = 20) -> list[dict[str, Any]]:
        response = await execute(
            self.client.table(CHAT_TABLE)
            .select("role, content, created_at")
            .eq("telegram_user_id", identity)
            .order("created_at", desc=True)
            .limit(limit)
        )
        rows = list(response.data or [])
        rows.reverse()
        return rows
