from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from tasseo.config import Settings, get_settings
from tasseo.supabase_client import get_supabase_credentials

API_PREFIX = "/rest/v1/rpc"


class QueueRpcNotFound(RuntimeError):
    """Raised when Supabase RPC endpoints are missing."""


logger = logging.getLogger(__name__)


class QueueClient:
    """
    pgmq access through the queue_job / dequeue_job / ack_job RPCs.

    dequeue_job reads with a visibility timeout; a message that is not acked
    becomes visible again and comes back with read_ct + 1.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        url, key = get_supabase_credentials(settings or get_settings())
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._rpc_base_url = url.rstrip("/") + API_PREFIX
        self._client = httpx.Client(base_url=self._rpc_base_url, headers=headers, timeout=10.0)

    def __enter__(self) -> "QueueClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - context helper
        self.close()

    def close(self) -> None:
        self._client.close()

    @property
    def rpc_base_url(self) -> str:
        return self._rpc_base_url

    def enqueue(
        self, kind: str, payload: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Optional[int]:
        """
        Queue a job. Returns the pgmq msg_id, or None when the RPC accepted
        the call but created nothing (duplicate idempotency key).
        """
        envelope = {
            "idempotency_key": idempotency_key,
            "kind": kind,
            "payload": payload,
        }
        logger.debug("Queue enqueue request: %s", envelope)
        response = self._client.post("/queue_job", json={"payload": envelope})
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                logger.error("queue_job RPC not found at /rest/v1/rpc/queue_job")
                raise QueueRpcNotFound("queue_job RPC not found") from exc
            raise
        data = response.json()
        if isinstance(data, dict):
            msg_id = data.get("queue_job") or next(iter(data.values()), None)
        else:
            msg_id = data
        if msg_id is None:
            logger.info("queue_job returned no id for kind=%s key=%s", kind, idempotency_key)
            return None
        logger.debug("Enqueued %s job => id=%s", kind, msg_id)
        return int(msg_id)

    def dequeue(self, kind: str) -> Optional[Dict[str, Any]]:
        response = self._client.post("/dequeue_job", json={"kind": kind})
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                logger.error("dequeue_job RPC not found for kind=%s", kind)
                raise QueueRpcNotFound("dequeue_job RPC not found") from exc
            raise
        payload = response.json()
        if isinstance(payload, dict) and "dequeue_job" in payload:
            payload = payload["dequeue_job"]
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not payload:
            return None
        if isinstance(payload, dict):
            result: Dict[str, Any] = dict(payload)
            body = result.get("body")
            payload_field = result.get("payload")
            if body is None and result.get("message") is not None:
                body = result["message"]
                result["body"] = body
            if body is not None and payload_field is None:
                result["payload"] = body
            elif payload_field is not None and body is None:
                result["body"] = payload_field
            logger.debug("Dequeued %s job: %s", kind, result)
            return result
        logger.debug("Dequeued %s job: %s", kind, payload)
        return payload

    def ack(self, kind: str, msg_id: int) -> bool:
        response = self._client.post("/ack_job", json={"kind": kind, "msg_id": msg_id})
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                logger.info("ack_job RPC not found or message %s already acknowledged", msg_id)
                return True
            raise
        if response.content:
            try:
                data = response.json()
            except ValueError:  # plain text/null
                data = None
            if isinstance(data, dict) and "ack_job" in data:
                logger.debug("Acknowledged %s job id=%s => %s", kind, msg_id, data["ack_job"])
            else:
                logger.debug("Acknowledged %s job id=%s", kind, msg_id)
        else:
            logger.debug("Acknowledged %s job id=%s", kind, msg_id)
        return True
