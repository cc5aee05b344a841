"""
Outbox Store on a PostgREST endpoint (Supabase ``/rest/v1``).

Claims are one PATCH whose filters carry the precondition
(``status=eq.approved&in_progress=is.false``). With
``Prefer: return=representation`` the response lists the rows that matched,
so an empty list means another dispatcher won.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..exceptions import TransientStoreError
from ..models import AuditEntry, MessageDraft, MessageId, MessageRecord, MessageStatus
from .store import OutboxStore, next_status

logger = logging.getLogger(__name__)

_RETURN_ROWS = {"Prefer": "return=representation"}
_RETURN_NONE = {"Prefer": "return=minimal"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RestOutboxStore(OutboxStore):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            resp = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise TransientStoreError(f"{method} {path}: {type(e).__name__}: {e}") from e
        if resp.is_error:
            if resp.status_code < 500:
                logger.error(
                    "Outbox store rejected %s %s: HTTP %d %s",
                    method, path, resp.status_code, resp.text[:200],
                )
            raise TransientStoreError(
                f"{method} {path}: HTTP {resp.status_code}: {resp.text[:200]}"
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            # e.g. a proxy maintenance page served with 200
            raise TransientStoreError(
                f"{method} {path}: non-JSON response ({resp.headers.get('content-type')}): {resp.text[:200]}"
            ) from e

    async def list_claimable(self, limit: int, max_attempts: int) -> list[MessageRecord]:
        rows = await self._request(
            "GET",
            "/messages",
            params={
                "select": "*",
                "status": f"eq.{MessageStatus.APPROVED.value}",
                "in_progress": "is.false",
                "attempt_count": f"lt.{max_attempts}",
                "order": "created_at.asc,id.asc",
                "limit": str(limit),
            },
        )
        return [MessageRecord.model_validate(row) for row in rows or []]

    async def claim(self, message_id: MessageId) -> MessageRecord | None:
        rows = await self._request(
            "PATCH",
            "/messages",
            params={
                "id": f"eq.{message_id}",
                "status": f"eq.{MessageStatus.APPROVED.value}",
                "in_progress": "is.false",
            },
            json={"in_progress": True, "claimed_at": _now()},
            headers=_RETURN_ROWS,
        )
        return MessageRecord.model_validate(rows[0]) if rows else None

    async def mark_sent(self, message_id: MessageId, remote_message_id: str | None) -> None:
        body: dict[str, Any] = {
            "status": MessageStatus.SENT.value,
            "in_progress": False,
            "claimed_at": None,
        }
        if remote_message_id is not None:
            body["remote_message_id"] = remote_message_id
        await self._request(
            "PATCH",
            "/messages",
            params={
                "id": f"eq.{message_id}",
                "status": f"eq.{MessageStatus.APPROVED.value}",
            },
            json=body,
            headers=_RETURN_NONE,
        )
        logger.debug("Message %s marked as sent", message_id)

    async def mark_failed_attempt(
        self,
        message_id: MessageId,
        new_attempt_count: int,
        max_attempts: int,
    ) -> None:
        status = next_status(new_attempt_count, max_attempts)
        await self._request(
            "PATCH",
            "/messages",
            params={
                "id": f"eq.{message_id}",
                "status": f"eq.{MessageStatus.APPROVED.value}",
                # never move attempt_count backwards
                "attempt_count": f"lte.{new_attempt_count}",
            },
            json={
                "status": status.value,
                "in_progress": False,
                "claimed_at": None,
                "attempt_count": new_attempt_count,
            },
            headers=_RETURN_NONE,
        )

    async def release_stale_claims(self, older_than: float) -> int:
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than)).isoformat()
        rows = await self._request(
            "PATCH",
            "/messages",
            params={
                "in_progress": "is.true",
                "status": f"eq.{MessageStatus.APPROVED.value}",
                "claimed_at": f"lt.{cutoff}",
                "select": "id",
            },
            json={"in_progress": False, "claimed_at": None},
            headers=_RETURN_ROWS,
        )
        return len(rows or [])

    async def insert_message(self, draft: MessageDraft) -> MessageRecord:
        rows = await self._request(
            "POST",
            "/messages",
            json=draft.model_dump(mode="json"),
            headers=_RETURN_ROWS,
        )
        return MessageRecord.model_validate(rows[0])

    async def insert_audit(self, entry: AuditEntry) -> None:
        await self._request(
            "POST",
            "/audit_log",
            json=entry.model_dump(mode="json"),
            headers=_RETURN_NONE,
        )

    async def find_or_create_chat(self, address: str) -> MessageId:
        rows = await self._request(
            "POST",
            "/chats",
            params={"on_conflict": "address", "select": "id"},
            json={"address": address},
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return rows[0]["id"]

    async def get_message(self, message_id: MessageId) -> MessageRecord | None:
        rows = await self._request(
            "GET",
            "/messages",
            params={"select": "*", "id": f"eq.{message_id}"},
        )
        return MessageRecord.model_validate(rows[0]) if rows else None
