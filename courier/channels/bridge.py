"""
HTTP bridge channel.

Talks to a sidecar that owns the messaging session (QR pairing, session
storage) and exposes it over HTTP:

  POST /send    {"to": ..., "message": ...}            → {"success": true, "id": ...}
  POST /send    {"to": ..., "media": {...}, "caption"}  → same
  GET  /status  → {"connected": bool, "status": "connected" | "disconnected"}

503 means the session is not ready yet; other 4xx answers are permanent.
"""

import base64
import logging

import httpx

from ..exceptions import ChannelSendError
from .addressing import normalize_destination
from .base import ChannelStatus, MediaContent, MessageChannel, OutgoingContent, TextContent

logger = logging.getLogger(__name__)


class BridgeChannel(MessageChannel):
    name = "bridge"

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _payload(to: str, content: OutgoingContent) -> dict:
        if isinstance(content, TextContent):
            return {"to": to, "message": content.text}
        if isinstance(content, MediaContent):
            payload = {
                "to": to,
                "media": {
                    "mimetype": content.mime_type,
                    "data": base64.b64encode(content.data).decode("ascii"),
                    "filename": content.filename,
                },
            }
            if content.caption:
                payload["caption"] = content.caption
            return payload
        raise ChannelSendError(f"Unsupported content type {type(content).__name__}", retryable=False)

    async def send(self, destination: str, content: OutgoingContent) -> str | None:
        to = normalize_destination(destination)
        if to is None:
            raise ChannelSendError(f"Invalid destination {destination!r}", retryable=False)

        try:
            resp = await self._client.post("/send", json=self._payload(to, content))
        except httpx.TimeoutException as e:
            raise ChannelSendError(f"bridge timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ChannelSendError(f"bridge unreachable: {type(e).__name__}: {e}") from e

        if resp.status_code == 503:
            raise ChannelSendError("channel session not ready")
        if resp.is_error:
            detail = _error_detail(resp)
            raise ChannelSendError(
                f"bridge HTTP {resp.status_code}: {detail}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )

        data = resp.json() if resp.content else {}
        remote_id = data.get("id")
        logger.debug("Bridge delivered to %s (id=%s)", to, remote_id)
        return str(remote_id) if remote_id is not None else None

    async def status(self) -> ChannelStatus:
        try:
            resp = await self._client.get("/status")
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            return ChannelStatus(connected=False, detail=f"bridge unreachable: {e}")
        return ChannelStatus(
            connected=bool(data.get("connected")),
            detail=data.get("status", ""),
        )


def _error_detail(resp: httpx.Response) -> str:
    try:
        return str(resp.json().get("error") or resp.text[:200])
    except ValueError:
        return resp.text[:200]
