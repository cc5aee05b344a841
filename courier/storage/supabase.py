"""Supabase Storage object store (``/storage/v1``)."""

import logging
from urllib.parse import quote

import httpx

from ..exceptions import ObjectStoreError
from .base import ObjectStore

logger = logging.getLogger(__name__)


class SupabaseObjectStore(ObjectStore):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        bucket: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/storage/v1",
            headers={"apikey": api_key, "Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        path = f"/object/{self.bucket}/{quote(key)}"
        try:
            resp = await self._client.post(
                path,
                content=data,
                headers={"Content-Type": content_type, "x-upsert": "true"},
            )
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"upload {key}: {type(e).__name__}: {e}") from e
        if resp.is_error:
            raise ObjectStoreError(f"upload {key}: HTTP {resp.status_code}: {resp.text[:200]}")
        logger.debug("Uploaded %s (%d bytes, %s)", key, len(data), content_type)
        return self.url_for(key)
