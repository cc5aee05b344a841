"""Fetch attachment bytes referenced by a message's media_url."""

import logging
import mimetypes
import os
from urllib.parse import unquote, urlparse

import aiofiles
import httpx

from ..channels.base import MediaContent
from .backoff import retry_async

logger = logging.getLogger(__name__)

_DEFAULT_MIME = "application/octet-stream"


def _filename(url: str) -> str | None:
    name = os.path.basename(unquote(urlparse(url).path))
    return name or None


def _guess_mime(url: str, header: str | None) -> str:
    if header:
        return header.split(";")[0].strip() or _DEFAULT_MIME
    guessed, _ = mimetypes.guess_type(urlparse(url).path)
    return guessed or _DEFAULT_MIME


async def fetch_media(
    url: str,
    *,
    timeout: float = 30.0,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    transport: httpx.AsyncBaseTransport | None = None,
) -> MediaContent:
    """
    Download ``url`` and wrap it with its mime type.

    ``file://`` URLs (local object store) are read from disk. HTTP fetches are
    retried with exponential backoff on transport errors and 5xx answers.

    Raises:
        httpx.HTTPError / OSError once retries are exhausted.
    """
    parsed = urlparse(url)
    if parsed.scheme == "file":
        path = unquote(parsed.path)
        async with aiofiles.open(path, mode="rb") as f:
            data = await f.read()
        return MediaContent(data=data, mime_type=_guess_mime(url, None), filename=_filename(url))

    async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:

        async def _get() -> httpx.Response:
            resp = await client.get(url)
            if resp.status_code >= 500:
                resp.raise_for_status()
            return resp

        resp = await retry_async(
            _get,
            max_attempts=max_attempts,
            base_delay=base_delay,
            retry_on=(httpx.TransportError, httpx.HTTPStatusError),
            label=f"fetch {url}",
        )
        resp.raise_for_status()

    return MediaContent(
        data=resp.content,
        mime_type=_guess_mime(url, resp.headers.get("content-type")),
        filename=_filename(url),
    )
