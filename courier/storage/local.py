"""Filesystem object store for single-host deployments and tests."""

import logging
import os
from pathlib import Path

import aiofiles

from ..exceptions import ObjectStoreError
from .base import ObjectStore

logger = logging.getLogger(__name__)


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ObjectStoreError(f"Key escapes storage root: {key!r}")
        return path

    def url_for(self, key: str) -> str:
        return self._path(key).as_uri()

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp, mode="wb") as f:
                await f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            raise ObjectStoreError(f"upload {key}: {e}") from e
        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)
        return path.as_uri()
