"""
Object store capability interface.

Keys are relative paths (e.g. ``inbound/2024/05/3f2a.jpg``). ``url_for`` is
deterministic, so a message row can reference an object whose upload is still
waiting in the fallback queue.
"""

from abc import ABC, abstractmethod


class ObjectStore(ABC):

    @abstractmethod
    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        """
        Store ``data`` under ``key`` and return its URL.

        Re-uploading the same key overwrites it, so replays are idempotent.

        Raises:
            ObjectStoreError: the backend refused or was unreachable.
        """
        ...

    @abstractmethod
    def url_for(self, key: str) -> str:
        ...

    async def close(self) -> None:
        return None
