"""Object store adapters for message attachments."""

from courier.storage.base import ObjectStore
from courier.storage.local import LocalObjectStore
from courier.storage.supabase import SupabaseObjectStore

__all__ = ["LocalObjectStore", "ObjectStore", "SupabaseObjectStore"]
