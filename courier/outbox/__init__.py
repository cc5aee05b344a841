"""Outbox Store: message records and the claim protocol."""

from courier.outbox.rest_store import RestOutboxStore
from courier.outbox.sqlite_store import SqliteOutboxStore
from courier.outbox.store import OutboxStore, next_status

__all__ = ["OutboxStore", "RestOutboxStore", "SqliteOutboxStore", "next_status"]
