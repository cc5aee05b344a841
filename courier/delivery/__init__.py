"""Outbound delivery: dispatch loop, fallback queue and its flush loop."""

from courier.delivery.backoff import backoff_delay, retry_async
from courier.delivery.dispatcher import DispatchStats, DispatchWorker
from courier.delivery.fallback import FallbackQueue
from courier.delivery.flusher import FlushStats, FlushWorker
from courier.delivery.writer import DurableWriter

__all__ = [
    "DispatchStats",
    "DispatchWorker",
    "DurableWriter",
    "FallbackQueue",
    "FlushStats",
    "FlushWorker",
    "backoff_delay",
    "retry_async",
]
