"""
ledger_services.events -- Sync outcome notifications.

Responsibility:
    Deliver "entry applied", "entry failed" and "queue changed" events from
    the replay worker to subscribers (the action facade's futures, a UI).

Architecture position:
    Services -- in-process only.  Events are not persisted; the queue table
    is the durable record.

Invariants enforced:
    - Subscribers are called synchronously, in subscription order, on the
      publishing thread (the worker thread for sync outcomes).
    - A failing subscriber is logged and never stops delivery to the rest.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

from ledger_kernel.logging_config import get_logger

logger = get_logger("services.events")


class SyncEventKind(str, Enum):
    ENTRY_APPLIED = "entry_applied"
    ENTRY_FAILED = "entry_failed"
    QUEUE_CHANGED = "queue_changed"


@dataclass(frozen=True)
class SyncEvent:
    """
    One sync outcome.

    ``error`` is the typed LedgerKernelError for ENTRY_FAILED; ``result`` is
    the remote's answer for ENTRY_APPLIED; ``queue_size`` is the number of
    entries still in the queue.
    """

    kind: SyncEventKind
    entry_id: UUID | None = None
    correlation_id: str | None = None
    action: str | None = None
    table_name: str | None = None
    result: Any = None
    error: Exception | None = None
    queue_size: int | None = None


Subscriber = Callable[[SyncEvent], None]


class SyncEventBus:
    """Thread-safe publish/subscribe for SyncEvent."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[SyncEventKind | None, Subscriber]] = []

    def subscribe(
        self, callback: Subscriber, kind: SyncEventKind | None = None
    ) -> Callable[[], None]:
        """
        Register ``callback`` for ``kind`` (every kind when None).

        Returns:
            A function that removes the subscription.
        """
        token = (kind, callback)
        with self._lock:
            self._subscribers.append(token)

        def unsubscribe() -> None:
            with self._lock:
                if token in self._subscribers:
                    self._subscribers.remove(token)

        return unsubscribe

    def publish(self, event: SyncEvent) -> None:
        with self._lock:
            targets = [cb for kind, cb in self._subscribers if kind is None or kind == event.kind]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "event_subscriber_failed",
                    extra={"event_kind": event.kind.value, "entry_id": str(event.entry_id)},
                )
