from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("app.live")

EVENT_ATTENDANCE_RECORDED = "attendance_recorded"
EVENT_SESSION_ENDED = "session_ended"


@dataclass(frozen=True)
class LiveEvent:
    session_id: str
    kind: str
    sequence: int
    published_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Latest-only mailbox for one listener of one session.

    Bursts of publishes collapse into the most recent event; a listener is
    only guaranteed to see the newest state, not every intermediate one.
    A pending session_ended is terminal and is never replaced.
    """

    def __init__(self, broker: StatsBroker, session_id: str) -> None:
        self.session_id = session_id
        self._broker = broker
        self._condition = threading.Condition()
        self._pending: LiveEvent | None = None
        self._closed = False
        self.coalesced = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: LiveEvent) -> None:
        with self._condition:
            if self._closed:
                return
            if self._pending is not None:
                self.coalesced += 1
                if self._pending.kind == EVENT_SESSION_ENDED:
                    return
            self._pending = event
            self._condition.notify_all()

    def wait(self, timeout: float | None = None) -> LiveEvent | None:
        with self._condition:
            if self._pending is None and not self._closed:
                self._condition.wait(timeout=timeout)
            event = self._pending
            self._pending = None
            return event

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        self._broker._unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()


class StatsBroker:
    """In-process publish/subscribe channel scoped per attendance session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._sequence = 0

    def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(self, session_id)
        with self._lock:
            self._subscribers[session_id].add(subscription)
        logger.info("live_subscribed", extra={"session_id": session_id})
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._subscribers.get(subscription.session_id)
            if listeners is None:
                return
            listeners.discard(subscription)
            if not listeners:
                self._subscribers.pop(subscription.session_id, None)

    def subscriber_count(self, session_id: str | None = None) -> int:
        with self._lock:
            if session_id is None:
                return sum(len(listeners) for listeners in self._subscribers.values())
            return len(self._subscribers.get(session_id, ()))

    def publish(self, session_id: str, kind: str, payload: dict[str, Any] | None = None) -> int:
        with self._lock:
            self._sequence += 1
            event = LiveEvent(
                session_id=session_id,
                kind=kind,
                sequence=self._sequence,
                published_at=datetime.now(timezone.utc),
                payload=dict(payload or {}),
            )
            listeners = list(self._subscribers.get(session_id, ()))

        for subscription in listeners:
            subscription._deliver(event)
        return len(listeners)


_broker = StatsBroker()


def get_broker() -> StatsBroker:
    return _broker


def notify_safely(
    broker: StatsBroker,
    session_id: str,
    kind: str,
    payload: dict[str, Any] | None = None,
) -> None:
    # Fan-out runs after the write is committed and must never undo it.
    try:
        broker.publish(session_id, kind, payload)
    except Exception:
        logger.exception(
            "live_publish_failed",
            extra={"session_id": session_id, "kind": kind},
        )
