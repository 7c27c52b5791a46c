"""In-process event stream for plan observability."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from plan_runner.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)


class PlanEventType(str, Enum):
    """Observable event kinds."""

    PLAN_STARTED = "plan_started"
    PLAN_PAUSED = "plan_paused"
    PLAN_RESUMED = "plan_resumed"
    PLAN_CANCELED = "plan_canceled"
    PLAN_COMPLETED = "plan_completed"
    PLAN_FAILED = "plan_failed"
    SUBTASK_STARTED = "subtask_started"
    SUBTASK_COMPLETED = "subtask_completed"
    SUBTASK_FAILED = "subtask_failed"
    SUBTASK_OUTPUT = "subtask_output"
    CHECKPOINT_CREATED = "checkpoint_created"


@dataclass(slots=True)
class PlanEvent:
    """One event with plan/subtask identifiers and a UTC timestamp."""

    event_type: PlanEventType
    plan_id: str
    subtask_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.event_type.value,
            "planId": self.plan_id,
            "subtaskId": self.subtask_id,
            "timestamp": to_iso(self.created_at),
            "details": self.details,
        }


EventHandler = Callable[[PlanEvent], None]


@dataclass(slots=True, eq=False)
class _Subscription:
    handler: EventHandler
    event_types: frozenset[PlanEventType] | None


class EventBus:
    """Synchronous publish/subscribe with a bounded in-memory history.

    Handlers run on the publishing thread. A failing handler is logged and does
    not prevent delivery to the others.
    """

    def __init__(self, *, history_limit: int = 1_000) -> None:
        self._subscriptions: list[_Subscription] = []
        self._history: deque[PlanEvent] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Iterable[PlanEventType] | None = None,
    ) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""

        subscription = _Subscription(
            handler=handler,
            event_types=frozenset(event_types) if event_types is not None else None,
        )
        with self._lock:
            self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return _unsubscribe

    def publish(self, event: PlanEvent) -> PlanEvent:
        with self._lock:
            self._history.append(event)
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            wanted = subscription.event_types
            if wanted is not None and event.event_type not in wanted:
                continue
            try:
                subscription.handler(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Event handler failed for %s on plan %s",
                    event.event_type.value,
                    event.plan_id,
                )
        return event

    def emit(
        self,
        event_type: PlanEventType,
        plan_id: str,
        *,
        subtask_id: str | None = None,
        **details: Any,
    ) -> PlanEvent:
        return self.publish(
            PlanEvent(
                event_type=event_type,
                plan_id=plan_id,
                subtask_id=subtask_id,
                details=details,
            ),
        )

    def history(
        self,
        plan_id: str | None = None,
        event_types: Iterable[PlanEventType] | None = None,
    ) -> list[PlanEvent]:
        wanted = frozenset(event_types) if event_types is not None else None
        with self._lock:
            events = list(self._history)
        return [
            event
            for event in events
            if (plan_id is None or event.plan_id == plan_id)
            and (wanted is None or event.event_type in wanted)
        ]
