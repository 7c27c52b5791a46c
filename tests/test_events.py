from __future__ import annotations

import allure

from plan_runner.orchestrator.events import EventBus, PlanEvent, PlanEventType

pytestmark = [
    allure.epic("Plan Runtime"),
    allure.feature("Observability Events"),
]


def test_subscribers_receive_only_requested_types() -> None:
    bus = EventBus()
    everything: list[PlanEventType] = []
    terminal: list[PlanEventType] = []
    bus.subscribe(lambda event: everything.append(event.event_type))
    bus.subscribe(
        lambda event: terminal.append(event.event_type),
        [PlanEventType.PLAN_COMPLETED, PlanEventType.PLAN_FAILED],
    )

    bus.emit(PlanEventType.PLAN_STARTED, "plan-1")
    bus.emit(PlanEventType.SUBTASK_STARTED, "plan-1", subtask_id="A")
    bus.emit(PlanEventType.PLAN_COMPLETED, "plan-1")

    assert everything == [
        PlanEventType.PLAN_STARTED,
        PlanEventType.SUBTASK_STARTED,
        PlanEventType.PLAN_COMPLETED,
    ]
    assert terminal == [PlanEventType.PLAN_COMPLETED]


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    received: list[PlanEvent] = []
    unsubscribe = bus.subscribe(received.append)

    bus.emit(PlanEventType.PLAN_STARTED, "plan-1")
    unsubscribe()
    unsubscribe()
    bus.emit(PlanEventType.PLAN_PAUSED, "plan-1")

    assert [event.event_type for event in received] == [PlanEventType.PLAN_STARTED]


def test_failing_handler_does_not_block_others() -> None:
    bus = EventBus()
    received: list[PlanEvent] = []

    def broken(event: PlanEvent) -> None:
        raise RuntimeError("handler bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    event = bus.emit(PlanEventType.SUBTASK_FAILED, "plan-1", subtask_id="A", reason="hard_timeout")

    assert received == [event]
    assert event.details == {"reason": "hard_timeout"}


def test_history_filters_by_plan_and_type_and_is_bounded() -> None:
    bus = EventBus(history_limit=3)
    bus.emit(PlanEventType.PLAN_STARTED, "plan-1")
    bus.emit(PlanEventType.PLAN_STARTED, "plan-2")
    bus.emit(PlanEventType.SUBTASK_STARTED, "plan-1", subtask_id="A")
    bus.emit(PlanEventType.SUBTASK_COMPLETED, "plan-1", subtask_id="A")

    assert [event.event_type for event in bus.history("plan-1")] == [
        PlanEventType.SUBTASK_STARTED,
        PlanEventType.SUBTASK_COMPLETED,
    ]
    assert len(bus.history()) == 3
    assert bus.history(event_types=[PlanEventType.PLAN_STARTED])[0].plan_id == "plan-2"


def test_payload_carries_identifiers_and_utc_timestamp() -> None:
    event = PlanEvent(
        event_type=PlanEventType.CHECKPOINT_CREATED,
        plan_id="plan-1",
        details={"trigger": "interval"},
    )

    payload = event.to_payload()

    assert payload["type"] == "checkpoint_created"
    assert payload["planId"] == "plan-1"
    assert payload["subtaskId"] is None
    assert payload["id"] == event.event_id
    assert payload["timestamp"].endswith("Z") or payload["timestamp"].endswith("+00:00")
    assert payload["details"] == {"trigger": "interval"}
