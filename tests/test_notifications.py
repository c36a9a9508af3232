from datetime import timedelta
from decimal import Decimal

from kidgoals.models import ContributionType, MatchingType, ProgressEvent
from kidgoals.notifications import (
    GoalNotificationListener,
    NotificationCenter,
    NotificationType,
    ProgressEventPublisher,
)
from kidgoals.ops import StructuredLogger
from kidgoals.service import GoalService


def make_event(**overrides: object) -> ProgressEvent:
    values = {
        "goal_id": "goal-1",
        "goal_name": "Bike",
        "child_id": "kid",
        "new_amount": Decimal("60.00"),
        "target_amount": Decimal("100.00"),
        "percentage": Decimal("60.00"),
        "is_completed": False,
        "contribution_type": ContributionType.CHILD_DEPOSIT,
    }
    values.update(overrides)
    return ProgressEvent(**values)


def test_event_payload_uses_exact_strings() -> None:
    event = make_event(milestones_reached=(25, 50), match_amount_added=Decimal("10.00"))
    payload = event.as_dict()

    assert payload["new_amount"] == "60.00"
    assert payload["milestone_reached"] == 50
    assert payload["milestones_reached"] == [25, 50]
    assert payload["match_amount_added"] == "10.00"
    assert payload["challenge_bonus_added"] is None
    assert payload["contribution_type"] == "child_deposit"
    assert make_event().event_id != make_event().event_id


def test_failing_listener_does_not_block_others() -> None:
    logger = StructuredLogger()
    publisher = ProgressEventPublisher(logger=logger)
    received: list[str] = []

    def broken(event: ProgressEvent) -> None:
        raise ConnectionError("push service down")

    publisher.register(broken)
    publisher.register(lambda event: received.append(event.event_id))
    event = make_event()

    publisher.publish(event)

    assert received == [event.event_id]
    [failure] = logger.events("progress_event_delivery_failed")
    assert failure["event_id"] == event.event_id
    assert failure["error"] == "ConnectionError"

    publisher.unregister(broken)
    publisher.unregister(broken)
    publisher.publish(make_event())
    assert len(received) == 2
    assert len(logger.events("progress_event_delivery_failed")) == 1


def test_listener_is_idempotent_per_event() -> None:
    center = NotificationCenter()
    listener = GoalNotificationListener(center, recipients={"kid": "kid@example.com"})
    event = make_event(milestones_reached=(50,), is_completed=False)

    listener(event)
    listener(event)

    [notification] = center.pending()
    assert notification.type is NotificationType.GOAL_MILESTONE
    assert notification.recipient == "kid@example.com"
    assert notification.metadata["event_id"] == event.event_id
    assert center.pop_all() == (notification,)
    assert center.pending() == ()
    assert center.history() == (notification,)


def test_service_notifies_after_commit(service: GoalService) -> None:
    service.open_account("kid", 200)
    goal = service.create_goal("kid", "Bike", 100)
    service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, 1)
    service.create_challenge(goal.id, 60, service.clock() + timedelta(days=1), 5)
    seen: list[ProgressEvent] = []
    service.publisher.register(seen.append)

    service.contribute(goal.id, 50)

    kinds = [item.type for item in service.notifications.pending()]
    assert kinds == [
        NotificationType.PARENT_MATCH,
        NotificationType.GOAL_MILESTONE,
        NotificationType.GOAL_MILESTONE,
        NotificationType.GOAL_MILESTONE,
        NotificationType.GOAL_MILESTONE,
        NotificationType.CHALLENGE_COMPLETED,
        NotificationType.GOAL_COMPLETED,
    ]
    [event] = seen
    assert event.new_amount == Decimal("105.00")
    assert event.is_completed


def test_in_memory_histories_are_bounded() -> None:
    logger = StructuredLogger(max_entries=3)
    for index in range(5):
        logger.log("tick", index=index)
    assert [entry["index"] for entry in logger.tail()] == [2, 3, 4]
    assert [entry["index"] for entry in logger.tail(2)] == [3, 4]

    center = NotificationCenter(history_limit=2)
    listener = GoalNotificationListener(center, remember=2)
    first, second, third = (make_event(milestones_reached=(25,)) for _ in range(3))
    for event in (first, second, third):
        listener(event)
    center.pop_all()
    assert [item.metadata["event_id"] for item in center.history()] == [second.event_id, third.event_id]

    listener(third)
    assert center.pending() == ()
    listener(first)
    assert [item.metadata["event_id"] for item in center.pending()] == [first.event_id]
