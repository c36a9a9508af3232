"""Notification primitives and progress event delivery for KidGoals."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Mapping, Sequence

from .models import ProgressEvent, utcnow
from .money import format_currency
from .ops import StructuredLogger

ProgressListener = Callable[[ProgressEvent], None]


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationType(str, Enum):
    GOAL_PROGRESS = "goal_progress"
    GOAL_MILESTONE = "goal_milestone"
    GOAL_COMPLETED = "goal_completed"
    PARENT_MATCH = "parent_match"
    CHALLENGE_COMPLETED = "challenge_completed"
    OTHER = "other"


@dataclass(slots=True)
class Notification:
    """Simple representation of a notification waiting to be delivered."""

    recipient: str
    channel: NotificationChannel
    type: NotificationType
    subject: str
    body: str
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, str]:
        payload = {
            "recipient": self.recipient,
            "channel": self.channel.value,
            "type": self.type.value,
            "subject": self.subject,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
        }
        payload.update(self.metadata)
        return payload


class NotificationCenter:
    """In-memory notification inbox used for tests and integrations.

    Delivered notifications are kept for the latest ``history_limit`` entries.
    """

    def __init__(self, *, history_limit: int = 1_000) -> None:
        self._queue: List[Notification] = []
        self._sent: deque[Notification] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def queue(self, notification: Notification) -> None:
        with self._lock:
            self._queue.append(notification)

    def pending(self, *, notification_type: NotificationType | None = None) -> Sequence[Notification]:
        with self._lock:
            if notification_type is None:
                return tuple(self._queue)
            return tuple(item for item in self._queue if item.type is notification_type)

    def pop_all(self) -> Sequence[Notification]:
        with self._lock:
            pending = tuple(self._queue)
            self._queue.clear()
            self._sent.extend(pending)
        return pending

    def history(self) -> Sequence[Notification]:
        with self._lock:
            return tuple(self._sent)


class ProgressEventPublisher:
    """Synchronous broadcaster for committed progress events.

    A failing listener is logged and skipped; it never affects the unit of
    work that produced the event, which has already committed.
    """

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self.logger = logger or StructuredLogger()
        self._listeners: list[ProgressListener] = []

    def register(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def unregister(self, listener: ProgressListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def publish(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                self.logger.log(
                    "progress_event_delivery_failed",
                    event_id=event.event_id,
                    goal_id=event.goal_id,
                    listener=getattr(listener, "__qualname__", type(listener).__name__),
                    error=type(exc).__name__,
                    message=str(exc),
                )


class GoalNotificationListener:
    """Turn progress events into notifications for the child's inbox.

    The latest ``remember`` event ids are kept to drop redelivered events.
    """

    def __init__(
        self,
        center: NotificationCenter,
        *,
        recipients: Mapping[str, str] | None = None,
        channel: NotificationChannel = NotificationChannel.PUSH,
        remember: int = 10_000,
    ) -> None:
        self.center = center
        self.recipients: Dict[str, str] = dict(recipients or {})
        self.channel = channel
        self._seen: set[str] = set()
        self._seen_order: deque[str] = deque()
        self._remember = remember
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            if event.event_id in self._seen:
                return
            self._seen.add(event.event_id)
            self._seen_order.append(event.event_id)
            if len(self._seen_order) > self._remember:
                self._seen.discard(self._seen_order.popleft())
        for notification in self.notifications_for(event):
            self.center.queue(notification)

    def notifications_for(self, event: ProgressEvent) -> List[Notification]:
        metadata = {"goal_id": event.goal_id, "event_id": event.event_id}
        notifications = []
        if event.match_amount_added is not None:
            notifications.append(
                self._build(
                    event,
                    NotificationType.PARENT_MATCH,
                    "Parent match added",
                    f"Your parent matched {format_currency(event.match_amount_added)} towards '{event.goal_name}'.",
                    metadata,
                )
            )
        for percent in event.milestones_reached:
            notifications.append(
                self._build(
                    event,
                    NotificationType.GOAL_MILESTONE,
                    f"{percent}% milestone reached",
                    f"You've reached {percent}% of your goal '{event.goal_name}'!",
                    metadata,
                )
            )
        if event.challenge_bonus_added is not None:
            notifications.append(
                self._build(
                    event,
                    NotificationType.CHALLENGE_COMPLETED,
                    "Challenge completed",
                    f"Challenge beaten! {format_currency(event.challenge_bonus_added)} bonus added to '{event.goal_name}'.",
                    metadata,
                )
            )
        if event.is_completed:
            notifications.append(
                self._build(
                    event,
                    NotificationType.GOAL_COMPLETED,
                    "Goal completed",
                    f"You saved {format_currency(event.new_amount)} and completed '{event.goal_name}'!",
                    metadata,
                )
            )
        return notifications

    def _build(
        self,
        event: ProgressEvent,
        kind: NotificationType,
        subject: str,
        body: str,
        metadata: Dict[str, str],
    ) -> Notification:
        return Notification(
            recipient=self.recipients.get(event.child_id, event.child_id),
            channel=self.channel,
            type=kind,
            subject=subject,
            body=body,
            metadata=dict(metadata),
        )


__all__ = [
    "GoalNotificationListener",
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationType",
    "ProgressEventPublisher",
    "ProgressListener",
]
