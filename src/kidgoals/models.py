"""Domain enums and value objects used by the KidGoals package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple, overload
from uuid import uuid4


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime (the storage convention)."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


@overload
def as_utc(value: datetime) -> datetime: ...


@overload
def as_utc(value: None) -> None: ...


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Bring a caller supplied timestamp to naive UTC; naive values are taken as UTC already."""

    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class GoalStatus(str, Enum):
    """Lifecycle of a savings goal."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    PURCHASED = "purchased"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (GoalStatus.PURCHASED, GoalStatus.CANCELLED)


class GoalCategory(str, Enum):
    """What the child is saving for."""

    TOY = "toy"
    GAME = "game"
    ELECTRONICS = "electronics"
    CLOTHING = "clothing"
    EXPERIENCE = "experience"
    SAVINGS = "savings"
    CHARITY = "charity"
    OTHER = "other"


class AutoTransferType(str, Enum):
    """How allowance is swept into a goal when the allowance engine credits it."""

    NONE = "none"
    FIXED_AMOUNT = "fixed_amount"
    PERCENTAGE = "percentage"


class ContributionType(str, Enum):
    """Enumerates the kinds of goal ledger entries."""

    CHILD_DEPOSIT = "child_deposit"
    AUTO_TRANSFER = "auto_transfer"
    PARENT_MATCH = "parent_match"
    PARENT_GIFT = "parent_gift"
    CHALLENGE_BONUS = "challenge_bonus"
    MILESTONE_BONUS = "milestone_bonus"
    WITHDRAWAL = "withdrawal"
    EXTERNAL_GIFT = "external_gift"


class MatchingType(str, Enum):
    """Supported parent matching formulas."""

    RATIO_MATCH = "ratio_match"
    PERCENTAGE_MATCH = "percentage_match"


class ChallengeStatus(str, Enum):
    """Lifecycle of a time-bound savings challenge."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class AchievedMilestone:
    """A ladder step that became achieved during one unit of work."""

    milestone_id: str
    percent_complete: int
    target_amount: Decimal
    achieved_at: datetime
    bonus_amount: Optional[Decimal] = None
    celebration_message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ChallengeResolution:
    """Outcome of a challenge completed by goal progress."""

    challenge_id: str
    bonus_amount: Decimal
    completed_at: datetime


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Snapshot emitted after a committed change to a goal's balance.

    Delivery is at-least-once; consumers deduplicate on ``event_id``.
    """

    goal_id: str
    goal_name: str
    child_id: str
    new_amount: Decimal
    target_amount: Decimal
    percentage: Decimal
    is_completed: bool
    contribution_type: ContributionType
    milestones_reached: Tuple[int, ...] = ()
    match_amount_added: Optional[Decimal] = None
    challenge_bonus_added: Optional[Decimal] = None
    event_id: str = field(default_factory=lambda: uuid4().hex)
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def milestone_reached(self) -> Optional[int]:
        """Highest milestone percentage crossed by this change, if any."""

        return self.milestones_reached[-1] if self.milestones_reached else None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "goal_id": self.goal_id,
            "goal_name": self.goal_name,
            "child_id": self.child_id,
            "new_amount": str(self.new_amount),
            "target_amount": str(self.target_amount),
            "percentage": str(self.percentage),
            "milestone_reached": self.milestone_reached,
            "milestones_reached": list(self.milestones_reached),
            "is_completed": self.is_completed,
            "match_amount_added": None if self.match_amount_added is None else str(self.match_amount_added),
            "challenge_bonus_added": (
                None if self.challenge_bonus_added is None else str(self.challenge_bonus_added)
            ),
            "contribution_type": self.contribution_type.value,
            "occurred_at": self.occurred_at.isoformat(),
        }


__all__ = [
    "AchievedMilestone",
    "AutoTransferType",
    "ChallengeResolution",
    "ChallengeStatus",
    "ContributionType",
    "GoalCategory",
    "GoalStatus",
    "MatchingType",
    "ProgressEvent",
    "as_utc",
    "utcnow",
]
