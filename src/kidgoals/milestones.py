"""Milestone ladder evaluation."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlmodel import Session

from .models import AchievedMilestone, utcnow
from .ops import StructuredLogger
from .persistence import GoalMilestone, SavingsGoal


def is_reached(goal: SavingsGoal, milestone: GoalMilestone) -> bool:
    """True once ``current / target * 100 >= percent_complete`` (exact integer arithmetic)."""

    return goal.current_cents * 100 >= milestone.percent_complete * goal.target_cents


class MilestoneLadder:
    """Mark newly crossed ladder steps as achieved, lowest first.

    Achievement is one-way. Steps are checked in ascending order and the walk
    stops at the first step that is not reached, so achieved steps always
    form a prefix of the ladder.
    """

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self.logger = logger or StructuredLogger()

    def evaluate(
        self,
        session: Session,
        goal: SavingsGoal,
        milestones: Sequence[GoalMilestone],
        *,
        at: Optional[datetime] = None,
        pay_bonus: Optional[Callable[[GoalMilestone], None]] = None,
    ) -> List[AchievedMilestone]:
        """Return the steps achieved by this call.

        ``pay_bonus`` is invoked once for every newly achieved step carrying a
        bonus, before the next step is checked, so a bonus counts towards the
        steps above it.
        """

        moment = at or utcnow()
        achieved: List[AchievedMilestone] = []
        for milestone in sorted(milestones, key=lambda item: item.percent_complete):
            if milestone.is_achieved:
                continue
            if not is_reached(goal, milestone):
                break
            milestone.is_achieved = True
            milestone.achieved_at = moment
            session.add(milestone)
            self.logger.log(
                "milestone_achieved",
                goal_id=goal.id,
                milestone_id=milestone.id,
                percent=milestone.percent_complete,
            )
            if milestone.bonus_cents and pay_bonus is not None:
                pay_bonus(milestone)
            achieved.append(
                AchievedMilestone(
                    milestone_id=milestone.id,
                    percent_complete=milestone.percent_complete,
                    target_amount=milestone.target_amount,
                    achieved_at=moment,
                    bonus_amount=milestone.bonus_amount,
                    celebration_message=milestone.celebration_message,
                )
            )
        return achieved


__all__ = ["MilestoneLadder", "is_reached"]
