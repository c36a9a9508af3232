from datetime import datetime
from decimal import Decimal
from typing import List

from kidgoals.milestones import MilestoneLadder, is_reached
from kidgoals.ops import StructuredLogger
from kidgoals.persistence import GoalMilestone, SavingsGoal

NOW = datetime(2026, 3, 2, 9, 30)


class _Session:
    def add(self, item: object) -> None:
        pass


def make_goal(current_cents: int, target_cents: int = 10_000) -> SavingsGoal:
    return SavingsGoal(child_id="kid", name="Bike", target_cents=target_cents, current_cents=current_cents)


def make_ladder(goal: SavingsGoal, bonuses: dict | None = None) -> List[GoalMilestone]:
    bonuses = bonuses or {}
    return [
        GoalMilestone(
            goal_id=goal.id,
            percent_complete=percent,
            target_cents=goal.target_cents * percent // 100,
            bonus_cents=bonuses.get(percent),
        )
        for percent in (25, 50, 75, 100)
    ]


def achieved(milestones: List[GoalMilestone]) -> List[int]:
    return [item.percent_complete for item in milestones if item.is_achieved]


def test_reached_uses_exact_arithmetic() -> None:
    goal = make_goal(current_cents=3333, target_cents=10_000)
    third = GoalMilestone(goal_id=goal.id, percent_complete=33, target_cents=3300)
    assert is_reached(goal, third)
    goal.current_cents = 3299
    assert not is_reached(goal, third)


def test_large_deposit_crosses_several_steps_in_order() -> None:
    logger = StructuredLogger()
    ladder = MilestoneLadder(logger=logger)
    goal = make_goal(current_cents=8000)
    milestones = make_ladder(goal)

    result = ladder.evaluate(_Session(), goal, milestones, at=NOW)  # type: ignore[arg-type]

    assert [item.percent_complete for item in result] == [25, 50, 75]
    assert achieved(milestones) == [25, 50, 75]
    assert all(item.achieved_at == NOW for item in milestones if item.is_achieved)
    assert [entry["percent"] for entry in logger.events("milestone_achieved")] == [25, 50, 75]


def test_reevaluation_is_a_no_op() -> None:
    ladder = MilestoneLadder()
    goal = make_goal(current_cents=5000)
    milestones = make_ladder(goal, bonuses={25: 100})
    paid: List[int] = []

    first = ladder.evaluate(_Session(), goal, milestones, at=NOW, pay_bonus=lambda m: paid.append(m.percent_complete))  # type: ignore[arg-type]
    second = ladder.evaluate(_Session(), goal, milestones, at=NOW, pay_bonus=lambda m: paid.append(m.percent_complete))  # type: ignore[arg-type]

    assert len(first) == 2
    assert second == []
    assert paid == [25]


def test_bonus_counts_towards_next_step() -> None:
    ladder = MilestoneLadder()
    goal = make_goal(current_cents=2500)
    milestones = make_ladder(goal, bonuses={25: 2500})

    def pay(milestone: GoalMilestone) -> None:
        goal.current_cents += milestone.bonus_cents or 0

    result = ladder.evaluate(_Session(), goal, milestones, at=NOW, pay_bonus=pay)  # type: ignore[arg-type]

    assert [item.percent_complete for item in result] == [25, 50]
    assert result[0].bonus_amount == Decimal("25.00")
    assert goal.current_cents == 5000


def test_achieved_steps_form_a_prefix() -> None:
    ladder = MilestoneLadder()
    goal = make_goal(current_cents=3000)
    milestones = make_ladder(goal)
    ladder.evaluate(_Session(), goal, milestones, at=NOW)  # type: ignore[arg-type]
    assert achieved(milestones) == [25]

    goal.current_cents = 6000
    ladder.evaluate(_Session(), goal, milestones, at=NOW)  # type: ignore[arg-type]
    assert achieved(milestones) == [25, 50]

    ordered = sorted(milestones, key=lambda item: item.percent_complete)
    flags = [item.is_achieved for item in ordered]
    assert flags == sorted(flags, reverse=True)
