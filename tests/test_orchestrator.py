from datetime import timedelta
from decimal import Decimal

import pytest

from kidgoals.exceptions import GoalNotActiveError, InsufficientFundsError, InvalidStateError, ValidationError
from kidgoals.models import ChallengeStatus, ContributionType, GoalStatus, MatchingType
from kidgoals.persistence import SavingsGoal
from kidgoals.service import GoalService


def new_goal(service: GoalService, *, balance: str = "200", target: str = "100", **options: object) -> SavingsGoal:
    service.open_account("kid", balance)
    return service.create_goal("kid", "Bike", target, **options)


def assert_ledger_matches(service: GoalService, goal_id: str) -> None:
    audit = service.audit_goal(goal_id)
    assert audit.consistent, audit


def test_contribution_that_reaches_target_completes_goal(service: GoalService) -> None:
    goal = new_goal(service)

    event = service.contribute(goal.id, 100, "Birthday money")

    detail = service.get_goal_detail(goal.id)
    assert detail.goal.status is GoalStatus.COMPLETED
    assert detail.goal.current_amount == Decimal("100.00")
    assert detail.goal.completed_at == service.clock()
    history = service.contribution_history(goal.id)
    assert [(item.type, item.amount) for item in history] == [(ContributionType.CHILD_DEPOSIT, Decimal("100.00"))]
    assert event.is_completed
    assert event.percentage == Decimal("100.00")
    assert event.milestones_reached == (25, 50, 75, 100)
    assert event.milestone_reached == 100
    assert event.match_amount_added is None
    assert service.main_balance("kid") == Decimal("100.00")
    assert service.logger.events("goal_completed")[-1]["goal_id"] == goal.id


def test_ratio_match_adds_parent_contribution(service: GoalService) -> None:
    goal = new_goal(service)
    service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, "0.5")

    event = service.contribute(goal.id, 20)

    history = service.contribution_history(goal.id)
    assert [item.type for item in history] == [ContributionType.PARENT_MATCH, ContributionType.CHILD_DEPOSIT]
    match, deposit = history
    assert match.amount == Decimal("10.00")
    assert match.source_contribution_id == deposit.id
    assert event.new_amount == Decimal("30.00")
    assert event.match_amount_added == Decimal("10.00")
    assert service.get_matching_rule(goal.id).total_matched_amount == Decimal("10.00")
    assert service.main_balance("kid") == Decimal("180.00")
    assert_ledger_matches(service, goal.id)


def test_match_is_clamped_to_remaining_cap(service: GoalService) -> None:
    goal = new_goal(service)
    service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, "1.0", max_match_amount="5")
    service.contribute(goal.id, 4)
    assert service.get_matching_rule(goal.id).total_matched_amount == Decimal("4.00")

    event = service.contribute(goal.id, 10)

    rule = service.get_matching_rule(goal.id)
    assert event.match_amount_added == Decimal("1.00")
    assert rule.total_matched_amount == Decimal("5.00")
    assert rule.total_matched_cents <= (rule.max_match_cents or 0)
    assert event.new_amount == Decimal("19.00")

    exhausted = service.contribute(goal.id, 10)
    assert exhausted.match_amount_added is None
    assert service.get_matching_rule(goal.id).total_matched_amount == Decimal("5.00")
    assert_ledger_matches(service, goal.id)


def test_expired_rule_does_not_match(service: GoalService) -> None:
    goal = new_goal(service)
    service.create_matching_rule(
        goal.id, MatchingType.PERCENTAGE_MATCH, 50, expires_at=service.clock() + timedelta(days=1)
    )
    assert service.contribute(goal.id, 10).match_amount_added == Decimal("5.00")

    service.clock.advance(days=1)
    assert service.contribute(goal.id, 10).match_amount_added is None


def test_milestones_crossed_together(service: GoalService) -> None:
    goal = new_goal(service)
    service.contribute(goal.id, 40)

    event = service.contribute(goal.id, 20)

    ladder = service.get_goal_detail(goal.id).milestones
    assert [(item.percent_complete, item.is_achieved) for item in ladder] == [
        (25, True),
        (50, True),
        (75, False),
        (100, False),
    ]
    assert event.milestones_reached == (50,)

    other = service.create_goal("kid", "Skates", 100)
    jump = service.contribute(other.id, 80)
    assert jump.milestones_reached == (25, 50, 75)
    assert jump.milestone_reached == 75


def test_milestone_bonus_is_paid_once_and_counts_towards_completion(service: GoalService) -> None:
    goal = new_goal(service, milestone_bonuses={50: 5, 75: 30})

    event = service.contribute(goal.id, 75)

    history = service.contribution_history(goal.id, contribution_type=ContributionType.MILESTONE_BONUS)
    assert [item.amount for item in history] == [Decimal("30.00"), Decimal("5.00")]
    assert all(item.milestone_id for item in history)
    assert event.milestones_reached == (25, 50, 75, 100)
    assert event.is_completed
    assert event.new_amount == Decimal("110.00")
    assert service.get_goal(goal.id).status is GoalStatus.COMPLETED
    assert_ledger_matches(service, goal.id)


def test_challenge_completes_when_target_reached_in_time(service: GoalService) -> None:
    goal = new_goal(service)
    service.contribute(goal.id, 45)
    challenge = service.create_challenge(goal.id, 50, service.clock() + timedelta(days=7), 5)

    event = service.contribute(goal.id, 5)

    assert event.challenge_bonus_added == Decimal("5.00")
    assert event.new_amount == Decimal("55.00")
    assert event.milestones_reached == (50,)
    bonus = service.contribution_history(goal.id)[0]
    assert bonus.type is ContributionType.CHALLENGE_BONUS
    assert bonus.challenge_id == challenge.id
    assert service.get_active_challenge(goal.id) is None
    [stored] = service.list_child_challenges("kid")
    assert stored.status is ChallengeStatus.COMPLETED
    assert stored.completed_at == service.clock()
    assert_ledger_matches(service, goal.id)


def test_challenge_bonus_is_followed_by_another_settlement(service: GoalService) -> None:
    goal = new_goal(service)
    service.create_challenge(goal.id, 90, service.clock() + timedelta(days=7), 20)

    event = service.contribute(goal.id, 90)

    assert event.challenge_bonus_added == Decimal("20.00")
    assert event.milestones_reached == (25, 50, 75, 100)
    assert event.is_completed
    assert service.get_goal(goal.id).status is GoalStatus.COMPLETED


def test_insufficient_funds_leaves_no_trace(service: GoalService) -> None:
    goal = new_goal(service, balance="10")
    service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, 1)

    with pytest.raises(InsufficientFundsError):
        service.contribute(goal.id, 20)

    assert service.contribution_history(goal.id) == []
    assert service.get_goal(goal.id).current_amount == Decimal("0.00")
    assert service.get_matching_rule(goal.id).total_matched_amount == Decimal("0.00")
    assert service.main_balance("kid") == Decimal("10.00")
    assert service.notifications.pending() == ()


def test_invalid_amounts_and_inactive_goals_are_rejected(service: GoalService) -> None:
    goal = new_goal(service)
    with pytest.raises(ValidationError):
        service.contribute(goal.id, 0)
    with pytest.raises(ValidationError):
        service.contribute(goal.id, "-5")

    service.pause_goal(goal.id)
    with pytest.raises(GoalNotActiveError):
        service.contribute(goal.id, 5)
    assert service.main_balance("kid") == Decimal("200.00")

    service.resume_goal(goal.id)
    assert service.contribute(goal.id, 5).new_amount == Decimal("5.00")


def test_fractions_of_a_cent_are_rejected_before_money_moves(service: GoalService) -> None:
    goal = new_goal(service)
    service.contribute(goal.id, 20)

    with pytest.raises(ValidationError):
        service.contribute(goal.id, "10.005")
    with pytest.raises(ValidationError):
        service.withdraw(goal.id, "1.001")
    with pytest.raises(ValidationError):
        service.allocate_gift(goal.id, "0.999")
    with pytest.raises(ValidationError):
        service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, 1, max_match_amount="5.555")
    with pytest.raises(ValidationError):
        service.create_challenge(goal.id, "50.001", service.clock() + timedelta(days=1))
    with pytest.raises(ValidationError):
        service.update_goal(goal.id, target_amount="99.999")
    with pytest.raises(ValidationError):
        service.create_goal("kid", "Kite", "10.005")
    with pytest.raises(ValidationError):
        service.create_goal("kid", "Kite", 10, milestone_bonuses={50: "0.015"})

    assert service.main_balance("kid") == Decimal("180.00")
    assert service.get_goal(goal.id).current_amount == Decimal("20.00")
    assert service.contribute(goal.id, "10.50").new_amount == Decimal("30.50")
    assert_ledger_matches(service, goal.id)


def test_withdraw_returns_money_without_clawing_back_matches(service: GoalService) -> None:
    goal = new_goal(service)
    service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, "0.5")
    service.contribute(goal.id, 50)

    withdrawal = service.withdraw(goal.id, 30, "Needed for a gift", created_by="parent")

    assert withdrawal.type is ContributionType.WITHDRAWAL
    assert withdrawal.amount == Decimal("-30.00")
    assert withdrawal.goal_balance_after == Decimal("45.00")
    assert service.main_balance("kid") == Decimal("180.00")
    assert service.get_matching_rule(goal.id).total_matched_amount == Decimal("25.00")
    with pytest.raises(InsufficientFundsError):
        service.withdraw(goal.id, 100)

    service.pause_goal(goal.id)
    service.withdraw(goal.id, 5)
    assert service.get_goal(goal.id).current_amount == Decimal("40.00")
    assert_ledger_matches(service, goal.id)


def test_purchase_follows_completion(service: GoalService) -> None:
    goal = new_goal(service)
    with pytest.raises(InvalidStateError):
        service.mark_purchased(goal.id)

    service.contribute(goal.id, 100)
    with pytest.raises(GoalNotActiveError):
        service.withdraw(goal.id, 10)

    purchased = service.mark_purchased(goal.id, "Bought the red one")

    assert purchased.status is GoalStatus.PURCHASED
    assert purchased.purchase_notes == "Bought the red one"
    assert purchased.purchased_at == service.clock()
    assert service.get_goal(goal.id).current_amount == Decimal("100.00")
    with pytest.raises(InvalidStateError):
        service.mark_purchased(goal.id)
    with pytest.raises(GoalNotActiveError):
        service.contribute(goal.id, 1)


def test_cancel_refunds_and_closes_incentives(service: GoalService) -> None:
    goal = new_goal(service)
    service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, "0.5")
    service.contribute(goal.id, 40)
    service.create_challenge(goal.id, 80, service.clock() + timedelta(days=3), 5)

    cancelled = service.cancel_goal(goal.id)

    assert cancelled.status is GoalStatus.CANCELLED
    assert cancelled.current_amount == Decimal("0.00")
    assert service.main_balance("kid") == Decimal("220.00")
    refund = service.contribution_history(goal.id)[0]
    assert refund.type is ContributionType.WITHDRAWAL
    assert refund.amount == Decimal("-60.00")
    assert service.get_matching_rule(goal.id).is_active is False
    assert service.list_child_challenges("kid")[0].status is ChallengeStatus.CANCELLED
    with pytest.raises(InvalidStateError):
        service.cancel_goal(goal.id)
    assert_ledger_matches(service, goal.id)


def test_gifts_skip_balance_and_matching(service: GoalService) -> None:
    goal = new_goal(service, balance="0")
    service.create_matching_rule(goal.id, MatchingType.RATIO_MATCH, 1)

    event = service.allocate_gift(goal.id, 30, contribution_type=ContributionType.PARENT_GIFT)

    assert event.contribution_type is ContributionType.PARENT_GIFT
    assert event.new_amount == Decimal("30.00")
    assert event.match_amount_added is None
    assert service.main_balance("kid") == Decimal("0.00")
    with pytest.raises(ValidationError):
        service.allocate_gift(goal.id, 5, contribution_type=ContributionType.CHILD_DEPOSIT)


def test_auto_transfers_follow_priority_and_caps(service: GoalService) -> None:
    service.open_account("kid", 25)
    first = service.create_goal(
        "kid", "Game", 100, priority=1, auto_transfer_type="fixed_amount", auto_transfer_amount=15
    )
    second = service.create_goal(
        "kid", "Book", 8, priority=2, auto_transfer_type="percentage", auto_transfer_amount=50
    )
    third = service.create_goal(
        "kid", "Kite", 50, priority=3, auto_transfer_type="fixed_amount", auto_transfer_amount=10
    )
    service.create_goal("kid", "Manual", 50, priority=0)

    events = service.process_auto_transfers("kid", 20)

    # 15 fixed; 50% of 20 capped at the 8 remaining; 2 left in the balance for the kite.
    assert [(event.goal_id, event.new_amount) for event in events] == [
        (first.id, Decimal("15.00")),
        (second.id, Decimal("8.00")),
        (third.id, Decimal("2.00")),
    ]
    assert all(event.contribution_type is ContributionType.AUTO_TRANSFER for event in events)
    assert service.get_goal(second.id).status is GoalStatus.COMPLETED
    assert service.main_balance("kid") == Decimal("0.00")
    assert service.process_auto_transfers("kid", 20) == []
