"""Contribution Orchestrator: the transactional entry point for moving money.

Every operation runs inside one unit of work serialised on the goal id. The
main balance debit or credit, the ledger entries, the matching total, the
milestone ladder and the challenge all commit together or not at all. The
progress event is published only after commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from sqlmodel import Session

from .challenges import ChallengeTracker
from .exceptions import GoalNotActiveError, InsufficientFundsError, InvalidStateError, ValidationError
from .ledger import BalanceLedgerGateway
from .matching import MatchingEvaluator
from .milestones import MilestoneLadder
from .models import (
    AchievedMilestone,
    AutoTransferType,
    ChallengeStatus,
    ContributionType,
    GoalStatus,
    ProgressEvent,
    utcnow,
)
from .money import AmountLike, ZERO, format_currency, from_cents, require_positive, round_minor, to_amount, to_cents, to_decimal
from .notifications import ProgressEventPublisher
from .ops import StructuredLogger
from .persistence import GoalMilestone, SavingsContribution, SavingsGoal, open_session
from .store import GoalStore, progress_percentage
from .unit_of_work import UnitOfWork, UnitOfWorkFactory

GIFT_TYPES = (ContributionType.PARENT_GIFT, ContributionType.EXTERNAL_GIFT)


@dataclass(slots=True)
class _Settlement:
    milestones: List[AchievedMilestone] = field(default_factory=list)
    challenge_bonus: Optional[Decimal] = None


class ContributionOrchestrator:
    """Sequence balance, ledger and incentive rules under one unit of work."""

    def __init__(
        self,
        units: UnitOfWorkFactory,
        ledger: BalanceLedgerGateway,
        *,
        store: GoalStore | None = None,
        matching: MatchingEvaluator | None = None,
        ladder: MilestoneLadder | None = None,
        challenges: ChallengeTracker | None = None,
        publisher: ProgressEventPublisher | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.units = units
        self.ledger = ledger
        self.logger = logger or units.logger
        self.store = store or GoalStore(logger=self.logger)
        self.matching = matching or MatchingEvaluator(logger=self.logger)
        self.ladder = ladder or MilestoneLadder(logger=self.logger)
        self.challenges = challenges or ChallengeTracker(logger=self.logger)
        self.publisher = publisher or ProgressEventPublisher(logger=self.logger)
        self.clock = clock

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------
    def contribute(
        self,
        goal_id: str,
        amount: AmountLike,
        description: Optional[str] = None,
        *,
        created_by: Optional[str] = None,
    ) -> ProgressEvent:
        """Move ``amount`` from the child's main balance into the goal."""

        return self._deposit(
            goal_id,
            amount,
            ContributionType.CHILD_DEPOSIT,
            description=description,
            created_by=created_by,
            debit=True,
            match=True,
        )

    def allocate_gift(
        self,
        goal_id: str,
        amount: AmountLike,
        *,
        contribution_type: ContributionType = ContributionType.EXTERNAL_GIFT,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ProgressEvent:
        """Place gift money that never touched the main balance into an active goal."""

        contribution_type = ContributionType(contribution_type)
        if contribution_type not in GIFT_TYPES:
            raise ValidationError(f"Gifts must be one of {[kind.value for kind in GIFT_TYPES]}.")
        return self._deposit(
            goal_id,
            amount,
            contribution_type,
            description=description,
            created_by=created_by,
            debit=False,
            match=False,
        )

    def process_auto_transfers(self, child_id: str, allowance_amount: AmountLike) -> List[ProgressEvent]:
        """Sweep part of a freshly credited allowance into the child's goals by priority."""

        allowance = to_amount(allowance_amount)
        require_positive(allowance, allow_zero=True)
        with open_session(self.units.engine) as session:
            goals = [
                goal
                for goal in self.store.list_for_child(session, child_id, status=GoalStatus.ACTIVE)
                if goal.auto_transfer_type is not AutoTransferType.NONE
            ]

        events: List[ProgressEvent] = []
        for goal in goals:
            if goal.auto_transfer_type is AutoTransferType.FIXED_AMOUNT:
                planned = to_decimal(goal.auto_transfer_amount)
            else:
                planned = round_minor(allowance * Decimal(goal.auto_transfer_amount) / 100)
            if planned <= 0:
                continue
            event = self._auto_transfer(goal.id, planned)
            if event is not None:
                events.append(event)
        return events

    def _deposit(
        self,
        goal_id: str,
        amount: AmountLike,
        contribution_type: ContributionType,
        *,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        debit: bool,
        match: bool,
    ) -> ProgressEvent:
        value = to_amount(amount)
        require_positive(value)
        moment = self.clock()
        with self.units.begin(goal_id, operation=contribution_type.value) as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            if goal.status is not GoalStatus.ACTIVE:
                raise GoalNotActiveError(f"Goal '{goal.name}' is {goal.status.value}; contributions need an active goal.")
            if debit:
                available = self.ledger.balance(uow, goal.child_id)
                if available < value:
                    raise InsufficientFundsError(
                        f"Insufficient balance: {format_currency(value)} requested, {format_currency(available)} available."
                    )
                self.ledger.debit(uow, goal.child_id, value)
            return self._book_deposit(
                uow,
                goal,
                value,
                contribution_type,
                description=description,
                created_by=created_by,
                match=match,
                moment=moment,
            )

    def _auto_transfer(self, goal_id: str, planned: Decimal) -> Optional[ProgressEvent]:
        """Deposit up to ``planned``, trimmed to what the main balance and the goal allow.

        Returns ``None`` when nothing could move, e.g. the goal left Active meanwhile.
        """

        moment = self.clock()
        with self.units.begin(goal_id, operation=ContributionType.AUTO_TRANSFER.value) as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            if goal.status is not GoalStatus.ACTIVE:
                return None
            available = self.ledger.balance(uow, goal.child_id)
            value = min(planned, available, goal.remaining_amount)
            if value <= 0:
                return None
            self.ledger.debit(uow, goal.child_id, value)
            return self._book_deposit(
                uow,
                goal,
                value,
                ContributionType.AUTO_TRANSFER,
                description="Automatic transfer from allowance",
                created_by=None,
                match=True,
                moment=moment,
            )

    def _book_deposit(
        self,
        uow: UnitOfWork,
        goal: SavingsGoal,
        value: Decimal,
        contribution_type: ContributionType,
        *,
        description: Optional[str],
        created_by: Optional[str],
        match: bool,
        moment: datetime,
    ) -> ProgressEvent:
        """Record the deposit, apply the match, settle, and queue the event for after commit."""

        session = uow.session
        deposit = self.store.record(
            session,
            goal,
            to_cents(value),
            contribution_type,
            description=description,
            created_by=created_by,
            at=moment,
        )
        match_amount = self._apply_match(session, goal, deposit, value, moment) if match else None
        uow.check_deadline()
        settlement = self._settle(uow, goal, deposit, moment)
        event = ProgressEvent(
            goal_id=goal.id,
            goal_name=goal.name,
            child_id=goal.child_id,
            new_amount=goal.current_amount,
            target_amount=goal.target_amount,
            percentage=progress_percentage(goal),
            is_completed=goal.status is GoalStatus.COMPLETED,
            contribution_type=contribution_type,
            milestones_reached=tuple(item.percent_complete for item in settlement.milestones),
            match_amount_added=match_amount,
            challenge_bonus_added=settlement.challenge_bonus,
            occurred_at=moment,
        )
        uow.after_commit(lambda: self.publisher.publish(event))
        return event

    def _apply_match(
        self, session: Session, goal: SavingsGoal, deposit: SavingsContribution, value: Decimal, moment: datetime
    ) -> Optional[Decimal]:
        rule = self.store.matching_rule(session, goal.id)
        if rule is None:
            return None
        match_amount = self.matching.compute_match(rule, value, at=moment)
        if match_amount <= ZERO:
            return None
        self.store.record(
            session,
            goal,
            to_cents(match_amount),
            ContributionType.PARENT_MATCH,
            description=f"Parent match for {format_currency(value)} deposit",
            source_contribution_id=deposit.id,
            at=moment,
        )
        self.matching.book(session, rule, match_amount)
        return match_amount

    def _settle(self, uow: UnitOfWork, goal: SavingsGoal, source: SavingsContribution, moment: datetime) -> _Settlement:
        """Milestones, then completion, then the challenge.

        Milestone bonuses count towards completion. A challenge bonus is
        followed by one more milestone and completion pass.
        """

        session = uow.session
        settlement = _Settlement()

        def pay_bonus(milestone: GoalMilestone) -> None:
            self.store.record(
                session,
                goal,
                milestone.bonus_cents or 0,
                ContributionType.MILESTONE_BONUS,
                description=f"Bonus for reaching {milestone.percent_complete}% milestone",
                source_contribution_id=source.id,
                milestone_id=milestone.id,
                at=moment,
            )

        milestones = self.store.milestones(session, goal.id)
        settlement.milestones.extend(self.ladder.evaluate(session, goal, milestones, at=moment, pay_bonus=pay_bonus))
        self._complete_if_funded(session, goal, moment)

        challenge = self.store.active_challenge(session, goal.id)
        resolution = self.challenges.resolve_on_progress(session, goal, challenge, at=moment)
        if resolution is not None and resolution.bonus_amount > 0:
            self.store.record(
                session,
                goal,
                to_cents(resolution.bonus_amount),
                ContributionType.CHALLENGE_BONUS,
                description="Challenge completion bonus!",
                source_contribution_id=source.id,
                challenge_id=resolution.challenge_id,
                at=moment,
            )
            settlement.challenge_bonus = resolution.bonus_amount
            settlement.milestones.extend(
                self.ladder.evaluate(session, goal, milestones, at=moment, pay_bonus=pay_bonus)
            )
            self._complete_if_funded(session, goal, moment)
        uow.check_deadline()
        return settlement

    def _complete_if_funded(self, session: Session, goal: SavingsGoal, moment: datetime) -> bool:
        if goal.status is not GoalStatus.ACTIVE or not goal.is_funded:
            return False
        self.store.transition(session, goal, GoalStatus.COMPLETED, at=moment)
        self.logger.log("goal_completed", goal_id=goal.id, final_amount=str(goal.current_amount))
        return True

    # ------------------------------------------------------------------
    # Withdrawals and terminal transitions
    # ------------------------------------------------------------------
    def withdraw(
        self,
        goal_id: str,
        amount: AmountLike,
        reason: Optional[str] = None,
        *,
        created_by: Optional[str] = None,
    ) -> SavingsContribution:
        """Return ``amount`` from the goal to the main balance. Matches already paid stay."""

        value = to_amount(amount)
        require_positive(value)
        cents = to_cents(value)
        with self.units.begin(goal_id, operation="withdraw") as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            if goal.status not in (GoalStatus.ACTIVE, GoalStatus.PAUSED):
                raise GoalNotActiveError(f"Cannot withdraw from a {goal.status.value} goal.")
            if goal.current_cents < cents:
                raise InsufficientFundsError(
                    f"Insufficient goal balance: {format_currency(value)} requested, "
                    f"{format_currency(goal.current_amount)} saved."
                )
            contribution = self.store.record(
                uow.session,
                goal,
                -cents,
                ContributionType.WITHDRAWAL,
                description=reason,
                created_by=created_by,
                at=self.clock(),
            )
            self.ledger.credit(uow, goal.child_id, value)
        return contribution

    def mark_purchased(self, goal_id: str, notes: Optional[str] = None) -> SavingsGoal:
        """Completed goals become purchased. The money already sits in the goal."""

        with self.units.begin(goal_id, operation="mark_purchased") as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            goal.purchase_notes = notes
            self.store.transition(uow.session, goal, GoalStatus.PURCHASED, at=self.clock())
        return goal

    def cancel_goal(
        self, goal_id: str, reason: Optional[str] = None, *, created_by: Optional[str] = None
    ) -> SavingsGoal:
        """Refund the goal balance to the main balance as one withdrawal, then cancel."""

        moment = self.clock()
        with self.units.begin(goal_id, operation="cancel_goal") as uow:
            session = uow.session
            goal = self.store.get(session, goal_id, for_update=True)
            if goal.status.is_terminal:
                raise InvalidStateError(f"Goal '{goal.id}' is already {goal.status.value}.")
            refund = goal.current_cents
            if refund > 0:
                self.store.record(
                    session,
                    goal,
                    -refund,
                    ContributionType.WITHDRAWAL,
                    description=reason or "Goal cancelled; savings returned to balance",
                    created_by=created_by,
                    at=moment,
                )
                self.ledger.credit(uow, goal.child_id, from_cents(refund))
            challenge = self.store.active_challenge(session, goal.id)
            if challenge is not None:
                challenge.status = ChallengeStatus.CANCELLED
                challenge.cancelled_at = moment
                session.add(challenge)
            rule = self.store.matching_rule(session, goal.id)
            if rule is not None and rule.is_active:
                rule.is_active = False
                session.add(rule)
            self.store.transition(session, goal, GoalStatus.CANCELLED, at=moment)
        return goal


__all__ = ["ContributionOrchestrator", "GIFT_TYPES"]
