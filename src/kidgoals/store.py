"""Goal Store: owns savings goal rows, their ladder and their append-only ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy import func
from sqlmodel import Session, col, select

from .exceptions import GoalNotFoundError, InvalidStateError, ValidationError
from .models import AutoTransferType, ChallengeStatus, ContributionType, GoalCategory, GoalStatus, as_utc, utcnow
from .money import AmountLike, exact, format_currency, from_cents, require_positive, to_amount, to_cents, to_decimal
from .ops import StructuredLogger
from .persistence import GoalChallenge, GoalMilestone, ParentMatchingRule, SavingsContribution, SavingsGoal

# Allowed manual and automatic transitions; terminal states have no entry.
TRANSITIONS: Dict[GoalStatus, frozenset[GoalStatus]] = {
    GoalStatus.ACTIVE: frozenset({GoalStatus.PAUSED, GoalStatus.COMPLETED, GoalStatus.CANCELLED}),
    GoalStatus.PAUSED: frozenset({GoalStatus.ACTIVE, GoalStatus.CANCELLED}),
    GoalStatus.COMPLETED: frozenset({GoalStatus.PURCHASED, GoalStatus.CANCELLED}),
}

EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "target_amount",
        "image_url",
        "product_url",
        "category",
        "target_date",
        "priority",
        "auto_transfer_type",
        "auto_transfer_amount",
    }
)


@dataclass(frozen=True, slots=True)
class GoalDetail:
    """A goal together with its ladder, matching rule and active challenge."""

    goal: SavingsGoal
    milestones: tuple[GoalMilestone, ...]
    matching_rule: Optional[ParentMatchingRule]
    active_challenge: Optional[GoalChallenge]


@dataclass(frozen=True, slots=True)
class GoalAudit:
    """Result of re-adding a goal's ledger against its stored balance."""

    goal_id: str
    current_amount: Decimal
    ledger_total: Decimal
    contribution_count: int

    @property
    def consistent(self) -> bool:
        return self.current_amount == self.ledger_total


def progress_percentage(goal: SavingsGoal) -> Decimal:
    """Return ``current / target * 100`` rounded half-up to two places."""

    return to_decimal(Decimal(goal.current_cents) * 100 / Decimal(goal.target_cents))


def _validate_auto_transfer(kind: AutoTransferType, amount: Decimal) -> None:
    require_positive(amount, allow_zero=True)
    if kind is AutoTransferType.PERCENTAGE and amount > 100:
        raise ValidationError("Auto-transfer percentage cannot exceed 100.")
    if kind is AutoTransferType.FIXED_AMOUNT:
        to_amount(amount)
    if kind is not AutoTransferType.NONE and amount == 0:
        raise ValidationError("Auto-transfer amount must be greater than zero.")


class GoalStore:
    """Repository for goals and the single writer of ``current_cents``.

    Every method works inside a caller supplied session; committing is the
    unit of work's job.
    """

    def __init__(self, *, ladder: Sequence[int] = (25, 50, 75, 100), logger: StructuredLogger | None = None) -> None:
        self.ladder = tuple(ladder)
        self.logger = logger or StructuredLogger()

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    def create(
        self,
        session: Session,
        child_id: str,
        name: str,
        target_amount: AmountLike,
        *,
        description: Optional[str] = None,
        category: GoalCategory = GoalCategory.OTHER,
        target_date: Optional[datetime] = None,
        priority: int = 1,
        auto_transfer_type: AutoTransferType = AutoTransferType.NONE,
        auto_transfer_amount: AmountLike = 0,
        image_url: Optional[str] = None,
        product_url: Optional[str] = None,
        milestone_bonuses: Optional[Mapping[int, AmountLike]] = None,
        at: Optional[datetime] = None,
    ) -> SavingsGoal:
        category = GoalCategory(category)
        auto_transfer_type = AutoTransferType(auto_transfer_type)
        goal_name = name.strip()
        if not goal_name:
            raise ValidationError("Goal name must not be empty.")
        target = to_amount(target_amount)
        require_positive(target)
        transfer_amount = exact(auto_transfer_amount)
        _validate_auto_transfer(auto_transfer_type, transfer_amount)
        bonuses = dict(milestone_bonuses or {})
        unknown = set(bonuses) - set(self.ladder)
        if unknown:
            raise ValidationError(f"No milestone at {sorted(unknown)} percent on the ladder {list(self.ladder)}.")

        moment = at or utcnow()
        goal = SavingsGoal(
            child_id=child_id,
            name=goal_name,
            description=description,
            target_cents=to_cents(target),
            category=category,
            target_date=as_utc(target_date),
            priority=priority,
            auto_transfer_type=auto_transfer_type,
            auto_transfer_amount=transfer_amount,
            image_url=image_url,
            product_url=product_url,
            created_at=moment,
            updated_at=moment,
        )
        session.add(goal)
        for percent in self.ladder:
            bonus = bonuses.get(percent)
            bonus_cents = None
            if bonus is not None:
                bonus_value = to_amount(bonus)
                require_positive(bonus_value, allow_zero=True)
                bonus_cents = to_cents(bonus_value) or None
            session.add(
                GoalMilestone(
                    goal_id=goal.id,
                    percent_complete=percent,
                    target_cents=self._milestone_target(goal.target_cents, percent),
                    bonus_cents=bonus_cents,
                    celebration_message=f"You've reached {percent}% of your goal!",
                )
            )
        session.flush()
        self.logger.log("goal_created", goal_id=goal.id, child_id=child_id, name=goal_name, target=str(target))
        return goal

    def get(self, session: Session, goal_id: str, *, for_update: bool = False) -> SavingsGoal:
        """Load a goal; ``for_update`` takes a row lock where the database supports it."""

        statement = select(SavingsGoal).where(SavingsGoal.id == goal_id)
        if for_update:
            statement = statement.with_for_update().execution_options(populate_existing=True)
        goal = session.exec(statement).first()
        if goal is None:
            raise GoalNotFoundError(f"Goal '{goal_id}' does not exist.")
        return goal

    def list_for_child(
        self,
        session: Session,
        child_id: str,
        *,
        status: Optional[GoalStatus] = None,
        include_completed: bool = False,
    ) -> List[SavingsGoal]:
        statement = select(SavingsGoal).where(SavingsGoal.child_id == child_id)
        if status is not None:
            statement = statement.where(SavingsGoal.status == GoalStatus(status))
        elif not include_completed:
            statement = statement.where(col(SavingsGoal.status).in_([GoalStatus.ACTIVE, GoalStatus.PAUSED]))
        statement = statement.order_by(col(SavingsGoal.priority), col(SavingsGoal.created_at))
        return list(session.exec(statement).all())

    def update(self, session: Session, goal: SavingsGoal, changes: Mapping[str, object], *, at: Optional[datetime] = None) -> SavingsGoal:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update goal fields: {sorted(unknown)}.")
        if goal.status.is_terminal:
            raise InvalidStateError(f"Goal '{goal.id}' is {goal.status.value} and can no longer be edited.")

        if "name" in changes:
            name = str(changes["name"] or "").strip()
            if not name:
                raise ValidationError("Goal name must not be empty.")
            goal.name = name
        if "target_amount" in changes:
            target = to_amount(changes["target_amount"])  # type: ignore[arg-type]
            require_positive(target)
            goal.target_cents = to_cents(target)
            for milestone in self.milestones(session, goal.id):
                milestone.target_cents = self._milestone_target(goal.target_cents, milestone.percent_complete)
                session.add(milestone)
        transfer_type = AutoTransferType(changes.get("auto_transfer_type", goal.auto_transfer_type))
        transfer_amount = exact(changes.get("auto_transfer_amount", goal.auto_transfer_amount))  # type: ignore[arg-type]
        if "auto_transfer_type" in changes or "auto_transfer_amount" in changes:
            _validate_auto_transfer(transfer_type, transfer_amount)
            goal.auto_transfer_type = transfer_type
            goal.auto_transfer_amount = transfer_amount
        if "category" in changes:
            goal.category = GoalCategory(changes["category"])
        if "target_date" in changes:
            goal.target_date = as_utc(changes["target_date"])  # type: ignore[arg-type]
        for key in ("description", "image_url", "product_url", "priority"):
            if key in changes:
                setattr(goal, key, changes[key])

        goal.updated_at = at or utcnow()
        session.add(goal)
        session.flush()
        self.logger.log("goal_updated", goal_id=goal.id, fields=sorted(changes))
        return goal

    def transition(
        self, session: Session, goal: SavingsGoal, new_status: GoalStatus, *, at: Optional[datetime] = None
    ) -> SavingsGoal:
        """Move ``goal`` to ``new_status`` following the goal state machine."""

        allowed = TRANSITIONS.get(goal.status, frozenset())
        if new_status not in allowed:
            raise InvalidStateError(
                f"Goal '{goal.id}' cannot move from {goal.status.value} to {new_status.value}."
            )
        if new_status is GoalStatus.COMPLETED and not goal.is_funded:
            raise InvalidStateError(f"Goal '{goal.id}' is not fully funded.")
        if new_status is GoalStatus.PURCHASED and not goal.is_funded:
            raise InvalidStateError(f"Goal '{goal.id}' must be fully funded before it is purchased.")

        moment = at or utcnow()
        previous = goal.status
        goal.status = new_status
        if new_status is GoalStatus.COMPLETED:
            goal.completed_at = moment
        elif new_status is GoalStatus.PURCHASED:
            goal.purchased_at = moment
        elif new_status is GoalStatus.CANCELLED:
            goal.cancelled_at = moment
        goal.updated_at = moment
        session.add(goal)
        session.flush()
        self.logger.log(
            "goal_status_changed", goal_id=goal.id, previous=previous.value, status=new_status.value
        )
        return goal

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def apply_delta(self, session: Session, goal: SavingsGoal, delta_cents: int) -> int:
        """Add ``delta_cents`` to the goal balance and return the new balance in cents."""

        new_total = goal.current_cents + delta_cents
        if new_total < 0:
            raise InvalidStateError(
                f"Goal '{goal.id}' balance cannot go below zero "
                f"({format_currency(goal.current_amount)} {format_currency(from_cents(delta_cents))})."
            )
        goal.current_cents = new_total
        session.add(goal)
        return new_total

    def record(
        self,
        session: Session,
        goal: SavingsGoal,
        amount_cents: int,
        contribution_type: ContributionType,
        *,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        source_contribution_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        challenge_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SavingsContribution:
        """Apply ``amount_cents`` and append the matching ledger entry."""

        if contribution_type is ContributionType.WITHDRAWAL:
            if amount_cents >= 0:
                raise ValidationError("Withdrawal contributions must be negative.")
        elif amount_cents <= 0:
            raise ValidationError(f"{contribution_type.value} contributions must be positive.")
        moment = at or utcnow()
        sequence = self._next_sequence(session, goal.id)
        balance_after = self.apply_delta(session, goal, amount_cents)
        goal.updated_at = moment
        contribution = SavingsContribution(
            goal_id=goal.id,
            sequence=sequence,
            child_id=goal.child_id,
            amount_cents=amount_cents,
            type=contribution_type,
            goal_balance_after_cents=balance_after,
            source_contribution_id=source_contribution_id,
            milestone_id=milestone_id,
            challenge_id=challenge_id,
            description=description,
            created_by=created_by,
            created_at=moment,
        )
        session.add(contribution)
        session.flush()
        self.logger.log(
            "contribution_recorded",
            goal_id=goal.id,
            contribution_id=contribution.id,
            type=contribution_type.value,
            amount=str(contribution.amount),
            balance_after=str(contribution.goal_balance_after),
        )
        return contribution

    def ledger_total_cents(self, session: Session, goal_id: str) -> int:
        """Sum of every ledger entry of the goal, the source of truth for its balance."""

        statement = select(func.coalesce(func.sum(SavingsContribution.amount_cents), 0)).where(
            SavingsContribution.goal_id == goal_id
        )
        return int(session.exec(statement).one())

    def contributions(
        self,
        session: Session,
        goal_id: str,
        *,
        contribution_type: Optional[ContributionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SavingsContribution]:
        statement = select(SavingsContribution).where(SavingsContribution.goal_id == goal_id)
        if contribution_type is not None:
            statement = statement.where(SavingsContribution.type == ContributionType(contribution_type))
        if start is not None:
            statement = statement.where(SavingsContribution.created_at >= as_utc(start))
        if end is not None:
            statement = statement.where(SavingsContribution.created_at <= as_utc(end))
        statement = statement.order_by(col(SavingsContribution.sequence).desc())
        return list(session.exec(statement).all())

    def audit(self, session: Session, goal_id: str) -> GoalAudit:
        goal = self.get(session, goal_id)
        count = session.exec(
            select(func.count()).select_from(SavingsContribution).where(SavingsContribution.goal_id == goal_id)
        ).one()
        return GoalAudit(
            goal_id=goal.id,
            current_amount=goal.current_amount,
            ledger_total=from_cents(self.ledger_total_cents(session, goal_id)),
            contribution_count=int(count),
        )

    def _next_sequence(self, session: Session, goal_id: str) -> int:
        statement = select(func.coalesce(func.max(SavingsContribution.sequence), 0)).where(
            SavingsContribution.goal_id == goal_id
        )
        return int(session.exec(statement).one()) + 1

    # ------------------------------------------------------------------
    # Related rows
    # ------------------------------------------------------------------
    def milestones(self, session: Session, goal_id: str) -> List[GoalMilestone]:
        statement = (
            select(GoalMilestone)
            .where(GoalMilestone.goal_id == goal_id)
            .order_by(col(GoalMilestone.percent_complete))
        )
        return list(session.exec(statement).all())

    def matching_rule(self, session: Session, goal_id: str) -> Optional[ParentMatchingRule]:
        return session.exec(select(ParentMatchingRule).where(ParentMatchingRule.goal_id == goal_id)).first()

    def active_challenge(self, session: Session, goal_id: str) -> Optional[GoalChallenge]:
        statement = select(GoalChallenge).where(
            GoalChallenge.goal_id == goal_id, GoalChallenge.status == ChallengeStatus.ACTIVE
        )
        return session.exec(statement).first()

    def detail(self, session: Session, goal_id: str) -> GoalDetail:
        goal = self.get(session, goal_id)
        return GoalDetail(
            goal=goal,
            milestones=tuple(self.milestones(session, goal_id)),
            matching_rule=self.matching_rule(session, goal_id),
            active_challenge=self.active_challenge(session, goal_id),
        )

    @staticmethod
    def _milestone_target(target_cents: int, percent: int) -> int:
        return to_cents(Decimal(target_cents) * percent / 10000)


__all__ = ["EDITABLE_FIELDS", "GoalAudit", "GoalDetail", "GoalStore", "TRANSITIONS", "progress_percentage"]
