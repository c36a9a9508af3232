"""High level service wiring the KidGoals engine together."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlmodel import col, select

from .api import ApiExporter
from .challenges import ChallengeTracker
from .config import SETTINGS, Settings
from .exceptions import (
    ChallengeNotFoundError,
    GoalNotActiveError,
    InvalidStateError,
    MatchingRuleNotFoundError,
    ValidationError,
)
from .ledger import BalanceLedgerGateway, InMemoryBalanceLedger, SqlBalanceLedger
from .matching import MatchingEvaluator, validate_rule_terms
from .models import (
    AutoTransferType,
    ChallengeStatus,
    ContributionType,
    GoalCategory,
    GoalStatus,
    MatchingType,
    ProgressEvent,
    as_utc,
    utcnow,
)
from .money import AmountLike, require_positive, to_amount, to_cents
from .notifications import GoalNotificationListener, NotificationCenter, ProgressEventPublisher
from .ops import StructuredLogger
from .orchestrator import ContributionOrchestrator
from .persistence import (
    GoalChallenge,
    ParentMatchingRule,
    SavingsContribution,
    SavingsGoal,
    create_db_and_tables,
    create_db_engine,
    open_session,
)
from .store import GoalAudit, GoalDetail, GoalStore
from .unit_of_work import UnitOfWorkFactory


class GoalService:
    """Manage savings goals, contributions, matching rules and challenges."""

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        settings: Settings | None = None,
        ledger: BalanceLedgerGateway | None = None,
        logger: StructuredLogger | None = None,
        notifications: NotificationCenter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or SETTINGS
        self.engine = engine or create_db_engine(self.settings.database_url)
        create_db_and_tables(self.engine)
        self.logger = logger or StructuredLogger(path=self.settings.log_path)
        self.ledger = ledger or SqlBalanceLedger()
        self.clock = clock
        self.units = UnitOfWorkFactory(
            self.engine,
            lock_timeout=self.settings.lock_timeout_seconds,
            timeout=self.settings.unit_of_work_timeout_seconds,
            logger=self.logger,
        )
        self.store = GoalStore(ladder=self.settings.milestone_ladder, logger=self.logger)
        self.challenges = ChallengeTracker(logger=self.logger)
        self.publisher = ProgressEventPublisher(logger=self.logger)
        self.notifications = notifications or NotificationCenter()
        self.publisher.register(GoalNotificationListener(self.notifications))
        self.orchestrator = ContributionOrchestrator(
            self.units,
            self.ledger,
            store=self.store,
            matching=MatchingEvaluator(logger=self.logger),
            challenges=self.challenges,
            publisher=self.publisher,
            logger=self.logger,
            clock=clock,
        )
        self.api = ApiExporter()

    # ------------------------------------------------------------------
    # Main balance
    # ------------------------------------------------------------------
    def open_account(self, child_id: str, starting_balance: AmountLike = 0) -> Decimal:
        if isinstance(self.ledger, SqlBalanceLedger):
            with open_session(self.engine) as session:
                return self.ledger.open_account(session, child_id, starting_balance=starting_balance).balance
        if isinstance(self.ledger, InMemoryBalanceLedger):
            return self.ledger.open_account(child_id, starting_balance=starting_balance)
        raise InvalidStateError("Accounts of an external balance ledger are opened by its owner.")

    def main_balance(self, child_id: str) -> Decimal:
        with self.units.begin(operation="main_balance") as uow:
            return self.ledger.balance(uow, child_id)

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    def create_goal(
        self,
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
    ) -> SavingsGoal:
        with self.units.begin(operation="create_goal") as uow:
            return self.store.create(
                uow.session,
                child_id,
                name,
                target_amount,
                description=description,
                category=category,
                target_date=target_date,
                priority=priority,
                auto_transfer_type=auto_transfer_type,
                auto_transfer_amount=auto_transfer_amount,
                image_url=image_url,
                product_url=product_url,
                milestone_bonuses=milestone_bonuses,
                at=self.clock(),
            )

    def get_goal(self, goal_id: str) -> SavingsGoal:
        with open_session(self.engine) as session:
            return self.store.get(session, goal_id)

    def get_goal_detail(self, goal_id: str) -> GoalDetail:
        with open_session(self.engine) as session:
            return self.store.detail(session, goal_id)

    def list_child_goals(
        self, child_id: str, *, status: Optional[GoalStatus] = None, include_completed: bool = False
    ) -> List[SavingsGoal]:
        with open_session(self.engine) as session:
            return self.store.list_for_child(session, child_id, status=status, include_completed=include_completed)

    def update_goal(self, goal_id: str, **changes: object) -> SavingsGoal:
        with self.units.begin(goal_id, operation="update_goal") as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            return self.store.update(uow.session, goal, changes, at=self.clock())

    def pause_goal(self, goal_id: str) -> SavingsGoal:
        return self._transition(goal_id, GoalStatus.PAUSED)

    def resume_goal(self, goal_id: str) -> SavingsGoal:
        return self._transition(goal_id, GoalStatus.ACTIVE)

    def cancel_goal(self, goal_id: str, reason: Optional[str] = None, *, created_by: Optional[str] = None) -> SavingsGoal:
        goal = self.orchestrator.cancel_goal(goal_id, reason, created_by=created_by)
        self.units.locks.discard(goal_id)
        return goal

    def _transition(self, goal_id: str, status: GoalStatus) -> SavingsGoal:
        with self.units.begin(goal_id, operation=f"goal_{status.value}") as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            return self.store.transition(uow.session, goal, status, at=self.clock())

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------
    def contribute(
        self,
        goal_id: str,
        amount: AmountLike,
        description: Optional[str] = None,
        *,
        created_by: Optional[str] = None,
    ) -> ProgressEvent:
        return self.orchestrator.contribute(goal_id, amount, description, created_by=created_by)

    def withdraw(
        self,
        goal_id: str,
        amount: AmountLike,
        reason: Optional[str] = None,
        *,
        created_by: Optional[str] = None,
    ) -> SavingsContribution:
        return self.orchestrator.withdraw(goal_id, amount, reason, created_by=created_by)

    def mark_purchased(self, goal_id: str, notes: Optional[str] = None) -> SavingsGoal:
        goal = self.orchestrator.mark_purchased(goal_id, notes)
        self.units.locks.discard(goal_id)
        return goal

    def allocate_gift(
        self,
        goal_id: str,
        amount: AmountLike,
        *,
        contribution_type: ContributionType = ContributionType.EXTERNAL_GIFT,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ProgressEvent:
        return self.orchestrator.allocate_gift(
            goal_id,
            amount,
            contribution_type=contribution_type,
            description=description,
            created_by=created_by,
        )

    def process_auto_transfers(self, child_id: str, allowance_amount: AmountLike) -> List[ProgressEvent]:
        return self.orchestrator.process_auto_transfers(child_id, allowance_amount)

    def contribution_history(
        self,
        goal_id: str,
        *,
        contribution_type: Optional[ContributionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SavingsContribution]:
        with open_session(self.engine) as session:
            self.store.get(session, goal_id)
            return self.store.contributions(
                session, goal_id, contribution_type=contribution_type, start=start, end=end
            )

    def audit_goal(self, goal_id: str) -> GoalAudit:
        with open_session(self.engine) as session:
            audit = self.store.audit(session, goal_id)
        if not audit.consistent:
            self.logger.log(
                "goal_audit_mismatch",
                goal_id=goal_id,
                current_amount=str(audit.current_amount),
                ledger_total=str(audit.ledger_total),
            )
        return audit

    # ------------------------------------------------------------------
    # Matching rules
    # ------------------------------------------------------------------
    def create_matching_rule(
        self,
        goal_id: str,
        match_type: MatchingType,
        match_ratio: AmountLike,
        max_match_amount: Optional[AmountLike] = None,
        *,
        expires_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> ParentMatchingRule:
        match_type = MatchingType(match_type)
        ratio, cap = validate_rule_terms(match_type, match_ratio, max_match_amount)
        with self.units.begin(goal_id, operation="create_matching_rule") as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            if goal.status.is_terminal:
                raise GoalNotActiveError(f"Goal '{goal.name}' is {goal.status.value}.")
            if self.store.matching_rule(uow.session, goal_id) is not None:
                raise InvalidStateError(f"Goal '{goal.name}' already has a matching rule.")
            rule = ParentMatchingRule(
                goal_id=goal_id,
                type=match_type,
                match_ratio=ratio,
                max_match_cents=None if cap is None else to_cents(cap),
                expires_at=as_utc(expires_at),
                created_by=created_by,
                created_at=self.clock(),
            )
            uow.session.add(rule)
            uow.session.flush()
            self.logger.log(
                "matching_rule_created", goal_id=goal_id, rule_id=rule.id, type=match_type.value, ratio=str(ratio)
            )
            return rule

    def get_matching_rule(self, goal_id: str) -> ParentMatchingRule:
        with open_session(self.engine) as session:
            self.store.get(session, goal_id)
            rule = self.store.matching_rule(session, goal_id)
        if rule is None:
            raise MatchingRuleNotFoundError(f"Goal '{goal_id}' has no matching rule.")
        return rule

    def update_matching_rule(
        self,
        goal_id: str,
        *,
        match_type: Optional[MatchingType] = None,
        match_ratio: Optional[AmountLike] = None,
        max_match_amount: Optional[AmountLike] = None,
        is_active: Optional[bool] = None,
        expires_at: Optional[datetime] = None,
    ) -> ParentMatchingRule:
        with self.units.begin(goal_id, operation="update_matching_rule") as uow:
            self.store.get(uow.session, goal_id, for_update=True)
            rule = self.store.matching_rule(uow.session, goal_id)
            if rule is None:
                raise MatchingRuleNotFoundError(f"Goal '{goal_id}' has no matching rule.")
            new_type = MatchingType(match_type) if match_type is not None else rule.type
            ratio, cap = validate_rule_terms(
                new_type,
                rule.match_ratio if match_ratio is None else match_ratio,
                max_match_amount if max_match_amount is not None else rule.max_match_amount,
            )
            if cap is not None and to_cents(cap) < rule.total_matched_cents:
                raise ValidationError(
                    f"Maximum match cannot be below the {rule.total_matched_amount} already matched."
                )
            rule.type = new_type
            rule.match_ratio = ratio
            rule.max_match_cents = None if cap is None else to_cents(cap)
            if is_active is not None:
                rule.is_active = is_active
            if expires_at is not None:
                rule.expires_at = as_utc(expires_at)
            uow.session.add(rule)
            uow.session.flush()
            self.logger.log("matching_rule_updated", goal_id=goal_id, rule_id=rule.id, is_active=rule.is_active)
            return rule

    def remove_matching_rule(self, goal_id: str) -> None:
        with self.units.begin(goal_id, operation="remove_matching_rule") as uow:
            self.store.get(uow.session, goal_id, for_update=True)
            rule = self.store.matching_rule(uow.session, goal_id)
            if rule is None:
                raise MatchingRuleNotFoundError(f"Goal '{goal_id}' has no matching rule.")
            uow.session.delete(rule)
            self.logger.log("matching_rule_removed", goal_id=goal_id, rule_id=rule.id)

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------
    def create_challenge(
        self,
        goal_id: str,
        target_amount: AmountLike,
        end_date: datetime,
        bonus_amount: AmountLike = 0,
        *,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> GoalChallenge:
        target = to_amount(target_amount)
        require_positive(target)
        bonus = to_amount(bonus_amount)
        require_positive(bonus, allow_zero=True)
        end_date = as_utc(end_date)
        moment = self.clock()
        if end_date <= moment:
            raise ValidationError("Challenge end date must be in the future.")
        with self.units.begin(goal_id, operation="create_challenge") as uow:
            goal = self.store.get(uow.session, goal_id, for_update=True)
            if goal.status is not GoalStatus.ACTIVE:
                raise GoalNotActiveError(f"Challenges need an active goal; '{goal.name}' is {goal.status.value}.")
            if self.store.active_challenge(uow.session, goal_id) is not None:
                raise InvalidStateError(f"Goal '{goal.name}' already has an active challenge.")
            if to_cents(target) <= goal.current_cents:
                raise ValidationError("Challenge target must be above the goal's current amount.")
            challenge = GoalChallenge(
                goal_id=goal_id,
                target_cents=to_cents(target),
                start_date=moment,
                end_date=end_date,
                bonus_cents=to_cents(bonus),
                description=description,
                created_by=created_by,
                created_at=moment,
            )
            uow.session.add(challenge)
            uow.session.flush()
            self.logger.log(
                "challenge_created",
                goal_id=goal_id,
                challenge_id=challenge.id,
                target=str(target),
                bonus=str(bonus),
                end_date=end_date.isoformat(),
            )
            return challenge

    def get_active_challenge(self, goal_id: str) -> Optional[GoalChallenge]:
        with open_session(self.engine) as session:
            self.store.get(session, goal_id)
            return self.store.active_challenge(session, goal_id)

    def cancel_challenge(self, goal_id: str) -> GoalChallenge:
        with self.units.begin(goal_id, operation="cancel_challenge") as uow:
            self.store.get(uow.session, goal_id, for_update=True)
            challenge = self.store.active_challenge(uow.session, goal_id)
            if challenge is None:
                raise ChallengeNotFoundError(f"Goal '{goal_id}' has no active challenge.")
            challenge.status = ChallengeStatus.CANCELLED
            challenge.cancelled_at = self.clock()
            uow.session.add(challenge)
            self.logger.log("challenge_cancelled", goal_id=goal_id, challenge_id=challenge.id)
            return challenge

    def list_child_challenges(self, child_id: str) -> List[GoalChallenge]:
        with open_session(self.engine) as session:
            statement = (
                select(GoalChallenge)
                .join(SavingsGoal, col(SavingsGoal.id) == col(GoalChallenge.goal_id))
                .where(SavingsGoal.child_id == child_id)
                .order_by(col(GoalChallenge.created_at).desc())
            )
            return list(session.exec(statement).all())

    def sweep_expired_challenges(self, now: Optional[datetime] = None) -> List[str]:
        return self.challenges.sweep_expired(self.units, now=now or self.clock())


__all__ = ["GoalService"]
