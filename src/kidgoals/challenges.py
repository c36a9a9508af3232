"""Challenge tracking: completion on progress and the expiry sweep."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, col, select

from .exceptions import ConcurrencyError
from .models import ChallengeResolution, ChallengeStatus, as_utc, utcnow
from .ops import StructuredLogger
from .persistence import GoalChallenge, SavingsGoal, open_session
from .unit_of_work import UnitOfWorkFactory


class ChallengeTracker:
    """Resolve a goal's active challenge."""

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self.logger = logger or StructuredLogger()

    def resolve_on_progress(
        self,
        session: Session,
        goal: SavingsGoal,
        challenge: Optional[GoalChallenge],
        *,
        at: Optional[datetime] = None,
    ) -> Optional[ChallengeResolution]:
        """Complete ``challenge`` when the goal balance has reached its target in time.

        A challenge past its end date is left for :meth:`sweep_expired`.
        """

        if challenge is None or challenge.status is not ChallengeStatus.ACTIVE:
            return None
        moment = at or utcnow()
        if goal.current_cents < challenge.target_cents or moment > challenge.end_date:
            return None
        challenge.status = ChallengeStatus.COMPLETED
        challenge.completed_at = moment
        session.add(challenge)
        self.logger.log(
            "challenge_completed",
            goal_id=goal.id,
            challenge_id=challenge.id,
            bonus=str(challenge.bonus_amount),
        )
        return ChallengeResolution(
            challenge_id=challenge.id,
            bonus_amount=challenge.bonus_amount,
            completed_at=moment,
        )

    def sweep_expired(self, units: UnitOfWorkFactory, *, now: Optional[datetime] = None) -> List[str]:
        """Mark every active challenge whose end date has passed as failed.

        Each challenge is handled in its own unit of work under its goal's
        lock, so the sweep never blocks contributions to other goals. No
        funds move. Returns the ids of the failed challenges.
        """

        moment = as_utc(now) or utcnow()
        with open_session(units.engine) as session:
            candidates = session.exec(
                select(GoalChallenge.id, GoalChallenge.goal_id)
                .where(GoalChallenge.status == ChallengeStatus.ACTIVE, GoalChallenge.end_date < moment)
                .order_by(col(GoalChallenge.end_date))
            ).all()

        failed: List[str] = []
        for challenge_id, goal_id in candidates:
            try:
                with units.begin(goal_id, operation="sweep_expired") as uow:
                    challenge = uow.session.exec(
                        select(GoalChallenge)
                        .where(GoalChallenge.id == challenge_id)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    ).first()
                    # Re-check: a contribution may have completed it meanwhile.
                    if challenge is None or challenge.status is not ChallengeStatus.ACTIVE:
                        continue
                    if not challenge.end_date < moment:
                        continue
                    challenge.status = ChallengeStatus.FAILED
                    challenge.failed_at = moment
                    uow.session.add(challenge)
            except ConcurrencyError:
                self.logger.log("challenge_sweep_skipped", challenge_id=challenge_id, goal_id=goal_id)
                continue
            failed.append(challenge_id)
            self.logger.log("challenge_failed", challenge_id=challenge_id, goal_id=goal_id)
        return failed


__all__ = ["ChallengeTracker"]
