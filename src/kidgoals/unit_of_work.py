"""Atomic unit of work spanning the goal tables and the balance ledger."""

from __future__ import annotations

import time
from contextlib import contextmanager, nullcontext
from typing import Callable, Iterator, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from .exceptions import UnitOfWorkTimeoutError
from .locking import GoalLockRegistry
from .ops import StructuredLogger
from .persistence import open_session


class UnitOfWork:
    """One database transaction plus the compensations registered against it.

    Collaborators that cannot join the transaction (for example a remote
    balance ledger) register an undo callable with :meth:`on_rollback`.
    """

    __slots__ = ("session", "goal_id", "_deadline", "_compensations", "_after_commit")

    def __init__(self, session: Session, *, goal_id: Optional[str], deadline: float) -> None:
        self.session = session
        self.goal_id = goal_id
        self._deadline = deadline
        self._compensations: List[Callable[[], None]] = []
        self._after_commit: List[Callable[[], None]] = []

    def on_rollback(self, compensation: Callable[[], None]) -> None:
        self._compensations.append(compensation)

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the transaction has committed, still under the goal lock."""

        self._after_commit.append(callback)

    def check_deadline(self) -> None:
        if time.monotonic() > self._deadline:
            raise UnitOfWorkTimeoutError(
                f"Unit of work for goal '{self.goal_id}' exceeded its time limit and was rolled back."
            )

    def _compensate(self, logger: StructuredLogger) -> None:
        for compensation in reversed(self._compensations):
            try:
                compensation()
            except Exception as exc:  # keep undoing the rest, then surface the original error
                logger.log(
                    "compensation_failed",
                    goal_id=self.goal_id,
                    error=type(exc).__name__,
                    message=str(exc),
                )
        self._compensations.clear()

    def _run_after_commit(self, logger: StructuredLogger) -> None:
        for callback in self._after_commit:
            try:
                callback()
            except Exception as exc:  # the transaction is already committed
                logger.log(
                    "after_commit_failed",
                    goal_id=self.goal_id,
                    error=type(exc).__name__,
                    message=str(exc),
                )
        self._after_commit.clear()


class UnitOfWorkFactory:
    """Open units of work serialised per goal and bounded in time."""

    def __init__(
        self,
        engine: Engine,
        *,
        locks: GoalLockRegistry | None = None,
        lock_timeout: float = 5.0,
        timeout: float = 10.0,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.engine = engine
        self.locks = locks or GoalLockRegistry()
        self.lock_timeout = lock_timeout
        self.timeout = timeout
        self.logger = logger or StructuredLogger()

    @contextmanager
    def begin(self, goal_id: Optional[str] = None, *, operation: str = "") -> Iterator[UnitOfWork]:
        """Yield a unit of work; commit on normal exit, roll back everything otherwise.

        When ``goal_id`` is given the goal's lock is held from before the first
        read until after commit or rollback.
        """

        guard = self.locks.hold(goal_id, timeout=self.lock_timeout) if goal_id else nullcontext()
        with guard:
            session = open_session(self.engine)
            uow = UnitOfWork(session, goal_id=goal_id, deadline=time.monotonic() + self.timeout)
            try:
                yield uow
                uow.check_deadline()
                session.commit()
            except BaseException as exc:
                session.rollback()
                uow._compensate(self.logger)
                self.logger.log(
                    "unit_of_work_rolled_back",
                    operation=operation,
                    goal_id=goal_id,
                    error=getattr(exc, "code", type(exc).__name__),
                    message=str(exc),
                )
                raise
            finally:
                session.close()
            uow._run_after_commit(self.logger)


__all__ = ["UnitOfWork", "UnitOfWorkFactory"]
