"""Custom exception hierarchy for the KidGoals package."""

from __future__ import annotations


class KidGoalsError(Exception):
    """Base class for all KidGoals specific errors."""

    code = "kidgoals_error"


class ValidationError(KidGoalsError, ValueError):
    """Raised for non-positive amounts, malformed rules and similar input errors."""

    code = "validation_error"


class GoalNotActiveError(KidGoalsError):
    """Raised when an action is not permitted in the goal's current status."""

    code = "goal_not_active"


class InsufficientFundsError(KidGoalsError):
    """Raised when the main balance or the goal balance is too low."""

    code = "insufficient_funds"


class InvalidStateError(KidGoalsError):
    """Raised for illegal status transitions or an inconsistent ledger."""

    code = "invalid_state"


class NotFoundError(KidGoalsError, LookupError):
    """Raised when a goal, rule, challenge or child cannot be found."""

    code = "not_found"


class GoalNotFoundError(NotFoundError):
    """Raised when a requested savings goal cannot be found."""

    code = "goal_not_found"


class ChildNotFoundError(NotFoundError):
    """Raised when a child has no main balance account."""

    code = "child_not_found"


class MatchingRuleNotFoundError(NotFoundError):
    """Raised when a goal has no parent matching rule."""

    code = "matching_rule_not_found"


class ChallengeNotFoundError(NotFoundError):
    """Raised when a goal has no active challenge."""

    code = "challenge_not_found"


class ConcurrencyError(KidGoalsError):
    """Raised when the per-goal lock cannot be acquired in time. Callers may retry."""

    code = "concurrency_error"


class UnitOfWorkTimeoutError(ConcurrencyError):
    """Raised when a unit of work runs past its deadline and is rolled back."""

    code = "unit_of_work_timeout"


__all__ = [
    "ChallengeNotFoundError",
    "ChildNotFoundError",
    "ConcurrencyError",
    "GoalNotActiveError",
    "GoalNotFoundError",
    "InsufficientFundsError",
    "InvalidStateError",
    "KidGoalsError",
    "MatchingRuleNotFoundError",
    "NotFoundError",
    "UnitOfWorkTimeoutError",
    "ValidationError",
]
