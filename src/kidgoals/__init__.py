"""KidGoals: savings goal contributions with parent matching, milestones and challenges."""

from .api import ApiExporter
from .challenges import ChallengeTracker
from .config import Settings
from .exceptions import (
    ChallengeNotFoundError,
    ChildNotFoundError,
    ConcurrencyError,
    GoalNotActiveError,
    GoalNotFoundError,
    InsufficientFundsError,
    InvalidStateError,
    KidGoalsError,
    MatchingRuleNotFoundError,
    NotFoundError,
    UnitOfWorkTimeoutError,
    ValidationError,
)
from .ledger import BalanceLedgerGateway, InMemoryBalanceLedger, SqlBalanceLedger
from .locking import GoalLockRegistry
from .matching import MatchingEvaluator
from .milestones import MilestoneLadder
from .models import (
    AchievedMilestone,
    AutoTransferType,
    ChallengeStatus,
    ContributionType,
    GoalCategory,
    GoalStatus,
    MatchingType,
    ProgressEvent,
)
from .notifications import (
    GoalNotificationListener,
    Notification,
    NotificationCenter,
    NotificationChannel,
    NotificationType,
    ProgressEventPublisher,
)
from .ops import StructuredLogger
from .orchestrator import ContributionOrchestrator
from .persistence import (
    ChildBalance,
    GoalChallenge,
    GoalMilestone,
    ParentMatchingRule,
    SavingsContribution,
    SavingsGoal,
    create_db_and_tables,
    create_db_engine,
)
from .service import GoalService
from .store import GoalAudit, GoalDetail, GoalStore
from .unit_of_work import UnitOfWork, UnitOfWorkFactory

__all__ = [
    "AchievedMilestone",
    "ApiExporter",
    "AutoTransferType",
    "BalanceLedgerGateway",
    "ChallengeNotFoundError",
    "ChallengeStatus",
    "ChallengeTracker",
    "ChildBalance",
    "ChildNotFoundError",
    "ConcurrencyError",
    "ContributionOrchestrator",
    "ContributionType",
    "GoalAudit",
    "GoalCategory",
    "GoalChallenge",
    "GoalDetail",
    "GoalLockRegistry",
    "GoalMilestone",
    "GoalNotActiveError",
    "GoalNotFoundError",
    "GoalNotificationListener",
    "GoalService",
    "GoalStatus",
    "GoalStore",
    "InMemoryBalanceLedger",
    "InsufficientFundsError",
    "InvalidStateError",
    "KidGoalsError",
    "MatchingEvaluator",
    "MatchingRuleNotFoundError",
    "MatchingType",
    "MilestoneLadder",
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationType",
    "NotFoundError",
    "ParentMatchingRule",
    "ProgressEvent",
    "ProgressEventPublisher",
    "SavingsContribution",
    "SavingsGoal",
    "Settings",
    "SqlBalanceLedger",
    "StructuredLogger",
    "UnitOfWork",
    "UnitOfWorkFactory",
    "UnitOfWorkTimeoutError",
    "ValidationError",
    "create_db_and_tables",
    "create_db_engine",
]
