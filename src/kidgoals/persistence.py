"""Persistence and SQLModel definitions for the KidGoals engine."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from .models import (
    AutoTransferType,
    ChallengeStatus,
    ContributionType,
    GoalCategory,
    GoalStatus,
    MatchingType,
    utcnow,
)
from .money import from_cents


def new_id() -> str:
    return uuid4().hex


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class ChildBalance(SQLModel, table=True):
    """Main (spendable) balance of a child, used by the SQL ledger gateway."""

    child_id: str = Field(primary_key=True)
    balance_cents: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def balance(self) -> Decimal:
        return from_cents(self.balance_cents)


class SavingsGoal(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    child_id: str = Field(index=True)
    name: str
    description: Optional[str] = None
    target_cents: int
    current_cents: int = 0
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    category: GoalCategory = GoalCategory.OTHER
    target_date: Optional[datetime] = None
    status: GoalStatus = Field(default=GoalStatus.ACTIVE, index=True)
    priority: int = 1
    # Dollars for fixed_amount, percent of the allowance for percentage.
    auto_transfer_type: AutoTransferType = AutoTransferType.NONE
    auto_transfer_amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=4)
    completed_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    purchase_notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def target_amount(self) -> Decimal:
        return from_cents(self.target_cents)

    @property
    def current_amount(self) -> Decimal:
        return from_cents(self.current_cents)

    @property
    def remaining_amount(self) -> Decimal:
        return from_cents(max(0, self.target_cents - self.current_cents))

    @property
    def is_funded(self) -> bool:
        return self.current_cents >= self.target_cents


class SavingsContribution(SQLModel, table=True):
    """Append-only goal ledger entry. Never updated after insert."""

    __table_args__ = (UniqueConstraint("goal_id", "sequence"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    goal_id: str = Field(index=True, foreign_key="savingsgoal.id")
    sequence: int  # position in the goal's ledger, starting at 1
    child_id: str
    amount_cents: int  # negative for withdrawals
    type: ContributionType
    goal_balance_after_cents: int
    source_contribution_id: Optional[str] = None
    milestone_id: Optional[str] = None
    challenge_id: Optional[str] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def goal_balance_after(self) -> Decimal:
        return from_cents(self.goal_balance_after_cents)


class GoalMilestone(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("goal_id", "percent_complete"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    goal_id: str = Field(index=True, foreign_key="savingsgoal.id")
    percent_complete: int
    target_cents: int
    is_achieved: bool = False
    achieved_at: Optional[datetime] = None
    bonus_cents: Optional[int] = None
    celebration_message: Optional[str] = None

    @property
    def target_amount(self) -> Decimal:
        return from_cents(self.target_cents)

    @property
    def bonus_amount(self) -> Optional[Decimal]:
        return None if self.bonus_cents is None else from_cents(self.bonus_cents)


class ParentMatchingRule(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    goal_id: str = Field(unique=True, foreign_key="savingsgoal.id")
    type: MatchingType
    match_ratio: Decimal = Field(max_digits=12, decimal_places=4)
    max_match_cents: Optional[int] = None  # lifetime cap
    total_matched_cents: int = 0
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def max_match_amount(self) -> Optional[Decimal]:
        return None if self.max_match_cents is None else from_cents(self.max_match_cents)

    @property
    def total_matched_amount(self) -> Decimal:
        return from_cents(self.total_matched_cents)

    @property
    def remaining_match_amount(self) -> Optional[Decimal]:
        if self.max_match_cents is None:
            return None
        return from_cents(max(0, self.max_match_cents - self.total_matched_cents))


class GoalChallenge(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    goal_id: str = Field(index=True, foreign_key="savingsgoal.id")
    target_cents: int
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime = Field(index=True)
    bonus_cents: int = 0
    status: ChallengeStatus = Field(default=ChallengeStatus.ACTIVE, index=True)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def target_amount(self) -> Decimal:
        return from_cents(self.target_cents)

    @property
    def bonus_amount(self) -> Decimal:
        return from_cents(self.bonus_cents)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------
def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``url``; SQLite connections may cross worker threads."""

    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def open_session(engine: Engine) -> Session:
    return Session(engine, expire_on_commit=False)


__all__ = [
    "ChildBalance",
    "GoalChallenge",
    "GoalMilestone",
    "ParentMatchingRule",
    "SavingsContribution",
    "SavingsGoal",
    "create_db_and_tables",
    "create_db_engine",
    "new_id",
    "open_session",
]
