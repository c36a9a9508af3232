"""Balance Ledger Gateway implementations.

The main balance of a child is owned outside this engine. Gateways either
join the unit of work's transaction (:class:`SqlBalanceLedger`) or register
compensations that undo their effect on rollback (:class:`InMemoryBalanceLedger`).
"""

from __future__ import annotations

import threading
from decimal import Decimal
from typing import Dict, Mapping, Optional, Protocol

from sqlalchemy import update
from sqlmodel import Session

from .exceptions import ChildNotFoundError, InsufficientFundsError
from .models import utcnow
from .money import AmountLike, format_currency, from_cents, require_positive, to_amount, to_cents, to_decimal
from .persistence import ChildBalance
from .unit_of_work import UnitOfWork


class BalanceLedgerGateway(Protocol):
    def balance(self, uow: UnitOfWork, child_id: str) -> Decimal: ...

    def debit(self, uow: UnitOfWork, child_id: str, amount: Decimal) -> None: ...

    def credit(self, uow: UnitOfWork, child_id: str, amount: Decimal) -> None: ...


class SqlBalanceLedger:
    """Main balances kept in the ``childbalance`` table of the engine's database."""

    def open_account(self, session: Session, child_id: str, *, starting_balance: AmountLike = 0) -> ChildBalance:
        value = to_amount(starting_balance)
        require_positive(value, allow_zero=True)
        account = session.get(ChildBalance, child_id)
        if account is None:
            account = ChildBalance(child_id=child_id, balance_cents=to_cents(value))
        else:
            account.balance_cents = to_cents(value)
            account.updated_at = utcnow()
        session.add(account)
        session.commit()
        return account

    def get_balance(self, session: Session, child_id: str) -> Decimal:
        account = session.get(ChildBalance, child_id, populate_existing=True)
        if account is None:
            raise ChildNotFoundError(f"Child '{child_id}' has no balance account.")
        return account.balance

    def balance(self, uow: UnitOfWork, child_id: str) -> Decimal:
        return self.get_balance(uow.session, child_id)

    def debit(self, uow: UnitOfWork, child_id: str, amount: Decimal) -> None:
        cents = to_cents(amount)
        # Conditional decrement in one statement; concurrent debits cannot lose updates.
        result = uow.session.connection().execute(
            update(ChildBalance)
            .where(ChildBalance.child_id == child_id, ChildBalance.balance_cents >= cents)
            .values(balance_cents=ChildBalance.balance_cents - cents, updated_at=utcnow())
        )
        if result.rowcount == 0:
            available = self.get_balance(uow.session, child_id)
            raise InsufficientFundsError(
                f"Child '{child_id}' has insufficient funds for {format_currency(from_cents(cents))} "
                f"(available {format_currency(available)})."
            )

    def credit(self, uow: UnitOfWork, child_id: str, amount: Decimal) -> None:
        cents = to_cents(amount)
        result = uow.session.connection().execute(
            update(ChildBalance)
            .where(ChildBalance.child_id == child_id)
            .values(balance_cents=ChildBalance.balance_cents + cents, updated_at=utcnow())
        )
        if result.rowcount == 0:
            raise ChildNotFoundError(f"Child '{child_id}' has no balance account.")


class InMemoryBalanceLedger:
    """Thread-safe, dictionary backed ledger that cannot join a transaction.

    Every debit or credit registers its inverse on the unit of work so a
    rollback restores the balance (saga style compensation).
    """

    def __init__(self, balances: Optional[Mapping[str, AmountLike]] = None) -> None:
        self._balances: Dict[str, Decimal] = {
            child_id: to_amount(amount) for child_id, amount in (balances or {}).items()
        }
        self._lock = threading.Lock()

    def open_account(self, child_id: str, *, starting_balance: AmountLike = 0) -> Decimal:
        value = to_amount(starting_balance)
        require_positive(value, allow_zero=True)
        with self._lock:
            self._balances[child_id] = value
        return value

    def get_balance(self, child_id: str) -> Decimal:
        with self._lock:
            try:
                return self._balances[child_id]
            except KeyError as exc:
                raise ChildNotFoundError(f"Child '{child_id}' has no balance account.") from exc

    def balance(self, uow: UnitOfWork, child_id: str) -> Decimal:
        return self.get_balance(child_id)

    def debit(self, uow: UnitOfWork, child_id: str, amount: Decimal) -> None:
        value = to_decimal(amount)
        with self._lock:
            current = self._balances.get(child_id)
            if current is None:
                raise ChildNotFoundError(f"Child '{child_id}' has no balance account.")
            if current < value:
                raise InsufficientFundsError(
                    f"Child '{child_id}' has insufficient funds for {format_currency(value)} "
                    f"(available {format_currency(current)})."
                )
            self._balances[child_id] = current - value
        uow.on_rollback(lambda: self._adjust(child_id, value))

    def credit(self, uow: UnitOfWork, child_id: str, amount: Decimal) -> None:
        value = to_decimal(amount)
        with self._lock:
            if child_id not in self._balances:
                raise ChildNotFoundError(f"Child '{child_id}' has no balance account.")
            self._balances[child_id] += value
        uow.on_rollback(lambda: self._adjust(child_id, -value))

    def _adjust(self, child_id: str, delta: Decimal) -> None:
        with self._lock:
            self._balances[child_id] += delta


__all__ = ["BalanceLedgerGateway", "InMemoryBalanceLedger", "SqlBalanceLedger"]
