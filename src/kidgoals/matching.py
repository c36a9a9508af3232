"""Parent matching: how much a parent adds on top of a child's deposit."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Session

from .exceptions import InvalidStateError, ValidationError
from .models import MatchingType, as_utc, utcnow
from .money import AmountLike, ZERO, exact, from_cents, round_minor, to_amount, to_cents
from .ops import StructuredLogger
from .persistence import ParentMatchingRule


def validate_rule_terms(
    match_type: MatchingType, match_ratio: AmountLike, max_match_amount: Optional[AmountLike]
) -> tuple[Decimal, Optional[Decimal]]:
    """Return the normalised ``(ratio, cap)`` or raise :class:`ValidationError`."""

    ratio = exact(match_ratio)
    if ratio <= 0:
        raise ValidationError("Match ratio must be greater than zero.")
    if ratio != ratio.quantize(Decimal("0.0001")):
        raise ValidationError("Match ratio supports at most four decimal places.")
    if match_type not in (MatchingType.RATIO_MATCH, MatchingType.PERCENTAGE_MATCH):
        raise ValidationError(f"Unsupported matching type: {match_type!r}")
    cap = None
    if max_match_amount is not None:
        cap = to_amount(max_match_amount)
        if cap <= 0:
            raise ValidationError("Maximum match amount must be greater than zero.")
    return ratio, cap


class MatchingEvaluator:
    """Compute and book parent matches while respecting the lifetime cap."""

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self.logger = logger or StructuredLogger()

    def is_eligible(self, rule: Optional[ParentMatchingRule], *, at: Optional[datetime] = None) -> bool:
        if rule is None or not rule.is_active:
            return False
        moment = as_utc(at) or utcnow()
        return rule.expires_at is None or moment < rule.expires_at

    def compute_match(
        self,
        rule: Optional[ParentMatchingRule],
        deposit_amount: AmountLike,
        *,
        at: Optional[datetime] = None,
    ) -> Decimal:
        """Return the match owed for ``deposit_amount``; zero when no match applies.

        The cap is applied to the unrounded product, which is then rounded
        half-up to cents.
        """

        if rule is None or not self.is_eligible(rule, at=at):
            return ZERO
        deposit = exact(deposit_amount)
        ratio = Decimal(rule.match_ratio)
        if rule.type is MatchingType.RATIO_MATCH:
            amount = deposit * ratio
        else:
            amount = deposit * (ratio / 100)
        if rule.max_match_cents is not None:
            remaining = from_cents(rule.max_match_cents - rule.total_matched_cents)
            amount = min(amount, remaining)
        amount = max(amount, ZERO)
        return round_minor(amount)

    def book(self, session: Session, rule: ParentMatchingRule, match_amount: Decimal) -> ParentMatchingRule:
        """Add ``match_amount`` to the rule's running total."""

        cents = to_cents(match_amount)
        new_total = rule.total_matched_cents + cents
        if cents <= 0:
            raise ValidationError("Booked match must be greater than zero.")
        if rule.max_match_cents is not None and new_total > rule.max_match_cents:
            raise InvalidStateError(
                f"Matching rule '{rule.id}' would exceed its cap ({new_total} > {rule.max_match_cents} cents)."
            )
        rule.total_matched_cents = new_total
        session.add(rule)
        self.logger.log(
            "match_applied",
            goal_id=rule.goal_id,
            rule_id=rule.id,
            amount=str(from_cents(cents)),
            total_matched=str(rule.total_matched_amount),
        )
        return rule


__all__ = ["MatchingEvaluator", "validate_rule_terms"]
