from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from kidgoals.config import Settings, parse_ladder
from kidgoals.exceptions import InvalidStateError, ValidationError
from kidgoals.matching import MatchingEvaluator, validate_rule_terms
from kidgoals.models import MatchingType
from kidgoals.money import exact, format_currency, from_cents, round_minor, to_amount, to_cents, to_decimal
from kidgoals.ops import StructuredLogger
from kidgoals.persistence import ParentMatchingRule

NOW = datetime(2026, 3, 2, 9, 30)


def make_rule(**overrides: object) -> ParentMatchingRule:
    values = {
        "goal_id": "goal-1",
        "type": MatchingType.RATIO_MATCH,
        "match_ratio": Decimal("0.5"),
    }
    values.update(overrides)
    return ParentMatchingRule(**values)


def test_money_helpers_round_half_up() -> None:
    assert to_decimal("2.345") == Decimal("2.35")
    assert to_decimal(0.1) == Decimal("0.10")
    assert round_minor(Decimal("0.005")) == Decimal("0.01")
    assert to_cents("12.34") == 1234
    assert from_cents(1234) == Decimal("12.34")
    assert format_currency(Decimal("1234.5")) == "$1,234.50"


def test_to_amount_refuses_fractions_of_a_cent() -> None:
    assert to_amount("10.5") == Decimal("10.50")
    assert to_amount(3) == Decimal("3.00")
    assert to_amount("4.100") == Decimal("4.10")
    with pytest.raises(ValidationError):
        to_amount("10.005")
    with pytest.raises(ValidationError):
        to_amount(0.001)


def test_exact_rejects_garbage() -> None:
    with pytest.raises(ValidationError):
        exact("twelve")
    with pytest.raises(ValidationError):
        exact(True)
    with pytest.raises(ValidationError):
        exact("NaN")
    assert isinstance(ValidationError("x"), ValueError)


def test_ratio_match_scales_deposit() -> None:
    evaluator = MatchingEvaluator()
    rule = make_rule()
    assert evaluator.compute_match(rule, Decimal("20"), at=NOW) == Decimal("10.00")


def test_percentage_match_uses_hundredths() -> None:
    evaluator = MatchingEvaluator()
    rule = make_rule(type=MatchingType.PERCENTAGE_MATCH, match_ratio=Decimal("25"))
    assert evaluator.compute_match(rule, Decimal("10"), at=NOW) == Decimal("2.50")


def test_match_rounds_half_up_after_computation() -> None:
    evaluator = MatchingEvaluator()
    assert evaluator.compute_match(make_rule(), Decimal("0.05"), at=NOW) == Decimal("0.03")
    rule = make_rule(match_ratio=Decimal("0.3333"))
    assert evaluator.compute_match(rule, Decimal("1.05"), at=NOW) == Decimal("0.35")


def test_cap_clamps_to_remaining_amount() -> None:
    evaluator = MatchingEvaluator()
    rule = make_rule(match_ratio=Decimal("1.0"), max_match_cents=500, total_matched_cents=400)
    assert evaluator.compute_match(rule, Decimal("10"), at=NOW) == Decimal("1.00")

    exhausted = make_rule(match_ratio=Decimal("1.0"), max_match_cents=500, total_matched_cents=500)
    assert evaluator.compute_match(exhausted, Decimal("10"), at=NOW) == Decimal("0.00")


def test_inactive_expired_or_missing_rules_match_nothing() -> None:
    evaluator = MatchingEvaluator()
    assert evaluator.compute_match(None, Decimal("10"), at=NOW) == Decimal("0.00")
    assert evaluator.compute_match(make_rule(is_active=False), Decimal("10"), at=NOW) == Decimal("0.00")
    expired = make_rule(expires_at=NOW)
    assert evaluator.compute_match(expired, Decimal("10"), at=NOW) == Decimal("0.00")
    later = make_rule(expires_at=NOW + timedelta(seconds=1))
    assert evaluator.compute_match(later, Decimal("10"), at=NOW) == Decimal("5.00")


def test_book_refuses_to_exceed_cap() -> None:
    class _Session:
        def __init__(self) -> None:
            self.added: list = []

        def add(self, item: object) -> None:
            self.added.append(item)

    logger = StructuredLogger()
    evaluator = MatchingEvaluator(logger=logger)
    rule = make_rule(match_ratio=Decimal("1.0"), max_match_cents=500, total_matched_cents=400)
    session = _Session()

    evaluator.book(session, rule, Decimal("1.00"))  # type: ignore[arg-type]
    assert rule.total_matched_cents == 500
    assert logger.events("match_applied")[-1]["total_matched"] == "5.00"

    with pytest.raises(InvalidStateError):
        evaluator.book(session, rule, Decimal("0.01"))  # type: ignore[arg-type]
    assert rule.total_matched_cents == 500


def test_rule_terms_validation() -> None:
    assert validate_rule_terms(MatchingType.RATIO_MATCH, "0.5", "5") == (Decimal("0.5"), Decimal("5.00"))
    with pytest.raises(ValidationError):
        validate_rule_terms(MatchingType.RATIO_MATCH, 0, None)
    with pytest.raises(ValidationError):
        validate_rule_terms(MatchingType.RATIO_MATCH, "0.12345", None)
    with pytest.raises(ValidationError):
        validate_rule_terms(MatchingType.PERCENTAGE_MATCH, 50, 0)


def test_settings_from_env() -> None:
    settings = Settings.from_env(
        {
            "KIDGOALS_DATABASE_URL": "sqlite://",
            "KIDGOALS_LOCK_TIMEOUT_SECONDS": "0.5",
            "KIDGOALS_MILESTONE_LADDER": "10, 50, 100",
        }
    )
    assert settings.database_url == "sqlite://"
    assert settings.lock_timeout_seconds == 0.5
    assert settings.unit_of_work_timeout_seconds == 10.0
    assert settings.milestone_ladder == (10, 50, 100)
    assert settings.log_path is None

    with pytest.raises(ValidationError):
        Settings.from_env({"KIDGOALS_LOCK_TIMEOUT_SECONDS": "soon"})
    with pytest.raises(ValidationError):
        parse_ladder("50,25")
    with pytest.raises(ValidationError):
        parse_ladder("0,100")
