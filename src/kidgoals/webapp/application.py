"""FastAPI frontend for the KidGoals engine.

JSON endpoints over :class:`~kidgoals.service.GoalService`. Amounts travel as
strings of exact decimals in both directions. Serve the default instance with
``uvicorn --factory kidgoals.webapp:build_default_app``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.status import (
    HTTP_201_CREATED,
    HTTP_204_NO_CONTENT,
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from ..exceptions import (
    ConcurrencyError,
    GoalNotActiveError,
    InsufficientFundsError,
    InvalidStateError,
    KidGoalsError,
    NotFoundError,
    ValidationError,
)
from ..models import AutoTransferType, ContributionType, GoalCategory, GoalStatus, MatchingType
from ..service import GoalService

STATUS_BY_ERROR = (
    (ValidationError, HTTP_400_BAD_REQUEST),
    (NotFoundError, HTTP_404_NOT_FOUND),
    (ConcurrencyError, HTTP_503_SERVICE_UNAVAILABLE),
    (GoalNotActiveError, HTTP_409_CONFLICT),
    (InsufficientFundsError, HTTP_409_CONFLICT),
    (InvalidStateError, HTTP_409_CONFLICT),
)


def status_for(exc: KidGoalsError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return HTTP_400_BAD_REQUEST


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class AccountBody(BaseModel):
    starting_balance: Decimal = Decimal("0")


class GoalCreateBody(BaseModel):
    name: str
    target_amount: Decimal
    description: Optional[str] = None
    category: GoalCategory = GoalCategory.OTHER
    target_date: Optional[datetime] = None
    priority: int = 1
    auto_transfer_type: AutoTransferType = AutoTransferType.NONE
    auto_transfer_amount: Decimal = Decimal("0")
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    milestone_bonuses: Optional[Dict[int, Decimal]] = None


class GoalUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    target_amount: Optional[Decimal] = None
    category: Optional[GoalCategory] = None
    target_date: Optional[datetime] = None
    priority: Optional[int] = None
    auto_transfer_type: Optional[AutoTransferType] = None
    auto_transfer_amount: Optional[Decimal] = None
    image_url: Optional[str] = None
    product_url: Optional[str] = None


class ContributionBody(BaseModel):
    amount: Decimal
    description: Optional[str] = None
    created_by: Optional[str] = None


class WithdrawalBody(BaseModel):
    amount: Decimal
    reason: Optional[str] = None
    created_by: Optional[str] = None


class GiftBody(BaseModel):
    amount: Decimal
    contribution_type: ContributionType = ContributionType.EXTERNAL_GIFT
    description: Optional[str] = None
    created_by: Optional[str] = None


class CancelBody(BaseModel):
    reason: Optional[str] = None
    created_by: Optional[str] = None


class PurchaseBody(BaseModel):
    notes: Optional[str] = None


class AutoTransferBody(BaseModel):
    allowance_amount: Decimal


class MatchingRuleBody(BaseModel):
    type: MatchingType
    match_ratio: Decimal
    max_match_amount: Optional[Decimal] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None


class MatchingRuleUpdateBody(BaseModel):
    type: Optional[MatchingType] = None
    match_ratio: Optional[Decimal] = None
    max_match_amount: Optional[Decimal] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


class ChallengeBody(BaseModel):
    target_amount: Decimal
    end_date: datetime
    bonus_amount: Decimal = Decimal("0")
    description: Optional[str] = None
    created_by: Optional[str] = None


class SweepBody(BaseModel):
    now: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(service: GoalService) -> FastAPI:
    app = FastAPI(title="KidGoals")
    app.state.service = service
    api = service.api

    @app.exception_handler(KidGoalsError)
    async def handle_kidgoals_error(request: Request, exc: KidGoalsError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content={"error": exc.code, "detail": str(exc)})

    # Main balance -----------------------------------------------------------
    @app.post("/accounts/{child_id}", status_code=HTTP_201_CREATED)
    def open_account(child_id: str, body: AccountBody) -> Dict[str, Any]:
        balance = service.open_account(child_id, body.starting_balance)
        return {"child_id": child_id, "balance": str(balance)}

    @app.get("/accounts/{child_id}")
    def get_account(child_id: str) -> Dict[str, Any]:
        return {"child_id": child_id, "balance": str(service.main_balance(child_id))}

    # Goals ----------------------------------------------------------------
    @app.post("/children/{child_id}/goals", status_code=HTTP_201_CREATED)
    def create_goal(child_id: str, body: GoalCreateBody) -> Dict[str, Any]:
        options = body.model_dump(exclude={"name", "target_amount"})
        goal = service.create_goal(child_id, body.name, body.target_amount, **options)
        return api.detail(service.get_goal_detail(goal.id))

    @app.get("/children/{child_id}/goals")
    def list_goals(
        child_id: str, status: Optional[GoalStatus] = None, include_completed: bool = False
    ) -> List[Dict[str, Any]]:
        goals = service.list_child_goals(child_id, status=status, include_completed=include_completed)
        return [api.goal(goal) for goal in goals]

    @app.get("/goals/{goal_id}")
    def get_goal(goal_id: str) -> Dict[str, Any]:
        return api.detail(service.get_goal_detail(goal_id))

    @app.patch("/goals/{goal_id}")
    def update_goal(goal_id: str, body: GoalUpdateBody) -> Dict[str, Any]:
        goal = service.update_goal(goal_id, **body.model_dump(exclude_unset=True))
        return api.goal(goal)

    @app.post("/goals/{goal_id}/pause")
    def pause_goal(goal_id: str) -> Dict[str, Any]:
        return api.goal(service.pause_goal(goal_id))

    @app.post("/goals/{goal_id}/resume")
    def resume_goal(goal_id: str) -> Dict[str, Any]:
        return api.goal(service.resume_goal(goal_id))

    @app.post("/goals/{goal_id}/cancel")
    def cancel_goal(goal_id: str, body: CancelBody) -> Dict[str, Any]:
        return api.goal(service.cancel_goal(goal_id, body.reason, created_by=body.created_by))

    @app.post("/goals/{goal_id}/purchase")
    def mark_purchased(goal_id: str, body: PurchaseBody) -> Dict[str, Any]:
        return api.goal(service.mark_purchased(goal_id, body.notes))

    @app.get("/goals/{goal_id}/audit")
    def audit_goal(goal_id: str) -> Dict[str, Any]:
        audit = service.audit_goal(goal_id)
        return {
            "goal_id": audit.goal_id,
            "current_amount": str(audit.current_amount),
            "ledger_total": str(audit.ledger_total),
            "contribution_count": audit.contribution_count,
            "consistent": audit.consistent,
        }

    # Money movement -------------------------------------------------------
    @app.post("/goals/{goal_id}/contributions", status_code=HTTP_201_CREATED)
    def contribute(goal_id: str, body: ContributionBody) -> Dict[str, Any]:
        event = service.contribute(goal_id, body.amount, body.description, created_by=body.created_by)
        return api.event(event)

    @app.get("/goals/{goal_id}/contributions")
    def contribution_history(
        goal_id: str,
        type: Optional[ContributionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        history = service.contribution_history(goal_id, contribution_type=type, start=start, end=end)
        return [api.contribution(item) for item in history]

    @app.post("/goals/{goal_id}/withdrawals", status_code=HTTP_201_CREATED)
    def withdraw(goal_id: str, body: WithdrawalBody) -> Dict[str, Any]:
        contribution = service.withdraw(goal_id, body.amount, body.reason, created_by=body.created_by)
        return api.contribution(contribution)

    @app.post("/goals/{goal_id}/gifts", status_code=HTTP_201_CREATED)
    def allocate_gift(goal_id: str, body: GiftBody) -> Dict[str, Any]:
        event = service.allocate_gift(
            goal_id,
            body.amount,
            contribution_type=body.contribution_type,
            description=body.description,
            created_by=body.created_by,
        )
        return api.event(event)

    @app.post("/children/{child_id}/auto-transfers")
    def process_auto_transfers(child_id: str, body: AutoTransferBody) -> List[Dict[str, Any]]:
        return [api.event(event) for event in service.process_auto_transfers(child_id, body.allowance_amount)]

    # Matching rules -------------------------------------------------------
    @app.post("/goals/{goal_id}/matching-rule", status_code=HTTP_201_CREATED)
    def create_matching_rule(goal_id: str, body: MatchingRuleBody) -> Dict[str, Any]:
        rule = service.create_matching_rule(
            goal_id,
            body.type,
            body.match_ratio,
            body.max_match_amount,
            expires_at=body.expires_at,
            created_by=body.created_by,
        )
        return api.matching_rule(rule)

    @app.get("/goals/{goal_id}/matching-rule")
    def get_matching_rule(goal_id: str) -> Dict[str, Any]:
        return api.matching_rule(service.get_matching_rule(goal_id))

    @app.patch("/goals/{goal_id}/matching-rule")
    def update_matching_rule(goal_id: str, body: MatchingRuleUpdateBody) -> Dict[str, Any]:
        rule = service.update_matching_rule(
            goal_id,
            match_type=body.type,
            match_ratio=body.match_ratio,
            max_match_amount=body.max_match_amount,
            is_active=body.is_active,
            expires_at=body.expires_at,
        )
        return api.matching_rule(rule)

    @app.delete("/goals/{goal_id}/matching-rule", status_code=HTTP_204_NO_CONTENT)
    def remove_matching_rule(goal_id: str) -> Response:
        service.remove_matching_rule(goal_id)
        return Response(status_code=HTTP_204_NO_CONTENT)

    # Challenges -----------------------------------------------------------
    @app.post("/goals/{goal_id}/challenge", status_code=HTTP_201_CREATED)
    def create_challenge(goal_id: str, body: ChallengeBody) -> Dict[str, Any]:
        challenge = service.create_challenge(
            goal_id,
            body.target_amount,
            body.end_date,
            body.bonus_amount,
            description=body.description,
            created_by=body.created_by,
        )
        return api.challenge(challenge)

    @app.get("/goals/{goal_id}/challenge")
    def get_active_challenge(goal_id: str) -> Optional[Dict[str, Any]]:
        challenge = service.get_active_challenge(goal_id)
        return api.challenge(challenge) if challenge else None

    @app.delete("/goals/{goal_id}/challenge")
    def cancel_challenge(goal_id: str) -> Dict[str, Any]:
        return api.challenge(service.cancel_challenge(goal_id))

    @app.get("/children/{child_id}/challenges")
    def list_child_challenges(child_id: str) -> List[Dict[str, Any]]:
        return [api.challenge(item) for item in service.list_child_challenges(child_id)]

    @app.post("/challenges/sweep")
    def sweep_expired_challenges(body: SweepBody) -> Dict[str, Any]:
        return {"failed": service.sweep_expired_challenges(body.now)}

    return app


def build_default_app() -> FastAPI:
    """Application over a service configured from the environment."""

    return create_app(GoalService())


__all__ = ["STATUS_BY_ERROR", "build_default_app", "create_app", "status_for"]
