"""API helpers for KidGoals: JSON friendly views of goals and their ledger."""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from .models import ProgressEvent
from .persistence import GoalChallenge, GoalMilestone, ParentMatchingRule, SavingsContribution, SavingsGoal
from .store import GoalDetail, progress_percentage


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _when(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


class ApiExporter:
    """Convert KidGoals records to JSON friendly dictionaries.

    Amounts are rendered as strings so no precision is lost in transit.
    """

    def goal(self, goal: SavingsGoal) -> Dict[str, object]:
        return {
            "id": goal.id,
            "child_id": goal.child_id,
            "name": goal.name,
            "description": goal.description,
            "category": goal.category.value,
            "status": goal.status.value,
            "priority": goal.priority,
            "target_amount": _money(goal.target_amount),
            "current_amount": _money(goal.current_amount),
            "remaining_amount": _money(goal.remaining_amount),
            "progress": str(progress_percentage(goal)),
            "target_date": _when(goal.target_date),
            "image_url": goal.image_url,
            "product_url": goal.product_url,
            "auto_transfer_type": goal.auto_transfer_type.value,
            "auto_transfer_amount": str(goal.auto_transfer_amount),
            "created_at": _when(goal.created_at),
            "completed_at": _when(goal.completed_at),
            "purchased_at": _when(goal.purchased_at),
            "purchase_notes": goal.purchase_notes,
            "cancelled_at": _when(goal.cancelled_at),
        }

    def detail(self, detail: GoalDetail) -> Dict[str, object]:
        payload = self.goal(detail.goal)
        payload["milestones"] = [self.milestone(item) for item in detail.milestones]
        payload["matching_rule"] = self.matching_rule(detail.matching_rule) if detail.matching_rule else None
        payload["active_challenge"] = self.challenge(detail.active_challenge) if detail.active_challenge else None
        return payload

    def milestone(self, milestone: GoalMilestone) -> Dict[str, object]:
        return {
            "id": milestone.id,
            "percent_complete": milestone.percent_complete,
            "target_amount": _money(milestone.target_amount),
            "is_achieved": milestone.is_achieved,
            "achieved_at": _when(milestone.achieved_at),
            "bonus_amount": _money(milestone.bonus_amount),
            "celebration_message": milestone.celebration_message,
        }

    def contribution(self, contribution: SavingsContribution) -> Dict[str, object]:
        return {
            "id": contribution.id,
            "goal_id": contribution.goal_id,
            "sequence": contribution.sequence,
            "type": contribution.type.value,
            "amount": _money(contribution.amount),
            "goal_balance_after": _money(contribution.goal_balance_after),
            "source_contribution_id": contribution.source_contribution_id,
            "milestone_id": contribution.milestone_id,
            "challenge_id": contribution.challenge_id,
            "description": contribution.description,
            "created_by": contribution.created_by,
            "created_at": _when(contribution.created_at),
        }

    def matching_rule(self, rule: ParentMatchingRule) -> Dict[str, object]:
        return {
            "id": rule.id,
            "goal_id": rule.goal_id,
            "type": rule.type.value,
            "match_ratio": str(rule.match_ratio),
            "max_match_amount": _money(rule.max_match_amount),
            "total_matched_amount": _money(rule.total_matched_amount),
            "remaining_match_amount": _money(rule.remaining_match_amount),
            "is_active": rule.is_active,
            "expires_at": _when(rule.expires_at),
        }

    def challenge(self, challenge: GoalChallenge) -> Dict[str, object]:
        return {
            "id": challenge.id,
            "goal_id": challenge.goal_id,
            "target_amount": _money(challenge.target_amount),
            "bonus_amount": _money(challenge.bonus_amount),
            "status": challenge.status.value,
            "start_date": _when(challenge.start_date),
            "end_date": _when(challenge.end_date),
            "completed_at": _when(challenge.completed_at),
            "failed_at": _when(challenge.failed_at),
            "cancelled_at": _when(challenge.cancelled_at),
            "description": challenge.description,
        }

    def event(self, event: ProgressEvent) -> Dict[str, object]:
        return event.as_dict()

    def to_json(self, payload: Dict[str, object]) -> str:
        return json.dumps(payload, sort_keys=True)


__all__ = ["ApiExporter"]
