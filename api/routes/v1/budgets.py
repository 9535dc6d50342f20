"""
api/routes/v1/budgets.py -- Budget review, the approval step of the finance workflow.

Routes:
  POST /api/v1/budgets/{budget_id}/review -- approve or reject a submitted budget

Budget records themselves belong to the finance module; this route owns
only the authorization gate and the audit entry for the decision.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import BudgetReviewRequest, BudgetReviewResponse
from auth.dependencies import rate_limit, require_permission
from auth.models import RequestContext
from auth.permissions import Permission

logger = logging.getLogger("orgwarden.api")

# Auth policy: POST /budgets/{id}/review requires budgets.approve.
router = APIRouter(dependencies=[Depends(rate_limit())])


@router.post("/budgets/{budget_id}/review", response_model=BudgetReviewResponse)
def review_budget(
    request: Request,
    budget_id: int,
    body: BudgetReviewRequest,
    ctx: RequestContext = Depends(require_permission(Permission.BUDGETS_APPROVE)),
) -> BudgetReviewResponse:
    request.app.state.audit.record(
        actor_id=ctx.principal_id,
        action=f"budget_{body.decision}",
        entity_type="budget",
        entity_id=budget_id,
        changes={"status": {"old": "submitted", "new": body.decision}},
        metadata={"comment": body.comment} if body.comment else None,
        ip_address=ctx.client.ip_address,
        user_agent=ctx.client.user_agent,
    )
    logger.info("Budget %d %s by principal %d", budget_id, body.decision, ctx.principal_id)
    return BudgetReviewResponse(budget_id=budget_id, decision=body.decision, reviewed_by=ctx.principal_id)
