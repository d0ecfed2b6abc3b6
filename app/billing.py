"""
Billing router: the caller's plan tier and quota figures, and plan changes.

Reading the billing status also applies expiry (downgrade to free or block),
so GET always reports the plan currently in force.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import UserSession, get_current_session
from database import get_db
from services import account_service

router = APIRouter()


class PlanBody(BaseModel):
    planId: str | None = None
    billingCycle: str | None = None


@router.get("/billing")
def billing_status(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    status = account_service.resolve_billing_status(db, session.username)
    account = status.account
    next_billing_at = account.next_billing_at
    return {
        "status": 200,
        "message": "success",
        "data": {
            "planId": account.plan_id,
            "billingCycle": account.billing_cycle,
            "storageLimitBytes": account.storage_limit_bytes,
            "storageUsedBytes": account.storage_used_bytes or 0,
            "nextBillingAt": next_billing_at.isoformat() if next_billing_at else None,
            "blocked": status.blocked,
        },
    }


@router.post("/billing")
def change_plan(
    body: PlanBody,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    plan, cycle = account_service.change_plan(
        db,
        session.username,
        body.planId,
        body.billingCycle,
        is_admin=session.role == "admin",
    )
    return {
        "status": 200,
        "message": "success",
        "data": {
            "planId": plan["id"],
            "billingCycle": cycle,
            "storageLimitBytes": plan["storage_limit_bytes"],
        },
    }
