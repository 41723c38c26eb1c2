"""
Operator API: run sweeps on demand, retry failed assignments, grant trials,
inspect seller balances.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from scriptmarket.api.deps import require_service_key
from scriptmarket.db.session import get_db
from scriptmarket.ledger.service import ZERO, LedgerService
from scriptmarket.ledger.tasks import settle_balances
from scriptmarket.schemas.admin import AssignmentOut, SellerBalanceOut, TrialGrantIn
from scriptmarket.services.assignments.service import AssignmentError, AssignmentService
from scriptmarket.workers.tasks.assignments import dispatch_assignment
from scriptmarket.workers.tasks.payouts import process_payouts
from scriptmarket.workers.tasks.tradingview_health import check_tradingview_sessions
from scriptmarket.workers.tasks.trial_cleanup import expire_trials

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_service_key)])

SWEEPS = {
    "trial-cleanup": expire_trials,
    "settle-balances": settle_balances,
    "process-payouts": process_payouts,
    "tradingview-health": check_tradingview_sessions,
}


def _assignment_out(assignment) -> AssignmentOut:
    return AssignmentOut(
        id=assignment.id,
        status=assignment.status,
        pine_id=assignment.pine_id,
        tradingview_username=assignment.tradingview_username,
        is_trial=bool(assignment.is_trial),
        error_message=assignment.error_message,
    )


# ---------- Sweeps ----------
@router.post("/tasks/{name}")
def run_sweep(name: str):
    task = SWEEPS.get(name)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Unknown task: {name}")
    result = task.delay()
    return {"task": name, "task_id": result.id}


# ---------- Assignments ----------
@router.post("/assignments/{assignment_id}/retry", response_model=AssignmentOut)
def retry_assignment(assignment_id: str, db: Session = Depends(get_db)):
    try:
        assignment = AssignmentService(db).retry(assignment_id)
    except AssignmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()
    dispatch_assignment.delay(assignment.id)
    return _assignment_out(assignment)


@router.post("/trials", response_model=list[AssignmentOut])
def grant_trial(payload: TrialGrantIn, db: Session = Depends(get_db)):
    try:
        assignments = AssignmentService(db).grant_trial(
            payload.program_id, payload.buyer_id, payload.tradingview_username
        )
    except AssignmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()
    for assignment in assignments:
        dispatch_assignment.delay(assignment.id)
    return [_assignment_out(a) for a in assignments]


# ---------- Balances ----------
@router.get("/sellers/{seller_id}/balance", response_model=SellerBalanceOut)
def seller_balance(seller_id: str, db: Session = Depends(get_db)):
    balance = LedgerService(db).get_balance(seller_id)
    if balance is None:
        return SellerBalanceOut(
            seller_id=seller_id,
            pending_balance=ZERO,
            available_balance=ZERO,
            total_earned=ZERO,
            total_paid_out=ZERO,
        )
    return SellerBalanceOut(
        seller_id=balance.seller_id,
        pending_balance=balance.pending_balance,
        available_balance=balance.available_balance,
        total_earned=balance.total_earned,
        total_paid_out=balance.total_paid_out,
    )
