"""Credit API routes"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from paygate.core.security import require_auth
from paygate.db.session import get_db
from paygate.services.ledger_service import get_credit_balance, get_credit_transactions

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/balance")
def get_balance(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Get current credit balance"""
    balance = get_credit_balance(user_id, db)
    if not balance:
        raise HTTPException(404, "User not found")
    return balance


@router.get("/transactions")
def get_transactions(
    limit: int = 50,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Get credit transaction history"""
    transactions = get_credit_transactions(user_id, min(max(limit, 1), 200), db)
    return {"transactions": transactions}
