"""Access API routes"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from paygate.core.errors import UserNotFound
from paygate.core.metrics import entitlement_checks_counter
from paygate.core.security import require_auth
from paygate.db.session import get_db
from paygate.services.catalog import get_catalog
from paygate.services.entitlement_service import (
    chat_access, check_module_access, load_user_access_state, start_trial
)

router = APIRouter(prefix="/api/access", tags=["access"])


def _state_or_404(user_id: str, db: Session):
    try:
        return load_user_access_state(user_id, db)
    except UserNotFound:
        raise HTTPException(404, "User not found")


@router.get("/modules/{module_id}")
def get_module_access(module_id: str, user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Access decision for one module, with the unlock path when denied"""
    try:
        decision = check_module_access(user_id, module_id, db, get_catalog(db))
    except UserNotFound:
        raise HTTPException(404, "User not found")
    if decision is None:
        raise HTTPException(404, "Module not found")

    entitlement_checks_counter.labels(resource="module", granted=str(decision.granted).lower()).inc()
    return {"module_id": module_id, **decision.to_dict()}


@router.get("/chat")
def get_chat_access(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Chat and AI tools: subscription or live trial"""
    access = chat_access(_state_or_404(user_id, db))
    entitlement_checks_counter.labels(resource="chat", granted=str(access.granted).lower()).inc()
    return access.to_dict()


@router.get("/summary")
def get_access_summary(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Everything the client needs to refresh its view after a purchase"""
    state = _state_or_404(user_id, db)
    return {
        "subscription_active": state.subscription_active,
        "subscription_tier": state.subscription_tier,
        "trial_active": state.trial_active,
        "trial_expired": state.trial_expired,
        "has_dashboard_access": state.has_dashboard_access,
        "purchased": sorted(state.purchased_refs),
        "chat": chat_access(state).to_dict()
    }


@router.post("/trial")
def post_start_trial(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Start the free trial if the user is eligible"""
    try:
        state = start_trial(user_id, db)
    except UserNotFound:
        raise HTTPException(404, "User not found")
    return chat_access(state).to_dict()
