"""Billing API routes: checkout, one-click charge, payment confirmation and webhook"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from paygate.core.config import settings
from paygate.core.errors import (
    BillingError, InvalidPaymentEvent, LedgerWriteFailure, ProductNotFound, UserNotFound
)
from paygate.core.logging import webhook_logger
from paygate.core.security import require_auth, verify_webhook_signature
from paygate.db.session import get_db
from paygate.schemas.billing import (
    ChargeRequest, CheckoutRequest, ConfirmPaymentRequest, SetupCardRequest
)
from paygate.services import charge_service, checkout_service
from paygate.services.catalog import ProductCatalog, get_catalog
from paygate.services.fanbases_client import FanbasesClient, get_fanbases_client
from paygate.services.reconciliation_service import event_from_redirect, event_from_webhook, reconcile

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)


def get_product_catalog(db: Session = Depends(get_db)) -> ProductCatalog:
    return get_catalog(db)


@router.post("/checkout")
def create_checkout(
    request_data: CheckoutRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    client: FanbasesClient = Depends(get_fanbases_client),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Open a hosted checkout for a catalog product"""
    result = checkout_service.create_checkout(
        user_id, request_data.internal_reference, db, client, catalog,
        success_url=request_data.success_url, cancel_url=request_data.cancel_url
    )
    return result.to_dict()


@router.post("/setup-card")
def setup_card(
    request_data: SetupCardRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    client: FanbasesClient = Depends(get_fanbases_client),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Open a checkout that saves a card for one-click purchases"""
    try:
        result = checkout_service.create_card_setup_checkout(
            user_id, db, client, catalog,
            success_url=request_data.success_url, cancel_url=request_data.cancel_url
        )
    except ProductNotFound:
        raise HTTPException(500, "Card setup product not configured")
    return result.to_dict()


@router.post("/checkout/{session_id}/cancel")
def cancel_checkout(
    session_id: str,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Record that the user backed out of a checkout"""
    cancelled = checkout_service.cancel_checkout(user_id, session_id, db)
    return {"cancelled": cancelled}


@router.post("/charge")
def one_click_charge(
    request_data: ChargeRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    client: FanbasesClient = Depends(get_fanbases_client),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Charge the stored card, or tell the client to go through checkout"""
    result = charge_service.charge(
        user_id, request_data.internal_reference, db, client, catalog,
        success_url=request_data.success_url, cancel_url=request_data.cancel_url
    )
    return result.to_dict()


@router.post("/confirm")
def confirm_payment(
    request_data: ConfirmPaymentRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Apply a payment the browser reports after returning from checkout.

    Failures carry a support contact so the client can show an explicit
    "confirmation failed" state with a retry button.
    """
    params = request_data.model_dump(exclude_none=True)
    try:
        event = event_from_redirect(params)
        result = reconcile(event, db, catalog, session_user_id=user_id)
    except BillingError as e:
        logger.warning(f"Payment confirmation failed for user {user_id}: {e.error_code} {e.message}")
        raise HTTPException(e.status_code, {
            **e.to_dict(),
            "support_email": settings.SUPPORT_EMAIL,
            "retryable": not isinstance(e, InvalidPaymentEvent)
        })

    body = result.to_dict()
    body["success"] = True
    return body


@router.post("/webhook")
async def fanbases_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Fanbases webhook events

    The body is read as raw bytes; the signature is computed over them exactly
    as received.
    """
    payload = await request.body()
    signature = request.headers.get("x-webhook-signature")

    if not verify_webhook_signature(payload, signature):
        raise HTTPException(401, "Invalid signature")

    try:
        event = event_from_webhook(payload)
    except InvalidPaymentEvent as e:
        webhook_logger.error(f"Invalid webhook payload: {e.message}")
        raise HTTPException(400, e.message)

    webhook_logger.info(f"Webhook received: {event.event_type} ({event.event_id})")
    catalog = get_catalog(db)
    try:
        result = reconcile(event, db, catalog)
    except (UserNotFound, ProductNotFound) as e:
        # Permanently unresolvable; acknowledge so the processor stops retrying
        webhook_logger.warning(f"Webhook {event.event_id} flagged for manual review: {e.message}")
        return {
            "received": True,
            "event_type": event.event_type,
            "manual_review": True,
            "warning": e.message
        }
    except LedgerWriteFailure as e:
        raise HTTPException(e.status_code, e.message)

    body = result.to_dict()
    body["received"] = True
    return body
