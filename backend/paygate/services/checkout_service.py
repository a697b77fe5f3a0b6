"""Checkout service - opens hosted checkouts for catalog products"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from paygate.core.config import settings, WEBHOOK_URL, DEFAULT_SUCCESS_URL, DEFAULT_CANCEL_URL
from paygate.core.errors import UserNotFound
from paygate.core.metrics import checkout_sessions_counter
from paygate.models.checkout_session import CheckoutSession
from paygate.models.user import User
from paygate.services.catalog import ProductCatalog
from paygate.services.fanbases_client import FanbasesClient

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    checkout_url: str
    session_id: str
    product_class: str
    amount_cents: Optional[int] = None

    def to_dict(self):
        return {
            "checkout_url": self.checkout_url,
            "session_id": self.session_id,
            "product_class": self.product_class,
            "amount_cents": self.amount_cents
        }


def subscription_recurrence() -> dict:
    """Fixed billing cycle attached to every subscription checkout"""
    return {"interval": "day", "interval_count": settings.SUBSCRIPTION_PERIOD_DAYS}


def create_checkout(
    user_id: str,
    internal_reference: str,
    db: Session,
    client: FanbasesClient,
    catalog: ProductCatalog,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None
) -> CheckoutResult:
    """Open a processor checkout and record it as a pending session.

    The metadata sent here is what the processor echoes back on the redirect
    and the webhook, and is the primary key reconciliation matches on.
    Raises ProductNotFound, UserNotFound or ProcessorError.
    """
    product = catalog.require_by_reference(internal_reference)

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise UserNotFound(f"User {user_id} not found", details={"user_id": user_id})

    metadata = {
        "user_id": user_id,
        "product_type": product.product_class,
        "internal_reference": product.internal_reference,
        "fanbases_product_id": product.processor_product_id,
        "email": user.email,
        "name": user.name or ""
    }
    recurrence = subscription_recurrence() if product.product_class == "subscription" else None

    session = client.create_checkout_session(
        product_id=product.processor_product_id,
        metadata=metadata,
        success_url=success_url or DEFAULT_SUCCESS_URL,
        cancel_url=cancel_url or DEFAULT_CANCEL_URL,
        webhook_url=WEBHOOK_URL,
        recurrence=recurrence
    )

    db.add(CheckoutSession(
        user_id=user_id,
        processor_session_id=session.checkout_session_id,
        product_class=product.product_class,
        internal_reference=product.internal_reference,
        amount_cents=product.price_cents,
        status="pending"
    ))
    db.commit()

    checkout_sessions_counter.labels(product_class=product.product_class, status="pending").inc()
    logger.info(
        f"Opened checkout {session.checkout_session_id} for user {user_id}: "
        f"{product.internal_reference} ({product.product_class})"
    )
    return CheckoutResult(
        checkout_url=session.payment_link,
        session_id=session.checkout_session_id,
        product_class=product.product_class,
        amount_cents=product.price_cents
    )


def create_card_setup_checkout(
    user_id: str,
    db: Session,
    client: FanbasesClient,
    catalog: ProductCatalog,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None
) -> CheckoutResult:
    """Checkout for the small card-setup product that puts a payment method on file"""
    frontend = settings.FRONTEND_URL.rstrip("/")
    return create_checkout(
        user_id,
        settings.CARD_SETUP_REFERENCE,
        db,
        client,
        catalog,
        success_url=success_url or f"{frontend}/settings?setup=complete",
        cancel_url=cancel_url or f"{frontend}/settings?setup=cancelled"
    )


def cancel_checkout(user_id: str, session_id: str, db: Session) -> bool:
    """Mark a pending checkout abandoned. Completed sessions are left alone."""
    session = db.query(CheckoutSession).filter(
        CheckoutSession.user_id == user_id,
        CheckoutSession.processor_session_id == session_id
    ).first()
    if not session or session.status != "pending":
        return False

    session.status = "cancelled"
    db.commit()
    checkout_sessions_counter.labels(product_class=session.product_class, status="cancelled").inc()
    logger.info(f"Checkout {session_id} cancelled by user {user_id}")
    return True
