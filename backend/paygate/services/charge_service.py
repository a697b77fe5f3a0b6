"""One-click charge service - charges a stored payment method, falling back to checkout"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from paygate.core.errors import RebillingNotAllowed
from paygate.core.metrics import one_click_charges_counter
from paygate.models.processor_customer import ProcessorCustomer
from paygate.models.user import User
from paygate.services import checkout_service, ledger_service
from paygate.services.catalog import ProductCatalog
from paygate.services.fanbases_client import FanbasesClient
from paygate.services.reconciliation_service import (
    CHARGE_SUCCEEDED, Channel, PaymentEvent, reconcile
)

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    charge_id: Optional[str] = None
    needs_checkout: bool = False
    checkout_url: Optional[str] = None
    reason: Optional[str] = None
    effect: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return {
            "charge_id": self.charge_id,
            "needs_checkout": self.needs_checkout,
            "checkout_url": self.checkout_url,
            "reason": self.reason,
            "effect": self.effect
        }


def _stored_payment_method(user_id: str, db: Session, client: FanbasesClient):
    """Return (customer_id, payment_method_id).

    Whatever is missing locally is asked of the processor once: the customer
    by the user's email, then the customer's saved payment methods.
    """
    customer = db.query(ProcessorCustomer).filter(ProcessorCustomer.user_id == user_id).first()
    customer_id = customer.processor_customer_id if customer else None
    payment_method_id = customer.payment_method_id if customer else None

    if not customer_id:
        user = db.query(User).filter(User.id == user_id).first()
        if not user or not user.email:
            return None, None
        match = client.find_customer_by_email(user.email)
        if not match or not match.get("id"):
            return None, None
        customer_id = str(match["id"])
        ledger_service.sync_processor_customer(db, user_id, customer_id, email=user.email)
        db.commit()
        logger.info(f"Matched processor customer {customer_id} to user {user_id} by email")

    if payment_method_id:
        return customer_id, payment_method_id

    methods = client.list_payment_methods(customer_id)
    if not methods or not methods[0].get("id"):
        return customer_id, None

    payment_method_id = str(methods[0]["id"])
    ledger_service.sync_processor_customer(db, user_id, customer_id, payment_method_id=payment_method_id)
    db.commit()
    logger.info(f"Stored payment method {payment_method_id} for user {user_id}")
    return customer_id, payment_method_id


def _fallback(
    reason: str,
    user_id: str,
    internal_reference: str,
    db: Session,
    client: FanbasesClient,
    catalog: ProductCatalog,
    success_url: Optional[str],
    cancel_url: Optional[str]
) -> ChargeResult:
    one_click_charges_counter.labels(outcome=reason).inc()
    checkout = None
    if success_url or cancel_url:
        checkout = checkout_service.create_checkout(
            user_id, internal_reference, db, client, catalog,
            success_url=success_url, cancel_url=cancel_url
        )
    return ChargeResult(
        needs_checkout=True,
        checkout_url=checkout.checkout_url if checkout else None,
        reason=reason
    )


def charge(
    user_id: str,
    internal_reference: str,
    db: Session,
    client: FanbasesClient,
    catalog: ProductCatalog,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None
) -> ChargeResult:
    """Charge the user's stored card for a catalog product.

    Returns ``needs_checkout`` when there is no usable card or the processor
    refuses rebilling; with redirect URLs given, a fresh checkout is opened
    for that case. Other processor failures raise ProcessorError.
    """
    product = catalog.require_by_reference(internal_reference)

    customer_id, payment_method_id = _stored_payment_method(user_id, db, client)
    if not customer_id or not payment_method_id:
        logger.info(f"No stored payment method for user {user_id}; checkout required")
        return _fallback("no_payment_method", user_id, internal_reference, db, client, catalog, success_url, cancel_url)

    try:
        response = client.charge_customer(
            customer_id,
            payment_method_id,
            product.processor_product_id,
            metadata={
                "user_id": user_id,
                "product_type": product.product_class,
                "internal_reference": product.internal_reference
            }
        )
    except RebillingNotAllowed:
        logger.info(f"Rebilling refused for user {user_id}; falling back to checkout")
        return _fallback("rebilling_not_allowed", user_id, internal_reference, db, client, catalog, success_url, cancel_url)

    # Same marker namespace as the processor's webhook for this charge
    event = PaymentEvent(
        channel=Channel.CHARGE,
        event_id=f"payment:{response.charge_id}",
        event_type=CHARGE_SUCCEEDED,
        user_id=user_id,
        internal_reference=product.internal_reference,
        payment_id=response.charge_id,
        amount_cents=product.price_cents,
        payload=response.raw
    )
    result = reconcile(event, db, catalog)

    one_click_charges_counter.labels(outcome="charged").inc()
    logger.info(f"One-click charge {response.charge_id} for user {user_id}: {product.internal_reference}")
    return ChargeResult(charge_id=response.charge_id, effect=result.effect)
