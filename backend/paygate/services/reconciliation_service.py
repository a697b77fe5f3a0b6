"""Reconciliation service - applies payment events to the ledger exactly once

The same purchase can reach us as a browser redirect (Channel A) and as a
signed webhook (Channel B), each possibly repeated and in either order. Two
guards keep the effect single:

* a PaymentEvent marker keyed by the processor's identifier, claimed with an
  atomic insert inside the same transaction as the mutation;
* per-entity guards beneath it (module purchase pair, conditional
  subscription activation) for reports of one purchase that carry different
  identifiers.
"""
import enum
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paygate.core.errors import (
    BillingError, InvalidPaymentEvent, LedgerWriteFailure, PaymentNotSucceeded,
    ProductNotFound, Unauthorized, UserNotFound
)
from paygate.core.logging import reconciliation_logger, security_logger
from paygate.core.metrics import payment_events_counter
from paygate.models.checkout_session import CheckoutSession
from paygate.models.user import User
from paygate.services import ledger_service
from paygate.services.catalog import (
    CatalogEntry, ProductCatalog, SUBSCRIPTION_PLANS, parse_topup_credits, resolve_plan
)

logger = logging.getLogger(__name__)


class Channel(str, enum.Enum):
    REDIRECT = "redirect"
    WEBHOOK = "webhook"
    CHARGE = "charge"


class WebhookEventType(str, enum.Enum):
    PAYMENT_REFUNDED = "payment.refunded"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CREATED = "subscription.created"
    PRODUCT_PURCHASED = "product.purchased"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    UNKNOWN = "unknown"


# Redirects only ever report a completed checkout
REDIRECT_COMPLETED = "checkout.completed"
CHARGE_SUCCEEDED = "charge.succeeded"

# Webhook types that are recorded but never touch the ledger
AUDIT_ONLY_EVENTS = {
    WebhookEventType.PAYMENT_SUCCEEDED: "processed",
    WebhookEventType.PAYMENT_FAILED: "processed",
    WebhookEventType.PAYMENT_REFUNDED: "manual_review",
    WebhookEventType.UNKNOWN: "unhandled",
}

SUBSCRIPTION_ENDINGS = {
    WebhookEventType.SUBSCRIPTION_CANCELED: "cancelled",
    WebhookEventType.SUBSCRIPTION_COMPLETED: "completed",
    WebhookEventType.SUBSCRIPTION_EXPIRED: "completed",
}

# Events whose product must be resolved before anything is applied
PURCHASE_EVENTS = {REDIRECT_COMPLETED, CHARGE_SUCCEEDED,
                   WebhookEventType.PRODUCT_PURCHASED.value, WebhookEventType.SUBSCRIPTION_CREATED.value}


@dataclass
class PaymentEvent:
    """A payment report normalised from either channel"""
    channel: Channel
    event_id: str
    event_type: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    internal_reference: Optional[str] = None
    product_class: Optional[str] = None
    processor_product_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    processor_customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount_cents: Optional[int] = None
    redirect_status: Optional[str] = None
    is_free_trial: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    applied: bool
    already_processed: bool
    event_id: str
    event_type: str
    user_id: Optional[str] = None
    internal_reference: Optional[str] = None
    product_class: Optional[str] = None
    status: str = "processed"
    effect: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "already_processed": self.already_processed,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "internal_reference": self.internal_reference,
            "product_class": self.product_class,
            "status": self.status,
            "effect": self.effect
        }


# --- Parsing -----------------------------------------------------------------

def classify_webhook_event(payload: Mapping[str, Any]) -> WebhookEventType:
    """Infer the event type of a webhook body.

    An explicit ``event_type`` wins. Otherwise the first matching structural
    rule decides, in this order: refund, cancellation, completion, expiry,
    renewal, creation, one-time purchase, failure, generic payment.
    """
    explicit = payload.get("event_type")
    if explicit:
        try:
            return WebhookEventType(explicit)
        except ValueError:
            logger.warning(f"Unrecognised webhook event_type '{explicit}'")
            return WebhookEventType.UNKNOWN

    if payload.get("refund_amount"):
        return WebhookEventType.PAYMENT_REFUNDED

    subscription = payload.get("subscription")
    if isinstance(subscription, Mapping):
        if subscription.get("cancelled_at"):
            return WebhookEventType.SUBSCRIPTION_CANCELED
        if subscription.get("completed_at"):
            return WebhookEventType.SUBSCRIPTION_COMPLETED
        if subscription.get("expired_at"):
            return WebhookEventType.SUBSCRIPTION_EXPIRED
        if subscription.get("renewed_at"):
            return WebhookEventType.SUBSCRIPTION_RENEWED
        if subscription.get("start_date"):
            return WebhookEventType.SUBSCRIPTION_CREATED

    if "product_price" in payload and payload.get("product_price") is not None:
        return WebhookEventType.PRODUCT_PURCHASED
    if payload.get("failure_reason"):
        return WebhookEventType.PAYMENT_FAILED
    if payload.get("payment_id") and payload.get("amount"):
        return WebhookEventType.PAYMENT_SUCCEEDED
    return WebhookEventType.UNKNOWN


def _str_or_none(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _dollars_to_cents(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, ValueError):
        return None


def _webhook_metadata(payload: Mapping[str, Any]) -> Dict[str, Any]:
    api_metadata = payload.get("api_metadata")
    if isinstance(api_metadata, Mapping) and isinstance(api_metadata.get("data"), Mapping):
        return dict(api_metadata["data"])
    metadata = payload.get("metadata")
    return dict(metadata) if isinstance(metadata, Mapping) else {}


def _webhook_event_id(payload: Mapping[str, Any], event_type: WebhookEventType, raw_body: bytes) -> str:
    explicit = _str_or_none(payload.get("event_id"))
    if explicit:
        return explicit

    subscription = payload.get("subscription") if isinstance(payload.get("subscription"), Mapping) else {}
    subscription_id = _str_or_none(subscription.get("id"))
    payment_id = _str_or_none(payload.get("payment_id"))

    # Shares the redirect's namespace so both reports of one payment collide
    if payment_id and event_type in (WebhookEventType.PRODUCT_PURCHASED, WebhookEventType.SUBSCRIPTION_CREATED):
        return f"payment:{payment_id}"

    if subscription_id and event_type.value.startswith("subscription."):
        kind = event_type.value.split(".", 1)[1]
        if event_type == WebhookEventType.SUBSCRIPTION_RENEWED:
            return f"subscription:{subscription_id}:{kind}:{subscription.get('renewed_at')}"
        return f"subscription:{subscription_id}:{kind}"

    if payment_id:
        return f"{event_type.value}:{payment_id}"

    return f"body:{hashlib.sha256(raw_body).hexdigest()}"


def event_from_webhook(raw_body: bytes) -> PaymentEvent:
    """Parse a verified webhook body"""
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidPaymentEvent(f"Webhook body is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise InvalidPaymentEvent("Webhook body must be a JSON object")

    event_type = classify_webhook_event(payload)
    metadata = _webhook_metadata(payload)
    buyer = payload.get("buyer") if isinstance(payload.get("buyer"), Mapping) else {}
    item = payload.get("item") if isinstance(payload.get("item"), Mapping) else {}
    subscription = payload.get("subscription") if isinstance(payload.get("subscription"), Mapping) else {}

    return PaymentEvent(
        channel=Channel.WEBHOOK,
        event_id=_webhook_event_id(payload, event_type, raw_body),
        event_type=event_type.value,
        user_id=_str_or_none(metadata.get("user_id")),
        email=_str_or_none(buyer.get("email")),
        internal_reference=_str_or_none(metadata.get("internal_reference")),
        product_class=_str_or_none(metadata.get("product_type")),
        processor_product_id=_str_or_none(
            item.get("id") or subscription.get("product_id") or metadata.get("fanbases_product_id")
        ),
        processor_subscription_id=_str_or_none(subscription.get("id")),
        processor_customer_id=_str_or_none(buyer.get("id")),
        payment_method_id=_str_or_none(payload.get("payment_method_id") or buyer.get("payment_method_id")),
        payment_id=_str_or_none(payload.get("payment_id")),
        amount_cents=_dollars_to_cents(payload.get("product_price")),
        is_free_trial=bool(subscription.get("is_free_trial")),
        payload=payload
    )


def _redirect_metadata(params: Mapping[str, Any]) -> Dict[str, Any]:
    """Collect metadata from ``metadata[...]`` query keys, a nested dict, or bare keys"""
    metadata = {}
    nested = params.get("metadata")
    if isinstance(nested, Mapping):
        metadata.update(nested)
    for key, value in params.items():
        if key.startswith("metadata[") and key.endswith("]"):
            metadata[key[len("metadata["):-1]] = value
    for key in ("user_id", "product_type", "internal_reference", "fanbases_product_id"):
        if key not in metadata and params.get(key):
            metadata[key] = params[key]
    return metadata


def event_from_redirect(params: Mapping[str, Any]) -> PaymentEvent:
    """Parse the query parameters the browser brought back from checkout"""
    payment_id = _str_or_none(params.get("payment_intent") or params.get("payment_id"))
    if not payment_id:
        raise InvalidPaymentEvent("Missing payment_intent or payment_id")

    metadata = _redirect_metadata(params)
    return PaymentEvent(
        channel=Channel.REDIRECT,
        event_id=f"payment:{payment_id}",
        event_type=REDIRECT_COMPLETED,
        user_id=_str_or_none(metadata.get("user_id")),
        internal_reference=_str_or_none(metadata.get("internal_reference")),
        product_class=_str_or_none(metadata.get("product_type")),
        processor_product_id=_str_or_none(metadata.get("fanbases_product_id")),
        payment_id=payment_id,
        redirect_status=_str_or_none(params.get("redirect_status")),
        payload={k: v for k, v in params.items() if not isinstance(v, (bytes, bytearray))}
    )


# --- Resolution --------------------------------------------------------------

def _user_exists(db: Session, user_id: str) -> bool:
    return db.query(User.id).filter(User.id == user_id).first() is not None


def _resolve_user(event: PaymentEvent, db: Session, session_user_id: Optional[str]) -> str:
    if event.channel == Channel.REDIRECT:
        if not session_user_id:
            raise Unauthorized("Payment confirmation requires a signed-in user")
        if event.user_id and event.user_id != session_user_id:
            security_logger.warning(
                f"Redirect metadata names user {event.user_id} but session belongs to {session_user_id}"
            )
            raise Unauthorized("Payment belongs to a different user")
        if not _user_exists(db, session_user_id):
            raise UserNotFound(f"User {session_user_id} not found", details={"user_id": session_user_id})
        return session_user_id

    if event.user_id and _user_exists(db, event.user_id):
        return event.user_id

    if event.email:
        row = db.query(User.id).filter(User.email == event.email).first()
        if row:
            return row[0]

    raise UserNotFound(
        "Could not match payment to a user",
        details={"metadata_user_id": event.user_id, "email": event.email}
    )


def _latest_pending_session(db: Session, user_id: str) -> Optional[CheckoutSession]:
    return db.query(CheckoutSession).filter(
        CheckoutSession.user_id == user_id,
        CheckoutSession.status == "pending"
    ).order_by(CheckoutSession.created_at.desc(), CheckoutSession.id.desc()).first()


def _resolve_product(
    event: PaymentEvent,
    db: Session,
    catalog: ProductCatalog,
    user_id: str
) -> Optional[CatalogEntry]:
    """Find the catalog entry the event pays for.

    Product class and effect always come from the catalog, never from
    client-supplied metadata.
    """
    entry = None
    if event.channel == Channel.WEBHOOK:
        # Echoed checkout metadata first; subscription events often carry only the product id
        if event.internal_reference:
            entry = catalog.get_by_reference(event.internal_reference)
        if entry is None and event.processor_product_id:
            entry = catalog.get_by_processor_id(event.processor_product_id)
        return entry

    if event.internal_reference:
        entry = catalog.get_by_reference(event.internal_reference)
        if entry is None:
            raise ProductNotFound(
                f"No catalog product for reference '{event.internal_reference}'",
                details={"internal_reference": event.internal_reference}
            )
        return entry

    if event.processor_product_id:
        entry = catalog.get_by_processor_id(event.processor_product_id)
        if entry is not None:
            return entry

    if event.channel == Channel.REDIRECT:
        pending = _latest_pending_session(db, user_id)
        if pending is not None:
            logger.info(
                f"Redirect for user {user_id} carried no product metadata; "
                f"using pending checkout {pending.processor_session_id}"
            )
            return catalog.get_by_reference(pending.internal_reference) or CatalogEntry(
                processor_product_id="",
                product_class=pending.product_class,
                internal_reference=pending.internal_reference,
                price_cents=pending.amount_cents
            )
    return None


# --- Dispatch ----------------------------------------------------------------

def apply_product_effect(
    db: Session,
    user_id: str,
    product: CatalogEntry,
    charge_id: Optional[str] = None,
    amount_cents: Optional[int] = None,
    processor_subscription_id: Optional[str] = None,
    is_free_trial: bool = False,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Ledger mutation for a completed purchase of ``product``. Does not commit."""
    reference = product.internal_reference
    amount_cents = amount_cents if amount_cents is not None else product.price_cents

    if product.product_class == "topup":
        credits = parse_topup_credits(reference)
        ledger_service.add_credits(db, user_id, credits, "topup", {
            "internal_reference": reference,
            "charge_id": charge_id,
            "amount_cents": amount_cents
        })
        return {"credits_added": str(credits)}

    if product.product_class == "subscription":
        plan = resolve_plan(reference)
        activated = ledger_service.activate_subscription(
            db, user_id, plan["tier"],
            processor_subscription_id=processor_subscription_id,
            status="trialing" if is_free_trial else "active",
            now=now
        )
        effect = {"tier": plan["tier"], "activated": activated, "credits_added": "0"}
        if activated:
            ledger_service.add_credits(db, user_id, plan["credits"], "subscription", {
                "internal_reference": reference,
                "charge_id": charge_id,
                "subscription_id": processor_subscription_id,
                "event": "created",
                "tier": plan["tier"]
            })
            effect["credits_added"] = str(plan["credits"])
        return effect

    if product.product_class == "module":
        inserted = ledger_service.record_module_purchase(db, user_id, reference, charge_id, amount_cents)
        return {"module": reference, "unlocked": inserted}

    if product.product_class == "card_setup":
        # Payment method is recorded by the processor-customer sync, not the ledger
        return {"card_setup": True}

    raise ProductNotFound(
        f"Unsupported product class '{product.product_class}'",
        details={"internal_reference": reference}
    )


def _apply_renewal(db: Session, event: PaymentEvent, user_id: str, product: Optional[CatalogEntry], now) -> Dict[str, Any]:
    tier = None
    if product is not None and product.product_class == "subscription":
        tier = resolve_plan(product.internal_reference)["tier"]

    renewed_tier = ledger_service.renew_subscription(
        db, user_id, tier=tier, processor_subscription_id=event.processor_subscription_id, now=now
    )
    if renewed_tier is None:
        if tier is None:
            raise ProductNotFound(
                "Renewal for a user with no subscription and no mappable product",
                details={"processor_product_id": event.processor_product_id}
            )
        ledger_service.activate_subscription(
            db, user_id, tier, processor_subscription_id=event.processor_subscription_id, now=now
        )
        renewed_tier = tier

    credits = SUBSCRIPTION_PLANS[renewed_tier]["credits"]
    ledger_service.add_credits(db, user_id, credits, "subscription", {
        "subscription_id": event.processor_subscription_id,
        "event": "renewed",
        "tier": renewed_tier
    })
    return {"tier": renewed_tier, "renewed": True, "credits_added": str(credits)}


def _dispatch(
    db: Session,
    event: PaymentEvent,
    user_id: str,
    product: Optional[CatalogEntry],
    now: datetime
) -> Dict[str, Any]:
    if event.event_type == WebhookEventType.SUBSCRIPTION_RENEWED.value:
        return _apply_renewal(db, event, user_id, product, now)

    ending = SUBSCRIPTION_ENDINGS.get(WebhookEventType(event.event_type)) if event.channel == Channel.WEBHOOK else None
    if ending:
        ended = ledger_service.end_subscription(
            db, user_id, ending, processor_subscription_id=event.processor_subscription_id, now=now
        )
        return {"subscription_status": ending, "ended": ended}

    if event.event_type == WebhookEventType.SUBSCRIPTION_CREATED.value and product.product_class != "subscription":
        raise ProductNotFound(
            f"Subscription event maps to non-subscription product '{product.internal_reference}'",
            details={"internal_reference": product.internal_reference}
        )

    return apply_product_effect(
        db, user_id, product,
        charge_id=event.payment_id,
        amount_cents=event.amount_cents,
        processor_subscription_id=event.processor_subscription_id,
        is_free_trial=event.is_free_trial,
        now=now
    )


def complete_checkout_sessions(db: Session, user_id: str, internal_reference: str) -> int:
    """Close the user's pending checkouts for a product once it is paid"""
    result = db.execute(
        update(CheckoutSession)
        .where(
            CheckoutSession.user_id == user_id,
            CheckoutSession.internal_reference == internal_reference,
            CheckoutSession.status == "pending"
        )
        .values(status="completed", updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# --- Entry point -------------------------------------------------------------

def _log_for_review(db: Session, event: PaymentEvent, status: str, user_id: Optional[str], error: Optional[str] = None):
    try:
        ledger_service.log_webhook_event(
            db, event.channel.value, event.event_type, status,
            payload=event.payload, user_id=user_id, event_id=event.event_id, error_message=error
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not write audit row for event {event.event_id}: {e}", exc_info=True)


def _check_redirect_status(event: PaymentEvent) -> None:
    if event.redirect_status is None:
        # The processor only sends the browser back here on success
        reconciliation_logger.warning(
            f"Redirect {event.event_id} has no redirect_status; treating as success"
        )
        return
    if event.redirect_status != "succeeded":
        raise PaymentNotSucceeded(
            f"Payment was not successful (status: {event.redirect_status})",
            details={"redirect_status": event.redirect_status}
        )


def reconcile(
    event: PaymentEvent,
    db: Session,
    catalog: ProductCatalog,
    session_user_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> ReconcileResult:
    """Apply a payment event to the ledger at most once.

    Webhook signatures are verified by the caller before parsing. Raises
    Unauthorized, UserNotFound, ProductNotFound (after logging the event for
    manual review), PaymentNotSucceeded, or LedgerWriteFailure. A repeated
    event returns ``already_processed`` and changes nothing.
    """
    now = now or datetime.now(timezone.utc)
    channel = event.channel.value

    if event.channel == Channel.REDIRECT:
        _check_redirect_status(event)

    # Audit-only webhook types never reach the ledger
    if event.channel == Channel.WEBHOOK and event.event_type in {t.value for t in AUDIT_ONLY_EVENTS}:
        status = AUDIT_ONLY_EVENTS[WebhookEventType(event.event_type)]
        try:
            user_id = _resolve_user(event, db, session_user_id)
        except UserNotFound:
            user_id = None
        _log_for_review(db, event, status, user_id)
        payment_events_counter.labels(channel=channel, outcome=status).inc()
        reconciliation_logger.info(f"Webhook {event.event_type} ({event.event_id}) recorded as {status}")
        return ReconcileResult(
            applied=False, already_processed=False, event_id=event.event_id,
            event_type=event.event_type, user_id=user_id, status=status
        )

    try:
        user_id = _resolve_user(event, db, session_user_id)
    except UserNotFound as e:
        _log_for_review(db, event, "user_not_found", None, e.message)
        payment_events_counter.labels(channel=channel, outcome="user_not_found").inc()
        raise

    try:
        product = _resolve_product(event, db, catalog, user_id)
    except ProductNotFound as e:
        product = None
        error = e.message
    else:
        error = "No catalog product matches this payment"

    if product is None and event.event_type in PURCHASE_EVENTS:
        _log_for_review(db, event, "unmapped_product", user_id, error)
        payment_events_counter.labels(channel=channel, outcome="unmapped_product").inc()
        raise ProductNotFound(error, details={
            "internal_reference": event.internal_reference,
            "processor_product_id": event.processor_product_id
        })

    reference = product.internal_reference if product else event.internal_reference
    try:
        claimed = ledger_service.claim_payment_event(
            db, event.event_id, channel, event.event_type,
            user_id=user_id, internal_reference=reference, now=now
        )
        if not claimed:
            db.rollback()
            reconciliation_logger.info(f"Event {event.event_id} already applied; skipping ({channel})")
            payment_events_counter.labels(channel=channel, outcome="already_processed").inc()
            if event.channel == Channel.WEBHOOK:
                _log_for_review(db, event, "duplicate", user_id)
            return ReconcileResult(
                applied=False, already_processed=True, event_id=event.event_id,
                event_type=event.event_type, user_id=user_id, internal_reference=reference,
                product_class=product.product_class if product else None, status="duplicate"
            )

        effect = _dispatch(db, event, user_id, product, now)

        if event.channel == Channel.WEBHOOK and event.processor_customer_id:
            ledger_service.sync_processor_customer(
                db, user_id, event.processor_customer_id,
                email=event.email, payment_method_id=event.payment_method_id
            )

        if product is not None:
            complete_checkout_sessions(db, user_id, product.internal_reference)

        if event.channel == Channel.WEBHOOK:
            ledger_service.log_webhook_event(
                db, channel, event.event_type, "processed",
                payload=event.payload, user_id=user_id, event_id=event.event_id, commit=False
            )
        db.commit()
    except ProductNotFound as e:
        db.rollback()
        _log_for_review(db, event, "unmapped_product", user_id, e.message)
        payment_events_counter.labels(channel=channel, outcome="unmapped_product").inc()
        raise
    except BillingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Ledger write failed for event {event.event_id}: {e}", exc_info=True)
        _log_for_review(db, event, "failed", user_id, str(e))
        payment_events_counter.labels(channel=channel, outcome="failed").inc()
        raise LedgerWriteFailure(
            "Could not record payment; it is safe to retry",
            details={"event_id": event.event_id}
        )

    payment_events_counter.labels(channel=channel, outcome="applied").inc()
    reconciliation_logger.info(
        f"Applied {event.event_type} ({event.event_id}) via {channel} for user {user_id}: {effect}"
    )
    return ReconcileResult(
        applied=True, already_processed=False, event_id=event.event_id,
        event_type=event.event_type, user_id=user_id, internal_reference=reference,
        product_class=product.product_class if product else None, effect=effect
    )
