"""Ledger service - atomic writes to credits, subscriptions, purchases and event markers

None of these functions commit. The caller owns the transaction so a ledger
mutation and its PaymentEvent marker land (or roll back) together.
"""
import logging
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, not_, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from paygate.core.config import settings
from paygate.core.errors import UserNotFound
from paygate.models.credit_transaction import CreditTransaction
from paygate.models.module_purchase import ModulePurchase
from paygate.models.payment_event import PaymentEvent
from paygate.models.processor_customer import ProcessorCustomer
from paygate.models.subscription import Subscription
from paygate.models.user import User
from paygate.models.webhook_log import WebhookLog

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")
ENDED_STATUSES = ("cancelled", "completed")


def _insert(db: Session, table):
    """INSERT construct with ON CONFLICT support for the bound dialect"""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


def _now(now: Optional[datetime] = None) -> datetime:
    return now or datetime.now(timezone.utc)


def claim_payment_event(
    db: Session,
    event_id: str,
    channel: str,
    event_type: str,
    user_id: Optional[str] = None,
    internal_reference: Optional[str] = None,
    now: Optional[datetime] = None
) -> bool:
    """Insert the applied-event marker if absent.

    Returns False when another transaction already recorded this event id.
    Concurrent claimers serialize on the unique index; the loser sees False
    once the winner commits.
    """
    stmt = _insert(db, PaymentEvent.__table__).values(
        event_id=event_id,
        channel=channel,
        event_type=event_type,
        user_id=user_id,
        internal_reference=internal_reference,
        applied_at=_now(now)
    ).on_conflict_do_nothing(index_elements=["event_id"])
    result = db.execute(stmt)
    return result.rowcount == 1


def add_credits(
    db: Session,
    user_id: str,
    amount: Decimal,
    transaction_type: str,
    metadata: Optional[Dict[str, Any]] = None
) -> None:
    """Atomic ``credits = credits + amount`` plus one ledger line"""
    amount = Decimal(amount)
    result = db.execute(
        update(User)
        .where(User.id == user_id)
        .values(credits=User.credits + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise UserNotFound(f"User {user_id} not found", details={"user_id": user_id})

    db.add(CreditTransaction(
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        transaction_metadata=metadata or {}
    ))
    db.flush()
    logger.info(f"Credited {amount} ({transaction_type}) to user {user_id}")


def set_subscription_tier(db: Session, user_id: str, tier: str) -> None:
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(subscription_tier=tier)
        .execution_options(synchronize_session=False)
    )


def activate_subscription(
    db: Session,
    user_id: str,
    tier: str,
    processor_subscription_id: Optional[str] = None,
    status: str = "active",
    now: Optional[datetime] = None
) -> bool:
    """Upsert the user's subscription with a fresh period starting now.

    The update half is skipped when the same tier is already live for an
    unexpired period, so two differently-identified reports of one purchase
    activate it once. It is also skipped when the row records this same
    processor subscription as already ended, so a late creation report never
    revives it. Returns whether this call activated the subscription.
    """
    now = _now(now)
    period_end = now + timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS)

    stmt = _insert(db, Subscription.__table__).values(
        user_id=user_id,
        tier=tier,
        status=status,
        period_start=now,
        period_end=period_end,
        processor_subscription_id=processor_subscription_id,
        created_at=now,
        updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            "tier": stmt.excluded.tier,
            "status": stmt.excluded.status,
            "period_start": stmt.excluded.period_start,
            "period_end": stmt.excluded.period_end,
            # A fresh activation drops the previous subscription's id
            "processor_subscription_id": stmt.excluded.processor_subscription_id,
            "cancelled_at": None,
            "updated_at": now
        },
        where=not_(or_(
            and_(
                Subscription.status.in_(ACTIVE_STATUSES),
                Subscription.tier == stmt.excluded.tier,
                Subscription.period_end > now
            ),
            and_(
                Subscription.status.in_(ENDED_STATUSES),
                Subscription.processor_subscription_id.isnot(None),
                stmt.excluded.processor_subscription_id.isnot(None),
                Subscription.processor_subscription_id == stmt.excluded.processor_subscription_id
            )
        ))
    )
    result = db.execute(stmt)
    activated = result.rowcount > 0

    if activated:
        set_subscription_tier(db, user_id, tier)
        logger.info(f"Activated {tier} subscription ({status}) for user {user_id} until {period_end.isoformat()}")
    else:
        if processor_subscription_id:
            # Backfill the id when a redirect activated the row first
            db.execute(
                update(Subscription)
                .where(Subscription.user_id == user_id, Subscription.processor_subscription_id.is_(None))
                .values(processor_subscription_id=processor_subscription_id)
                .execution_options(synchronize_session=False)
            )
        logger.info(f"Subscription {tier} for user {user_id} already active or ended; activation skipped")
    return activated


def renew_subscription(
    db: Session,
    user_id: str,
    tier: Optional[str] = None,
    processor_subscription_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> Optional[str]:
    """Extend the current subscription by one period.

    Returns the renewed tier, or None if the user has no subscription row.
    """
    now = _now(now)
    subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    if not subscription:
        return None

    renewed_tier = tier or subscription.tier
    values = {
        "status": "active",
        "tier": renewed_tier,
        "period_start": now,
        "period_end": now + timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS),
        "cancelled_at": None,
        "updated_at": now
    }
    if processor_subscription_id:
        values["processor_subscription_id"] = processor_subscription_id

    db.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    set_subscription_tier(db, user_id, renewed_tier)
    logger.info(f"Renewed {renewed_tier} subscription for user {user_id}")
    return renewed_tier


def end_subscription(
    db: Session,
    user_id: str,
    status: str,
    processor_subscription_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> bool:
    """Mark the subscription cancelled or completed and drop the user to free.

    With a ``processor_subscription_id``, a row that records a different
    subscription is left alone: the event is about a subscription the user
    has since replaced. When the user has no row yet, an ended row is written
    for that id so its creation report, if it arrives later, is not applied.
    Credits are never touched here.
    """
    now = _now(now)
    values = {"status": status, "updated_at": now}
    if status == "cancelled":
        values["cancelled_at"] = now

    conditions = [Subscription.user_id == user_id]
    if processor_subscription_id:
        conditions.append(or_(
            Subscription.processor_subscription_id.is_(None),
            Subscription.processor_subscription_id == processor_subscription_id
        ))

    result = db.execute(
        update(Subscription)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    ended = result.rowcount > 0

    if not ended:
        current = db.query(Subscription.processor_subscription_id).filter(
            Subscription.user_id == user_id
        ).first()
        if current is not None:
            logger.info(
                f"Ignoring {status} for subscription {processor_subscription_id} of user {user_id}; "
                f"current subscription is {current.processor_subscription_id}"
            )
            return False
        if processor_subscription_id:
            user = db.query(User.subscription_tier).filter(User.id == user_id).first()
            db.execute(_insert(db, Subscription.__table__).values(
                user_id=user_id,
                tier=user.subscription_tier if user else "free",
                period_start=now,
                period_end=now,
                processor_subscription_id=processor_subscription_id,
                created_at=now,
                **values
            ).on_conflict_do_nothing(index_elements=["user_id"]))

    set_subscription_tier(db, user_id, "free")
    logger.info(f"Subscription for user {user_id} marked {status}; tier set to free")
    return ended


def record_module_purchase(
    db: Session,
    user_id: str,
    internal_reference: str,
    charge_id: Optional[str] = None,
    amount_cents: Optional[int] = None
) -> bool:
    """Insert-once module unlock. Returns False if the user already owns it."""
    stmt = _insert(db, ModulePurchase.__table__).values(
        user_id=user_id,
        internal_reference=internal_reference,
        charge_id=charge_id,
        amount_cents=amount_cents,
        created_at=datetime.now(timezone.utc)
    ).on_conflict_do_nothing(index_elements=["user_id", "internal_reference"])
    inserted = db.execute(stmt).rowcount == 1
    if inserted:
        logger.info(f"Unlocked module {internal_reference} for user {user_id}")
    else:
        logger.info(f"Module {internal_reference} already owned by user {user_id}")
    return inserted


def sync_processor_customer(
    db: Session,
    user_id: str,
    processor_customer_id: str,
    email: Optional[str] = None,
    payment_method_id: Optional[str] = None
) -> None:
    """Upsert the processor customer; keeps the stored payment method unless a new one is given"""
    now = datetime.now(timezone.utc)
    stmt = _insert(db, ProcessorCustomer.__table__).values(
        user_id=user_id,
        processor_customer_id=str(processor_customer_id),
        payment_method_id=payment_method_id,
        email=email,
        updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            "processor_customer_id": stmt.excluded.processor_customer_id,
            "email": func.coalesce(stmt.excluded.email, ProcessorCustomer.email),
            "payment_method_id": func.coalesce(stmt.excluded.payment_method_id, ProcessorCustomer.payment_method_id),
            "updated_at": now
        }
    )
    db.execute(stmt)


def log_webhook_event(
    db: Session,
    channel: str,
    event_type: str,
    status: str,
    payload: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    error_message: Optional[str] = None,
    commit: bool = True
) -> WebhookLog:
    """Append an audit row. Commits by default so the row survives the caller's rollback path."""
    entry = WebhookLog(
        provider="fanbases",
        channel=channel,
        event_type=event_type,
        event_id=event_id,
        user_id=user_id,
        status=status,
        payload=payload,
        error_message=error_message
    )
    db.add(entry)
    if commit:
        db.commit()
    return entry


def get_credit_balance(user_id: str, db: Session) -> Optional[Dict[str, Any]]:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return None
    return {
        "credits": str(user.credits),
        "subscription_tier": user.subscription_tier
    }


def get_credit_transactions(user_id: str, limit: int = 50, db: Session = None) -> List[Dict[str, Any]]:
    """Most recent ledger lines first"""
    rows = db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id
    ).order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(limit).all()
    return [
        {
            "id": row.id,
            "amount": str(row.amount),
            "transaction_type": row.transaction_type,
            "metadata": row.transaction_metadata or {},
            "created_at": row.created_at.isoformat() if row.created_at else None
        }
        for row in rows
    ]
