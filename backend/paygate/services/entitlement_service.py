"""Entitlement service - decides whether a user can use a resource right now

``resolve`` and ``chat_access`` are pure; ``load_user_access_state`` builds the
snapshot they read from the ledger tables.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Callable, FrozenSet, Optional

from sqlalchemy.orm import Session

from paygate.core.config import settings
from paygate.core.errors import UserNotFound
from paygate.models.module import Module
from paygate.models.module_purchase import ModulePurchase
from paygate.models.special_access import SpecialAccess
from paygate.models.subscription import Subscription
from paygate.models.user import User
from paygate.services.catalog import CatalogEntry, ProductCatalog

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
DASHBOARD_ACCESS = "dashboard"


class AccessType(str, enum.Enum):
    FREE = "free"
    TIER_REQUIRED = "tier_required"
    PURCHASE_REQUIRED = "purchase_required"
    BOOK_A_CALL = "book_a_call"


class UnlockKind(str, enum.Enum):
    PURCHASE = "purchase"
    SUBSCRIBE = "subscribe"
    BOOK_CALL = "book_call"


@dataclass(frozen=True)
class ModuleAccessPolicy:
    access_type: AccessType
    required_tier: Optional[str] = None
    internal_reference: Optional[str] = None
    booking_url: Optional[str] = None

    @classmethod
    def from_module(cls, module: Module) -> "ModuleAccessPolicy":
        return cls(
            access_type=AccessType(module.access_type),
            required_tier=module.required_tier,
            internal_reference=module.internal_reference,
            booking_url=module.booking_url
        )


@dataclass(frozen=True)
class UserAccessState:
    """Ledger snapshot the resolver decides on"""
    subscription_active: bool = False
    trial_active: bool = False
    trial_expired: bool = False
    has_dashboard_access: bool = False
    purchased_refs: FrozenSet[str] = field(default_factory=frozenset)
    subscription_tier: str = "free"


@dataclass(frozen=True)
class UnlockAction:
    kind: UnlockKind
    url: Optional[str] = None
    internal_reference: Optional[str] = None


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    reason: str
    unlock_action: Optional[UnlockAction] = None

    def to_dict(self):
        action = None
        if self.unlock_action:
            action = {
                "kind": self.unlock_action.kind.value,
                "url": self.unlock_action.url,
                "internal_reference": self.unlock_action.internal_reference
            }
        return {"granted": self.granted, "reason": self.reason, "unlock_action": action}


@dataclass(frozen=True)
class TrialStatus:
    trial_active: bool
    trial_expired: bool


@dataclass(frozen=True)
class ChatAccess:
    has_active_subscription: bool
    is_on_trial: bool
    needs_trial: bool
    needs_subscription: bool

    @property
    def granted(self) -> bool:
        return self.has_active_subscription or self.is_on_trial

    def to_dict(self):
        return {
            "granted": self.granted,
            "has_active_subscription": self.has_active_subscription,
            "is_on_trial": self.is_on_trial,
            "needs_trial": self.needs_trial,
            "needs_subscription": self.needs_subscription
        }


def default_checkout_url(entry: CatalogEntry) -> str:
    """Frontend route that opens a checkout for a catalog product"""
    return f"{settings.FRONTEND_URL.rstrip('/')}/checkout/{entry.internal_reference}"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; every stored timestamp is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_trial_status(
    trial_started_at: Optional[datetime],
    trial_ends_at: Optional[datetime],
    now: Optional[datetime] = None
) -> TrialStatus:
    """Trial state is derived from timestamps, never stored.

    A started trial with no end timestamp counts as expired.
    """
    if trial_started_at is None:
        return TrialStatus(trial_active=False, trial_expired=False)

    now = _as_utc(now) or datetime.now(timezone.utc)
    ends_at = _as_utc(trial_ends_at)
    active = ends_at is not None and now < ends_at
    return TrialStatus(trial_active=active, trial_expired=not active)


def resolve(
    policy: ModuleAccessPolicy,
    state: UserAccessState,
    catalog: Optional[ProductCatalog] = None,
    checkout_url_builder: Callable[[CatalogEntry], str] = default_checkout_url
) -> AccessDecision:
    """Decide access to a module. First matching rule wins."""
    access_type = AccessType(policy.access_type)

    if access_type == AccessType.FREE:
        return AccessDecision(granted=True, reason="free")

    if access_type == AccessType.BOOK_A_CALL:
        if state.has_dashboard_access:
            return AccessDecision(granted=True, reason="dashboard_access")
        return AccessDecision(
            granted=False,
            reason="book_a_call_required",
            unlock_action=UnlockAction(kind=UnlockKind.BOOK_CALL, url=policy.booking_url)
        )

    if access_type == AccessType.TIER_REQUIRED:
        # Trial users are not subscribers here
        if state.subscription_active:
            return AccessDecision(granted=True, reason="subscription_active")
        return AccessDecision(
            granted=False,
            reason="subscription_required",
            unlock_action=UnlockAction(kind=UnlockKind.SUBSCRIBE, internal_reference=policy.required_tier)
        )

    # purchase_required
    reference = policy.internal_reference
    if reference and reference in state.purchased_refs:
        return AccessDecision(granted=True, reason="purchased")

    entry = catalog.get_by_reference(reference) if (catalog and reference) else None
    if entry is None:
        logger.error(f"Module requires purchase of '{reference}' but no catalog product exists for it")
        return AccessDecision(granted=False, reason="catalog_missing")

    return AccessDecision(
        granted=False,
        reason="purchase_required",
        unlock_action=UnlockAction(
            kind=UnlockKind.PURCHASE,
            url=checkout_url_builder(entry),
            internal_reference=entry.internal_reference
        )
    )


def chat_access(state: UserAccessState) -> ChatAccess:
    """Coarse gate for chat and AI tools: subscription or live trial.

    The four flags are mutually exclusive and cover every user.
    """
    has_subscription = state.subscription_active
    on_trial = not has_subscription and state.trial_active
    return ChatAccess(
        has_active_subscription=has_subscription,
        is_on_trial=on_trial,
        needs_trial=not has_subscription and not state.trial_active and not state.trial_expired,
        needs_subscription=not has_subscription and state.trial_expired
    )


def load_user_access_state(user_id: str, db: Session, now: Optional[datetime] = None) -> UserAccessState:
    """Read the ledger snapshot for a user. Read-only."""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise UserNotFound(f"User {user_id} not found", details={"user_id": user_id})

    subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    subscription_active = bool(subscription and subscription.status in ACTIVE_SUBSCRIPTION_STATUSES)

    trial = compute_trial_status(user.trial_started_at, user.trial_ends_at, now)

    has_dashboard = db.query(SpecialAccess).filter(
        SpecialAccess.user_id == user_id,
        SpecialAccess.access_type == DASHBOARD_ACCESS
    ).first() is not None

    purchased = db.query(ModulePurchase.internal_reference).filter(
        ModulePurchase.user_id == user_id
    ).all()

    return UserAccessState(
        subscription_active=subscription_active,
        trial_active=trial.trial_active,
        trial_expired=trial.trial_expired,
        has_dashboard_access=has_dashboard,
        purchased_refs=frozenset(row[0] for row in purchased),
        subscription_tier=user.subscription_tier or "free"
    )


def check_module_access(
    user_id: str,
    module_id: str,
    db: Session,
    catalog: ProductCatalog,
    checkout_url_builder: Callable[[CatalogEntry], str] = default_checkout_url
) -> Optional[AccessDecision]:
    """Resolve access to a stored module; None if the module does not exist"""
    module = db.query(Module).filter(Module.id == module_id).first()
    if not module:
        return None
    state = load_user_access_state(user_id, db)
    return resolve(ModuleAccessPolicy.from_module(module), state, catalog, checkout_url_builder)


def start_trial(user_id: str, db: Session, now: Optional[datetime] = None) -> UserAccessState:
    """Start the free trial for a user who has never had one.

    A no-op for subscribers and for users whose trial already started.
    """
    now = now or datetime.now(timezone.utc)
    state = load_user_access_state(user_id, db, now)
    if not chat_access(state).needs_trial:
        logger.info(f"Trial not started for user {user_id}: not eligible")
        return state

    updated = db.query(User).filter(
        User.id == user_id,
        User.trial_started_at.is_(None)
    ).update({
        User.trial_started_at: now,
        User.trial_ends_at: now + timedelta(days=settings.TRIAL_DAYS)
    }, synchronize_session=False)
    db.commit()

    if updated:
        logger.info(f"Started {settings.TRIAL_DAYS}-day trial for user {user_id}")
    return load_user_access_state(user_id, db, now)
