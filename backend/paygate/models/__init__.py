"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from paygate.models.base import Base
from paygate.models.user import User
from paygate.models.catalog_product import CatalogProduct
from paygate.models.module import Module
from paygate.models.module_purchase import ModulePurchase
from paygate.models.subscription import Subscription
from paygate.models.credit_transaction import CreditTransaction
from paygate.models.checkout_session import CheckoutSession
from paygate.models.payment_event import PaymentEvent
from paygate.models.webhook_log import WebhookLog
from paygate.models.special_access import SpecialAccess
from paygate.models.processor_customer import ProcessorCustomer

# Export all for convenience
__all__ = [
    "Base", "User", "CatalogProduct", "Module", "ModulePurchase", "Subscription",
    "CreditTransaction", "CheckoutSession", "PaymentEvent", "WebhookLog",
    "SpecialAccess", "ProcessorCustomer"
]
