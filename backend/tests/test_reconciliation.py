"""Reconciliation tests: exactly-once application across redirect and webhook"""
import json
import pytest
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError

from paygate.core.errors import (
    LedgerWriteFailure, PaymentNotSucceeded, ProductNotFound, Unauthorized, UserNotFound
)
from paygate.models import (
    CheckoutSession, CreditTransaction, ModulePurchase, PaymentEvent, ProcessorCustomer,
    Subscription, WebhookLog
)
from paygate.services.reconciliation_service import event_from_redirect, event_from_webhook, reconcile


def webhook(payload):
    return event_from_webhook(json.dumps(payload).encode("utf-8"))


def redirect(payment_intent, **metadata):
    params = {"payment_intent": payment_intent, "redirect_status": "succeeded"}
    for key, value in metadata.items():
        params[f"metadata[{key}]"] = value
    return event_from_redirect(params)


def topup_webhook(payment_id="pay_topup_1", user_id="user-1"):
    return webhook({
        "payment_id": payment_id,
        "product_price": 25.00,
        "item": {"id": "prod_2500"},
        "buyer": {"id": "cust_1", "email": "buyer@example.com"},
        "metadata": {"user_id": user_id, "internal_reference": "2500_credits", "product_type": "topup"}
    })


def module_webhook(payment_id):
    return webhook({
        "payment_id": payment_id,
        "product_price": 49.00,
        "item": {"id": "prod_module_x"},
        "metadata": {"user_id": "user-1", "internal_reference": "module-x", "product_type": "module"}
    })


def subscription_created(subscription_id="sub_1", product_id="prod_tier2", **extra):
    body = {"start_date": "2026-10-19", "id": subscription_id, "product_id": product_id}
    body.update(extra)
    return webhook({"subscription": body, "buyer": {"email": "buyer@example.com"}})


def statuses(db_session):
    return [row.status for row in db_session.query(WebhookLog).order_by(WebhookLog.id).all()]


@pytest.mark.critical
class TestIdempotence:
    """Replays change nothing"""

    def test_topup_applied_once(self, test_user, db_session, catalog):
        first = reconcile(topup_webhook(), db_session, catalog)
        second = reconcile(topup_webhook(), db_session, catalog)

        assert first.applied is True
        assert first.effect == {"credits_added": "2500"}
        assert second.applied is False
        assert second.already_processed is True

        db_session.refresh(test_user)
        assert test_user.credits == Decimal("2500")
        line = db_session.query(CreditTransaction).one()
        assert line.amount == Decimal("2500")
        assert line.transaction_type == "topup"
        assert db_session.query(PaymentEvent).count() == 1
        assert statuses(db_session) == ["processed", "duplicate"]

    def test_webhook_syncs_processor_customer(self, test_user, db_session, catalog):
        reconcile(topup_webhook(), db_session, catalog)

        customer = db_session.query(ProcessorCustomer).filter_by(user_id=test_user.id).one()
        assert customer.processor_customer_id == "cust_1"
        assert customer.email == "buyer@example.com"

    @pytest.mark.parametrize("order", ["redirect_first", "webhook_first"])
    def test_redirect_and_webhook_commute(self, order, test_user, db_session, catalog):
        events = [
            (redirect("pay_mod_1", user_id="user-1", internal_reference="module-x"), "user-1"),
            (module_webhook("pay_mod_1"), None),
        ]
        if order == "webhook_first":
            events.reverse()

        results = [reconcile(event, db_session, catalog, session_user_id=sid) for event, sid in events]

        assert [r.applied for r in results] == [True, False]
        assert results[1].already_processed is True
        assert db_session.query(ModulePurchase).filter_by(user_id=test_user.id).count() == 1

    def test_module_reported_under_different_ids(self, test_user, db_session, catalog):
        """Both markers are new; the purchase pair still unlocks once"""
        reconcile(redirect("pi_A", user_id="user-1", internal_reference="module-x"), db_session, catalog, session_user_id="user-1")
        result = reconcile(module_webhook("pay_B"), db_session, catalog)

        assert result.applied is True
        assert result.effect == {"module": "module-x", "unlocked": False}
        assert db_session.query(ModulePurchase).count() == 1

    def test_subscription_reported_under_different_ids(self, test_user, db_session, catalog):
        reconcile(subscription_created(), db_session, catalog)
        result = reconcile(
            redirect("pi_sub", user_id="user-1", internal_reference="tier2"),
            db_session, catalog, session_user_id="user-1"
        )

        assert result.effect["activated"] is False
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("40000")


@pytest.mark.critical
class TestSubscriptionLifecycle:
    def test_created_grants_plan_credits(self, test_user, db_session, catalog):
        """Matched by buyer email and subscription product id"""
        result = reconcile(subscription_created(), db_session, catalog)

        assert result.applied is True
        assert result.user_id == test_user.id
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("40000")
        assert test_user.subscription_tier == "tier2"

        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        assert subscription.status == "active"
        assert subscription.processor_subscription_id == "sub_1"

    def test_free_trial_subscription(self, test_user, db_session, catalog):
        reconcile(subscription_created(product_id="prod_tier1", is_free_trial=True), db_session, catalog)

        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        assert subscription.status == "trialing"
        assert subscription.tier == "tier1"

    def test_cancellation_keeps_credits(self, test_user, db_session, catalog):
        reconcile(subscription_created(), db_session, catalog)
        result = reconcile(
            webhook({"subscription": {"id": "sub_1", "cancelled_at": "2026-10-20"}, "buyer": {"email": "buyer@example.com"}}),
            db_session, catalog
        )

        assert result.effect == {"subscription_status": "cancelled", "ended": True}
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("40000")
        assert test_user.subscription_tier == "free"
        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        assert subscription.status == "cancelled"
        assert subscription.cancelled_at is not None

    @pytest.mark.parametrize("field, status", [("completed_at", "completed"), ("expired_at", "completed")])
    def test_completion_and_expiry_keep_credits(self, field, status, test_user, db_session, catalog):
        reconcile(subscription_created(), db_session, catalog)
        result = reconcile(
            webhook({"subscription": {"id": "sub_1", field: "2026-11-18"}, "buyer": {"email": "buyer@example.com"}}),
            db_session, catalog
        )

        assert result.applied is True
        assert result.effect == {"subscription_status": status, "ended": True}
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("40000")
        assert test_user.subscription_tier == "free"
        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        db_session.refresh(subscription)
        assert subscription.status == status
        assert subscription.cancelled_at is None

    def test_cancel_for_replaced_subscription_is_ignored(self, test_user, db_session, catalog):
        """Upgrade from sub_A to sub_B, then sub_A's cancellation arrives"""
        reconcile(subscription_created("sub_A", "prod_tier1"), db_session, catalog)
        reconcile(subscription_created("sub_B", "prod_tier2"), db_session, catalog)

        result = reconcile(
            webhook({"subscription": {"id": "sub_A", "cancelled_at": "2026-10-20"}, "buyer": {"email": "buyer@example.com"}}),
            db_session, catalog
        )

        assert result.effect == {"subscription_status": "cancelled", "ended": False}
        db_session.refresh(test_user)
        assert test_user.subscription_tier == "tier2"
        assert test_user.credits == Decimal("50000")
        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        db_session.refresh(subscription)
        assert subscription.processor_subscription_id == "sub_B"
        assert subscription.status == "active"

    def test_upgrade_by_redirect_then_old_cancel(self, test_user, db_session, catalog):
        reconcile(subscription_created("sub_A", "prod_tier1"), db_session, catalog)
        reconcile(
            redirect("pi_up", user_id="user-1", internal_reference="tier2"),
            db_session, catalog, session_user_id="user-1"
        )
        reconcile(subscription_created("sub_B", "prod_tier2"), db_session, catalog)

        result = reconcile(
            webhook({"subscription": {"id": "sub_A", "cancelled_at": "2026-10-20"}, "buyer": {"email": "buyer@example.com"}}),
            db_session, catalog
        )

        assert result.effect["ended"] is False
        db_session.refresh(test_user)
        assert test_user.subscription_tier == "tier2"
        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        db_session.refresh(subscription)
        assert subscription.processor_subscription_id == "sub_B"

    def test_creation_after_its_cancellation_is_not_applied(self, test_user, db_session, catalog):
        """The cancel lands first; the delayed creation must not revive it"""
        reconcile(
            webhook({"subscription": {"id": "sub_1", "cancelled_at": "2026-10-20"}, "buyer": {"email": "buyer@example.com"}}),
            db_session, catalog
        )
        result = reconcile(subscription_created(), db_session, catalog)

        assert result.effect["activated"] is False
        assert result.effect["credits_added"] == "0"
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("0")
        assert test_user.subscription_tier == "free"
        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        db_session.refresh(subscription)
        assert subscription.status == "cancelled"
        assert subscription.processor_subscription_id == "sub_1"

    def test_cancel_after_redirect_activation(self, test_user, db_session, catalog):
        """Redirect activates first without a subscription id; the webhook fills it in"""
        reconcile(
            redirect("pi_sub", user_id="user-1", internal_reference="tier2"),
            db_session, catalog, session_user_id="user-1"
        )
        reconcile(subscription_created(), db_session, catalog)
        subscription = db_session.query(Subscription).filter_by(user_id=test_user.id).one()
        db_session.refresh(subscription)
        assert subscription.processor_subscription_id == "sub_1"

        result = reconcile(
            webhook({"subscription": {"id": "sub_1", "cancelled_at": "2026-10-20"}, "buyer": {"email": "buyer@example.com"}}),
            db_session, catalog
        )

        assert result.effect["ended"] is True
        db_session.refresh(test_user)
        assert test_user.subscription_tier == "free"
        assert test_user.credits == Decimal("40000")

    def test_renewal_adds_credits_per_period(self, test_user, db_session, catalog):
        reconcile(subscription_created(), db_session, catalog)

        def renewal(renewed_at):
            return webhook({
                "subscription": {"id": "sub_1", "renewed_at": renewed_at, "product_id": "prod_tier2"},
                "buyer": {"email": "buyer@example.com"}
            })

        assert reconcile(renewal("2026-11-18"), db_session, catalog).applied is True
        assert reconcile(renewal("2026-11-18"), db_session, catalog).already_processed is True
        assert reconcile(renewal("2026-12-18"), db_session, catalog).applied is True

        db_session.refresh(test_user)
        assert test_user.credits == Decimal("120000")

    def test_created_for_non_subscription_product(self, test_user, db_session, catalog):
        with pytest.raises(ProductNotFound):
            reconcile(subscription_created(product_id="prod_module_x"), db_session, catalog)
        assert db_session.query(PaymentEvent).count() == 0
        assert statuses(db_session) == ["unmapped_product"]


@pytest.mark.high
class TestWebhookProductResolution:
    def test_metadata_reference_preferred_over_item_id(self, test_user, db_session, catalog):
        result = reconcile(webhook({
            "payment_id": "pay_pref", "product_price": 49, "item": {"id": "prod_2500"},
            "metadata": {"user_id": "user-1", "internal_reference": "module-x"}
        }), db_session, catalog)

        assert result.internal_reference == "module-x"
        assert db_session.query(ModulePurchase).filter_by(user_id=test_user.id).count() == 1
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("0")

    def test_unknown_reference_falls_back_to_item_id(self, test_user, db_session, catalog):
        result = reconcile(webhook({
            "payment_id": "pay_fb", "product_price": 25, "item": {"id": "prod_2500"},
            "metadata": {"user_id": "user-1", "internal_reference": "retired_pack"}
        }), db_session, catalog)

        assert result.internal_reference == "2500_credits"
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("2500")


@pytest.mark.critical
class TestUnresolvable:
    """Events that cannot be applied are logged for manual review and never marked applied"""

    def test_user_not_found(self, test_user, db_session, catalog):
        with pytest.raises(UserNotFound):
            reconcile(webhook({
                "payment_id": "pay_x", "product_price": 25, "item": {"id": "prod_2500"},
                "buyer": {"email": "nobody@example.com"}, "metadata": {"user_id": "ghost"}
            }), db_session, catalog)

        assert statuses(db_session) == ["user_not_found"]
        assert db_session.query(PaymentEvent).count() == 0

    def test_metadata_user_missing_falls_back_to_email(self, test_user, db_session, catalog):
        result = reconcile(topup_webhook(user_id="ghost"), db_session, catalog)
        assert result.user_id == test_user.id

    def test_unmapped_product(self, test_user, db_session, catalog):
        event = webhook({"payment_id": "pay_u", "product_price": 5, "item": {"id": "prod_unknown"},
                         "metadata": {"user_id": "user-1"}})
        with pytest.raises(ProductNotFound):
            reconcile(event, db_session, catalog)

        assert statuses(db_session) == ["unmapped_product"]
        assert db_session.query(PaymentEvent).count() == 0

    def test_refund_goes_to_manual_review(self, test_user, db_session, catalog):
        reconcile(topup_webhook(), db_session, catalog)
        result = reconcile(webhook({"payment_id": "pay_topup_1", "refund_amount": 25,
                                    "metadata": {"user_id": "user-1"}}), db_session, catalog)

        assert result.applied is False
        assert result.status == "manual_review"
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("2500")


@pytest.mark.critical
class TestRedirectChannel:
    def test_failed_redirect_status(self, test_user, db_session, catalog):
        event = event_from_redirect({"payment_intent": "pi_1", "redirect_status": "failed",
                                     "metadata[internal_reference]": "2500_credits"})
        with pytest.raises(PaymentNotSucceeded):
            reconcile(event, db_session, catalog, session_user_id="user-1")
        assert db_session.query(PaymentEvent).count() == 0

    def test_missing_redirect_status_is_success(self, test_user, db_session, catalog):
        """The processor only redirects here after payment, so no status means paid"""
        event = event_from_redirect({"payment_intent": "pi_nostatus",
                                     "metadata[user_id]": "user-1",
                                     "metadata[internal_reference]": "2500_credits"})
        assert event.redirect_status is None

        result = reconcile(event, db_session, catalog, session_user_id=test_user.id)

        assert result.applied is True
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("2500")

    def test_requires_session(self, test_user, db_session, catalog):
        with pytest.raises(Unauthorized):
            reconcile(redirect("pi_1", internal_reference="2500_credits"), db_session, catalog)

    def test_metadata_user_must_match_session(self, test_user, test_user_2, db_session, catalog):
        event = redirect("pi_1", user_id=test_user_2.id, internal_reference="2500_credits")
        with pytest.raises(Unauthorized):
            reconcile(event, db_session, catalog, session_user_id=test_user.id)

        db_session.refresh(test_user_2)
        assert test_user_2.credits == Decimal("0")

    def test_unknown_reference(self, test_user, db_session, catalog):
        with pytest.raises(ProductNotFound):
            reconcile(redirect("pi_1", internal_reference="9999_bogus"), db_session, catalog, session_user_id="user-1")
        assert db_session.query(PaymentEvent).count() == 0

    def test_pending_checkout_fallback(self, test_user, db_session, catalog):
        """No product metadata: the latest pending checkout names the product"""
        db_session.add(CheckoutSession(
            user_id=test_user.id, processor_session_id="cs_1", product_class="topup",
            internal_reference="2500_credits", amount_cents=2500, status="pending"
        ))
        db_session.commit()

        result = reconcile(redirect("pi_fallback"), db_session, catalog, session_user_id=test_user.id)

        assert result.applied is True
        assert result.internal_reference == "2500_credits"
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("2500")
        session = db_session.query(CheckoutSession).filter_by(processor_session_id="cs_1").one()
        assert session.status == "completed"

    def test_nothing_to_match(self, test_user, db_session, catalog):
        with pytest.raises(ProductNotFound):
            reconcile(redirect("pi_empty"), db_session, catalog, session_user_id=test_user.id)


@pytest.mark.high
class TestLedgerFailure:
    def test_rolls_back_and_can_retry(self, test_user, db_session, catalog):
        with patch("paygate.services.ledger_service.add_credits", side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(LedgerWriteFailure):
                reconcile(topup_webhook(), db_session, catalog)

        assert db_session.query(PaymentEvent).count() == 0
        assert statuses(db_session) == ["failed"]

        result = reconcile(topup_webhook(), db_session, catalog)
        assert result.applied is True
        db_session.refresh(test_user)
        assert test_user.credits == Decimal("2500")
