"""Event processor tests (mapping, idempotency, failure handling)"""
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from payhook.models.audit_log import AuditLog
from payhook.models.entitlement import EntitlementStatus, EntitlementType, UserEntitlement
from payhook.models.payment import Payment
from payhook.models.product_mapping import ProductKind, ProductMapping
from payhook.models.raw_event import ProcessingStatus
from payhook.models.subscription import Subscription, SubscriptionStatus
from payhook.models.user import User
from payhook.services import event_processor, event_store
from payhook.services.event_processor import NOT_FOUND, process_event, process_pending_events
from payhook.services.payload_decoder import decode_payload
from payhook.utils.time import as_utc, utcnow


def store(db, order):
    body = {"order": order}
    event, _ = event_store.persist_event(db, decode_payload(body), body)
    return event.provider_event_id


def audit_count(db, action):
    return db.query(AuditLog).filter(AuditLog.action == action).count()


@pytest.mark.critical
class TestSubscriptionPurchase:
    def test_end_to_end_mapping(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order(product_id="P1"))

        assert process_event(db_session, event_id) == ProcessingStatus.PROCESSED

        sub = db_session.query(Subscription).filter(Subscription.user_id == test_user.id).one()
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.plan_id == "plan-basic"
        assert sub.external_customer_id == "12345678900"
        assert sub.last_transaction_id == event_id

        payments = db_session.query(Payment).all()
        assert len(payments) == 1
        assert payments[0].transaction_id == event_id
        assert payments[0].status == "paid"
        assert Decimal(payments[0].amount) == Decimal("97.00")

        event = event_store.get_event(db_session, event_id)
        assert event.processing_status == ProcessingStatus.PROCESSED
        assert event.processed_at is not None
        assert audit_count(db_session, "WEBHOOK_PROCESSED") == 1

    def test_processing_twice_is_idempotent(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order())

        process_event(db_session, event_id)
        process_event(db_session, event_id)
        process_event(db_session, event_id, force=True)

        assert db_session.query(Payment).count() == 1
        assert db_session.query(Subscription).count() == 1
        assert audit_count(db_session, "PAYMENT_CREATED") == 1
        assert audit_count(db_session, "PAYMENT_UPDATED") == 0
        assert audit_count(db_session, "SUBSCRIPTION_ACTIVATED") == 1
        assert audit_count(db_session, "WEBHOOK_PROCESSED") == 1

    def test_access_until_sets_expiry(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order(access_until="2027-01-15T00:00:00Z"))
        process_event(db_session, event_id)

        sub = db_session.query(Subscription).one()
        assert as_utc(sub.expires_at).date().isoformat() == "2027-01-15"

    def test_yearly_plan_gets_a_year(self, db_session, test_user, subscription_mapping, make_order):
        order = make_order(frequency="yearly")
        order["Subscription"]["customer_access"]["access_until"] = None
        event_id = store(db_session, order)
        process_event(db_session, event_id)

        sub = db_session.query(Subscription).one()
        assert as_utc(sub.expires_at) > utcnow() + timedelta(days=360)

    def test_mapping_resolved_by_product_name(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order(product_id="UNKNOWN_ID", product_name="plano basic"))
        assert process_event(db_session, event_id) == ProcessingStatus.PROCESSED
        assert db_session.query(Subscription).one().plan_id == "plan-basic"

    def test_processing_runs_inside_event_span(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order())
        spans = []

        @contextmanager
        def recording_span(event):
            spans.append((event.provider_event_id, event.event_type))
            yield

        with patch.object(event_processor, "event_span", recording_span):
            process_event(db_session, event_id)
            process_event(db_session, event_id)

        # The skipped second call opens no span
        assert spans == [(event_id, "PAYMENT_CONFIRMED")]


@pytest.mark.critical
class TestEntitlementPurchases:
    def test_addon_grants_quantity_slots(self, db_session, test_user, addon_mapping, make_order):
        event_id = store(db_session, make_order(order_id="ord_addon", product_id="ADDON1"))
        process_event(db_session, event_id)

        slots = db_session.query(UserEntitlement).filter(
            UserEntitlement.entitlement_type == EntitlementType.MARKETPLACE_SLOT
        ).all()
        assert len(slots) == 2
        assert all(s.source_event_id == event_id for s in slots)
        assert db_session.query(Subscription).count() == 0

    def test_promo_pack_grants_tokens(self, db_session, test_user, promo_mapping, make_order):
        event_id = store(db_session, make_order(order_id="ord_promo", product_id="PROMO50"))
        process_event(db_session, event_id)

        entitlement = db_session.query(UserEntitlement).one()
        assert entitlement.entitlement_type == EntitlementType.PROMO_TOKENS
        assert entitlement.quantity == 50
        assert entitlement.bot_type == "ARTS"
        assert entitlement.expires_at is not None

    def test_forced_reprocess_does_not_double_grant(self, db_session, test_user, addon_mapping, make_order):
        event_id = store(db_session, make_order(order_id="ord_addon", product_id="ADDON1"))
        process_event(db_session, event_id)
        process_event(db_session, event_id, force=True)

        assert db_session.query(UserEntitlement).count() == 2
        assert audit_count(db_session, "ENTITLEMENT_CREATED") == 2


@pytest.mark.critical
class TestFailures:
    def test_unmapped_product_fails(self, db_session, test_user, make_order):
        event_id = store(db_session, make_order(product_id="NOPE", product_name="Nope"))

        assert process_event(db_session, event_id) == ProcessingStatus.FAILED

        event = event_store.get_event(db_session, event_id)
        assert event.processing_status == ProcessingStatus.FAILED
        assert "No product mapping" in event.error
        assert db_session.query(Payment).count() == 0
        assert audit_count(db_session, "WEBHOOK_FAILED") == 1

    def test_unknown_user_fails(self, db_session, subscription_mapping, make_order):
        event_id = store(db_session, make_order(email="stranger@example.com", cpf="000"))

        assert process_event(db_session, event_id) == ProcessingStatus.FAILED
        assert "No user found" in event_store.get_event(db_session, event_id).error

    def test_failed_event_not_retried_without_reprocess(self, db_session, test_user, make_order):
        event_id = store(db_session, make_order(product_id="NOPE", product_name="Nope"))
        process_event(db_session, event_id)

        with patch("payhook.services.event_processor._apply") as apply:
            assert process_event(db_session, event_id) == ProcessingStatus.FAILED
        apply.assert_not_called()

    def test_mutation_error_rolls_back_everything(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order())

        with patch(
            "payhook.services.subscription_service.activate_subscription",
            side_effect=RuntimeError("database went away")
        ):
            assert process_event(db_session, event_id) == ProcessingStatus.FAILED

        assert db_session.query(Payment).count() == 0
        assert audit_count(db_session, "PAYMENT_CREATED") == 0
        event = event_store.get_event(db_session, event_id)
        assert event.processing_status == ProcessingStatus.FAILED
        assert event.error == "database went away"

    def test_processed_event_never_regresses(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order())
        process_event(db_session, event_id)

        with patch(
            "payhook.services.subscription_service.activate_subscription",
            side_effect=RuntimeError("boom")
        ):
            assert process_event(db_session, event_id, force=True) == ProcessingStatus.FAILED

        event = event_store.get_event(db_session, event_id)
        assert event.processing_status == ProcessingStatus.PROCESSED
        assert event.error == "boom"
        assert db_session.query(Payment).count() == 1

    def test_missing_event(self, db_session):
        assert process_event(db_session, "does-not-exist") == NOT_FOUND


@pytest.mark.high
class TestUserCorrelation:
    def test_external_customer_id_wins_over_email(self, db_session, subscription_mapping, make_order):
        owner = User(email="owner@example.com", admin_permissions=[])
        db_session.add(owner)
        db_session.commit()
        db_session.add(Subscription(
            user_id=owner.id, plan_id="plan-basic", status=SubscriptionStatus.EXPIRED,
            external_customer_id="CPF-1"
        ))
        db_session.commit()

        event_id = store(db_session, make_order(email="different@example.com", cpf="CPF-1"))
        assert process_event(db_session, event_id) == ProcessingStatus.PROCESSED

        payment = db_session.query(Payment).one()
        assert payment.user_id == owner.id
        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE

    def test_email_match_is_case_insensitive(self, db_session, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order(email="BUYER@Example.com"))
        assert process_event(db_session, event_id) == ProcessingStatus.PROCESSED
        assert db_session.query(Payment).one().user_id == test_user.id


@pytest.mark.high
class TestLifecycleEvents:
    def test_pending_then_confirmed(self, db_session, test_user, subscription_mapping, make_order):
        pending_id = store(db_session, make_order(event_type="waiting_payment"))
        assert pending_id == "ord_1:payment_pending"
        process_event(db_session, pending_id)

        payment = db_session.query(Payment).one()
        assert payment.status == "pending"
        assert payment.transaction_id == "ord_1"
        assert db_session.query(Subscription).one().status == SubscriptionStatus.PENDING_CONFIRMATION

        confirmed_id = store(db_session, make_order())
        process_event(db_session, confirmed_id)

        db_session.refresh(payment)
        assert payment.status == "paid"
        assert db_session.query(Payment).count() == 1
        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE
        assert audit_count(db_session, "PAYMENT_UPDATED") == 1

    def test_late_pending_does_not_downgrade_paid(self, db_session, test_user, subscription_mapping, make_order):
        process_event(db_session, store(db_session, make_order()))
        process_event(db_session, store(db_session, make_order(event_type="waiting_payment")))

        assert db_session.query(Payment).one().status == "paid"

    def test_renewal_extends_expiry(self, db_session, test_user, subscription_mapping, make_order):
        process_event(db_session, store(db_session, make_order(order_id="ord_1")))
        first_expiry = as_utc(db_session.query(Subscription).one().expires_at)

        renewal_id = store(db_session, make_order(order_id="ord_2", event_type="subscription_renewed"))
        assert process_event(db_session, renewal_id) == ProcessingStatus.PROCESSED

        sub = db_session.query(Subscription).one()
        assert as_utc(sub.expires_at) > first_expiry
        assert sub.last_transaction_id == "ord_2"
        assert db_session.query(Payment).count() == 2
        assert audit_count(db_session, "SUBSCRIPTION_RENEWED") == 1

    def test_renewal_without_subscription_creates_it(self, db_session, test_user, subscription_mapping, make_order):
        renewal_id = store(db_session, make_order(order_id="ord_9", event_type="subscription_renewed"))
        assert process_event(db_session, renewal_id) == ProcessingStatus.PROCESSED
        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE

    def test_late_and_canceled(self, db_session, test_user, subscription_mapping, make_order):
        process_event(db_session, store(db_session, make_order()))

        process_event(db_session, store(db_session, make_order(event_type="subscription_late")))
        assert db_session.query(Subscription).one().status == SubscriptionStatus.PAST_DUE

        process_event(db_session, store(db_session, make_order(event_type="subscription_canceled")))
        assert db_session.query(Subscription).one().status == SubscriptionStatus.CANCELED

    def test_refund_revokes_transaction_entitlements(self, db_session, test_user, addon_mapping, make_order):
        process_event(db_session, store(db_session, make_order(order_id="ord_a", product_id="ADDON1")))
        process_event(db_session, store(db_session, make_order(order_id="ord_b", product_id="ADDON1")))

        refund_id = store(db_session, make_order(order_id="ord_a", product_id="ADDON1", event_type="order_refunded"))
        assert process_event(db_session, refund_id) == ProcessingStatus.PROCESSED

        payment = db_session.query(Payment).filter(Payment.transaction_id == "ord_a").one()
        assert payment.status == "refunded"
        revoked = db_session.query(UserEntitlement).filter(UserEntitlement.status == EntitlementStatus.REVOKED).all()
        assert {e.source_transaction_id for e in revoked} == {"ord_a"}
        assert len(revoked) == 2
        assert db_session.query(UserEntitlement).filter(UserEntitlement.status == EntitlementStatus.ACTIVE).count() == 2
        assert audit_count(db_session, "PAYMENT_REFUNDED") == 1

    def test_chargeback_on_subscription(self, db_session, test_user, subscription_mapping, addon_mapping, make_order):
        process_event(db_session, store(db_session, make_order(order_id="ord_sub")))
        process_event(db_session, store(db_session, make_order(order_id="ord_addon", product_id="ADDON1")))

        chargeback_id = store(db_session, make_order(order_id="ord_sub", event_type="chargeback"))
        assert process_event(db_session, chargeback_id) == ProcessingStatus.PROCESSED

        assert db_session.query(Subscription).one().status == SubscriptionStatus.CHARGEBACK
        assert db_session.query(Payment).filter(Payment.transaction_id == "ord_sub").one().status == "chargeback"
        assert db_session.query(UserEntitlement).filter(UserEntitlement.status == EntitlementStatus.ACTIVE).count() == 0

    def test_refund_before_purchase_blocks_the_grant(self, db_session, test_user, subscription_mapping, make_order):
        refund_id = store(db_session, make_order(order_id="ord_o", event_type="order_refunded"))
        assert process_event(db_session, refund_id) == ProcessingStatus.PROCESSED

        payment = db_session.query(Payment).one()
        assert payment.transaction_id == "ord_o"
        assert payment.status == "refunded"
        assert audit_count(db_session, "PAYMENT_REFUNDED") == 1

        purchase_id = store(db_session, make_order(order_id="ord_o"))
        assert process_event(db_session, purchase_id) == ProcessingStatus.PROCESSED

        assert db_session.query(Payment).one().status == "refunded"
        assert db_session.query(Subscription).count() == 0
        assert audit_count(db_session, "SUBSCRIPTION_ACTIVATED") == 0

    def test_chargeback_before_addon_purchase_grants_nothing(self, db_session, test_user, addon_mapping, make_order):
        chargeback_id = store(db_session, make_order(order_id="ord_cb", product_id="ADDON1", event_type="chargeback"))
        process_event(db_session, chargeback_id)

        process_event(db_session, store(db_session, make_order(order_id="ord_cb", product_id="ADDON1")))

        assert db_session.query(Payment).one().status == "chargeback"
        assert db_session.query(UserEntitlement).count() == 0

    def test_unknown_type_processed_without_effect(self, db_session, test_user, make_order):
        event_id = store(db_session, make_order(event_type="abandoned_cart"))
        assert process_event(db_session, event_id) == ProcessingStatus.PROCESSED
        assert db_session.query(Payment).count() == 0


@pytest.mark.high
class TestSweep:
    def test_process_pending_events(self, db_session, test_user, subscription_mapping, make_order):
        store(db_session, make_order(order_id="ord_1"))
        store(db_session, make_order(order_id="ord_2"))
        store(db_session, make_order(order_id="ord_3", product_id="NOPE", product_name="Nope"))

        results = process_pending_events(db_session, limit=10)

        assert results == {"total": 3, "processed": 2, "failed": 1}
        assert process_pending_events(db_session, limit=10)["total"] == 0
