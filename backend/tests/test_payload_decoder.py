"""Payload decoding tests (shape detection, identity, event type normalization)"""
import hashlib
import json

import pytest

from payhook.core.errors import WebhookValidationError
from payhook.models.raw_event import IdentitySource
from payhook.services.payload_decoder import (
    decode_payload,
    normalize_event_type,
    parse_body,
    signed_content,
)


@pytest.mark.critical
class TestEventIdentity:
    """Canonical event identity derivation"""

    def test_purchase_identity_is_order_id(self, make_order):
        event = decode_payload({"signature": "x", "order": make_order(order_id="ord_42")})
        assert event.event_id == "ord_42"
        assert event.transaction_id == "ord_42"
        assert event.identity_source == IdentitySource.TRANSACTION
        assert event.event_type == "PAYMENT_CONFIRMED"

    def test_follow_up_events_on_same_order_stay_distinct(self, make_order):
        purchase = decode_payload({"order": make_order(order_id="ord_42")})
        refund = decode_payload({"order": make_order(order_id="ord_42", event_type="order_refunded")})
        chargeback = decode_payload({"order": make_order(order_id="ord_42", event_type="chargeback")})

        assert refund.event_id == "ord_42:refund"
        assert chargeback.event_id == "ord_42:chargeback"
        assert refund.transaction_id == purchase.transaction_id == "ord_42"
        assert len({purchase.event_id, refund.event_id, chargeback.event_id}) == 3

    def test_order_ref_used_when_order_id_missing(self, make_order):
        order = make_order()
        del order["order_id"]
        event = decode_payload({"order": order})
        assert event.event_id == "ref_ord_1"

    def test_legacy_explicit_event_id_wins(self):
        event = decode_payload({
            "event_id": "evt_1",
            "event_type": "order_paid",
            "transaction_id": "tx_1",
            "customer_email": "a@example.com",
        })
        assert event.event_id == "evt_1"
        assert event.identity_source == IdentitySource.PROVIDER
        assert event.transaction_id == "tx_1"

    def test_legacy_falls_back_to_order_id(self):
        event = decode_payload({"order_id": 991, "event_type": "purchase"})
        assert event.event_id == "991"
        assert event.transaction_id == "991"

    def test_synthesized_identity_is_deterministic(self):
        raw = b'{"event_type": "purchase", "customer_email": "a@example.com"}'
        body = json.loads(raw)

        first = decode_payload(body, raw)
        second = decode_payload(body, raw)

        expected = "unidentified-" + hashlib.sha256(raw).hexdigest()[:32]
        assert first.event_id == second.event_id == expected
        assert first.identity_source == IdentitySource.SYNTHESIZED
        assert first.transaction_id is None


@pytest.mark.high
class TestEventTypeNormalization:
    @pytest.mark.parametrize("raw,expected", [
        ("order_approved", "PAYMENT_CONFIRMED"),
        ("order.paid", "PAYMENT_CONFIRMED"),
        ("waiting_payment", "PAYMENT_PENDING"),
        ("subscription_renewal", "SUBSCRIPTION_RENEWED"),
        ("subscription_late", "SUBSCRIPTION_LATE"),
        ("order.refunded", "REFUND"),
        ("order_chargeback", "CHARGEBACK"),
        ("subscription_cancelled", "SUBSCRIPTION_CANCELED"),
        ("something_new", "SOMETHING_NEW"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_event_type(raw) == expected

    def test_order_status_used_without_webhook_event_type(self, make_order):
        order = make_order()
        del order["webhook_event_type"]
        event = decode_payload({"order": order})
        assert event.raw_event_type == "paid"
        assert event.event_type == "PAID"

    def test_missing_type_defaults_to_unknown(self):
        event = decode_payload({"event_id": "evt_9"})
        assert event.raw_event_type == "unknown"
        assert event.event_type == "UNKNOWN"


@pytest.mark.high
class TestFieldExtraction:
    def test_nested_fields(self, make_order):
        order = make_order(charge_amount=49.9, access_until="2026-12-01T00:00:00Z", frequency="monthly")
        event = decode_payload({"order": order})

        assert event.customer_id == "12345678900"
        assert event.customer_email == "buyer@example.com"
        assert event.customer_name == "Test Buyer"
        assert event.product_id == "P1"
        assert event.product_name == "Plano Basic"
        assert event.amount_cents == 4990
        assert event.currency == "BRL"
        assert event.plan_frequency == "monthly"
        assert event.access_until.year == 2026 and event.access_until.month == 12
        assert event.approved_at is not None

    def test_base_price_used_without_charge_amount(self, make_order):
        order = make_order()
        order["Commissions"] = {"product_base_price": 19.9}
        event = decode_payload({"order": order})
        assert event.amount_cents == 1990

    def test_legacy_amount_in_units(self):
        event = decode_payload({
            "event_id": "evt_2",
            "event_type": "purchase",
            "amount": 12.5,
            "subscription": {"id": "sub_1", "status": "active", "expires_at": "2026-11-30T00:00:00"},
        })
        assert event.amount_cents == 1250
        assert event.subscription_id == "sub_1"
        assert event.access_until is not None
        assert event.currency == "BRL"

    def test_legacy_amount_cents_wins(self):
        event = decode_payload({"event_id": "evt_3", "amount_cents": 500, "amount": 99})
        assert event.amount_cents == 500


@pytest.mark.high
class TestBodyParsing:
    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'"text"', b"\xff\xfe"])
    def test_non_object_bodies_rejected(self, raw):
        with pytest.raises(WebhookValidationError) as exc:
            parse_body(raw)
        assert exc.value.error == "Invalid payload"

    def test_signed_content_nested_is_compact_order(self, make_order):
        order = make_order()
        body = {"signature": "abc", "order": order}
        assert signed_content(body, b"ignored") == json.dumps(order, separators=(",", ":")).encode()

    def test_signed_content_legacy_is_raw_body(self):
        raw = b'{"event_id": "e1"}'
        assert signed_content(json.loads(raw), raw) == raw
