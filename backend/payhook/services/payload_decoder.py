"""Provider payload decoding

One entry point, decode_payload(), detects the body shape (nested envelope or
legacy flat body) and produces a NormalizedEvent carrying the canonical event
identity, the normalized event type and the fields the processor needs.
"""
import hashlib
import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from payhook.core.config import settings
from payhook.core.errors import WebhookValidationError
from payhook.models.raw_event import IdentitySource
from payhook.schemas.webhooks import LegacyPayload, NestedEnvelope, NormalizedEvent
from payhook.utils.time import parse_datetime

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
PAYMENT_PENDING = "PAYMENT_PENDING"
SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
SUBSCRIPTION_LATE = "SUBSCRIPTION_LATE"
SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
REFUND = "REFUND"
CHARGEBACK = "CHARGEBACK"

# Provider event type -> internal event type
EVENT_TYPE_NORMALIZATION = {
    "order_approved": PAYMENT_CONFIRMED,
    "order_paid": PAYMENT_CONFIRMED,
    "order.paid": PAYMENT_CONFIRMED,
    "purchase": PAYMENT_CONFIRMED,
    "waiting_payment": PAYMENT_PENDING,
    "order_waiting_payment": PAYMENT_PENDING,
    "subscription_renewed": SUBSCRIPTION_RENEWED,
    "subscription.renewed": SUBSCRIPTION_RENEWED,
    "subscription_renewal": SUBSCRIPTION_RENEWED,
    "subscription_late": SUBSCRIPTION_LATE,
    "refund": REFUND,
    "order_refunded": REFUND,
    "order.refunded": REFUND,
    "chargeback": CHARGEBACK,
    "order_chargeback": CHARGEBACK,
    "order.chargeback": CHARGEBACK,
    "subscription_canceled": SUBSCRIPTION_CANCELED,
    "subscription.canceled": SUBSCRIPTION_CANCELED,
    "subscription_cancelled": SUBSCRIPTION_CANCELED,
}

# Event types that carry a charge and therefore produce a Payment row
PURCHASE_EVENT_TYPES = (PAYMENT_CONFIRMED, SUBSCRIPTION_RENEWED, PAYMENT_PENDING)

# Payment status implied by an event type
IMPLIED_PAYMENT_STATUS = {
    PAYMENT_CONFIRMED: "paid",
    SUBSCRIPTION_RENEWED: "paid",
    PAYMENT_PENDING: "pending",
    REFUND: "refunded",
    CHARGEBACK: "chargeback",
}


def normalize_event_type(event_type: Optional[str]) -> str:
    if not event_type:
        return "UNKNOWN"
    return EVENT_TYPE_NORMALIZATION.get(event_type, event_type.upper())


def parse_body(raw_body: bytes) -> Dict[str, Any]:
    """Parse the raw request body; anything but a JSON object is rejected"""
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise WebhookValidationError("Invalid payload", "Request body is not valid JSON")
    if not isinstance(body, dict):
        raise WebhookValidationError("Invalid payload", "Request body must be a JSON object")
    return body


def detect_shape(body: Dict[str, Any]) -> Union[NestedEnvelope, LegacyPayload]:
    try:
        if isinstance(body.get("order"), dict):
            return NestedEnvelope.model_validate(body)
        return LegacyPayload.model_validate(body)
    except ValidationError as e:
        raise WebhookValidationError("Invalid payload", f"Unrecognized payload shape: {e.error_count()} errors")


def signed_content(body: Dict[str, Any], raw_body: bytes) -> bytes:
    """The bytes the provider signs: the compact inner order object, else the raw body"""
    order = body.get("order")
    if isinstance(order, dict):
        return json.dumps(order, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return raw_body


def synthesized_identity(raw_body: bytes) -> str:
    return f"unidentified-{hashlib.sha256(raw_body).hexdigest()[:32]}"


def _str(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _cents(value) -> Optional[int]:
    if value in (None, "", 0):
        return None
    try:
        return int(round(float(value) * 100))
    except (TypeError, ValueError):
        return None


def _decode_nested(envelope: NestedEnvelope) -> dict:
    order = envelope.order
    customer = order.get("Customer") or {}
    product = order.get("Product") or {}
    commissions = order.get("Commissions") or {}
    subscription = order.get("Subscription") or {}
    access = subscription.get("customer_access") or {}
    plan = subscription.get("plan") or {}

    amount_cents = _cents(commissions.get("charge_amount"))
    if amount_cents is None:
        amount_cents = _cents(commissions.get("product_base_price"))

    return {
        "explicit_id": None,
        "transaction_id": _str(order.get("order_id")) or _str(order.get("order_ref")),
        "raw_event_type": order.get("webhook_event_type") or order.get("order_status") or "unknown",
        "signature": envelope.signature,
        "customer_id": _str(customer.get("CPF")),
        "customer_email": _str(customer.get("email")),
        "customer_name": _str(customer.get("full_name") or customer.get("first_name")),
        "product_id": _str(product.get("product_id")),
        "product_name": _str(product.get("product_name")),
        "amount_cents": amount_cents,
        "currency": _str(commissions.get("currency")),
        "subscription_id": _str(order.get("subscription_id") or plan.get("id")),
        "subscription_status": _str(subscription.get("status") or order.get("order_status")),
        "plan_frequency": _str(plan.get("frequency")),
        "access_until": parse_datetime(access.get("access_until")),
        "approved_at": parse_datetime(order.get("approved_date")),
    }


def _decode_legacy(payload: LegacyPayload) -> dict:
    amount_cents = int(round(payload.amount_cents)) if payload.amount_cents is not None else None
    if amount_cents is None:
        amount_cents = _cents(payload.amount)
    subscription = payload.subscription

    return {
        "explicit_id": _str(payload.event_id),
        "transaction_id": _str(payload.transaction_id) or _str(payload.order_id),
        "raw_event_type": payload.event_type or payload.type or payload.status or "unknown",
        "signature": payload.signature,
        "customer_id": _str(payload.customer_id),
        "customer_email": _str(payload.customer_email),
        "customer_name": None,
        "product_id": _str(payload.product_id),
        "product_name": _str(payload.product_name),
        "amount_cents": amount_cents,
        "currency": _str(payload.currency),
        "subscription_id": _str(subscription.id) if subscription else None,
        "subscription_status": subscription.status if subscription else None,
        "plan_frequency": None,
        "access_until": parse_datetime(subscription.expires_at) if subscription else None,
        "approved_at": None,
    }


def decode_payload(body: Dict[str, Any], raw_body: Optional[bytes] = None) -> NormalizedEvent:
    """Decode a provider body into a NormalizedEvent

    Identity priority: explicit event id, else the order/transaction id (with the
    normalized type appended for anything but PAYMENT_CONFIRMED, since the provider
    reuses the order id for refunds and cancellations), else a hash of the body.
    """
    shape = detect_shape(body)
    if isinstance(shape, NestedEnvelope):
        fields = _decode_nested(shape)
    else:
        fields = _decode_legacy(shape)

    raw_event_type = str(fields.pop("raw_event_type"))
    event_type = normalize_event_type(raw_event_type)
    explicit_id = fields.pop("explicit_id")
    transaction_id = fields["transaction_id"]

    if explicit_id:
        event_id = explicit_id
        identity_source = IdentitySource.PROVIDER
    elif transaction_id:
        event_id = transaction_id
        if event_type != PAYMENT_CONFIRMED:
            event_id = f"{transaction_id}:{event_type.lower()}"
        identity_source = IdentitySource.TRANSACTION
    else:
        if raw_body is None:
            raw_body = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        event_id = synthesized_identity(raw_body)
        identity_source = IdentitySource.SYNTHESIZED
        logger.warning(f"Webhook payload carries no event or transaction id, using {event_id}")

    if not fields["currency"]:
        fields["currency"] = settings.DEFAULT_CURRENCY

    return NormalizedEvent(
        event_id=event_id,
        identity_source=identity_source,
        event_type=event_type,
        raw_event_type=raw_event_type,
        **fields
    )
