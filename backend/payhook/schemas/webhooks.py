"""Pydantic schemas for provider webhook payloads

The provider posts one of two body shapes:
- nested envelope: {"signature": "...", "order": {...}} (current)
- legacy flat body: {"event_id": "...", "event_type": "...", ...}

decode_payload() in payhook.services.payload_decoder turns either into a NormalizedEvent.
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict


class NestedEnvelope(BaseModel):
    """{"signature": ..., "order": {...}} body"""
    model_config = ConfigDict(extra="allow")

    shape: Literal["nested"] = "nested"
    signature: Optional[str] = None
    order: Dict[str, Any]


class LegacySubscription(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[str, int]] = None
    status: Optional[str] = None
    expires_at: Optional[str] = None


class LegacyPayload(BaseModel):
    """Flat body used by older provider integrations"""
    model_config = ConfigDict(extra="allow")

    shape: Literal["legacy"] = "legacy"
    event_id: Optional[Union[str, int]] = None
    event_type: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    transaction_id: Optional[Union[str, int]] = None
    order_id: Optional[Union[str, int]] = None
    customer_id: Optional[Union[str, int]] = None
    customer_email: Optional[str] = None
    product_id: Optional[Union[str, int]] = None
    product_name: Optional[str] = None
    amount_cents: Optional[float] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    signature: Optional[str] = None
    subscription: Optional[LegacySubscription] = None


WebhookPayload = Union[NestedEnvelope, LegacyPayload]


class NormalizedEvent(BaseModel):
    """Provider-agnostic view of one webhook delivery"""
    event_id: str
    identity_source: str
    event_type: str
    raw_event_type: str
    transaction_id: Optional[str] = None
    signature: Optional[str] = None

    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None

    product_id: Optional[str] = None
    product_name: Optional[str] = None

    amount_cents: Optional[int] = None
    currency: Optional[str] = None

    subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    plan_frequency: Optional[str] = None
    access_until: Optional[datetime] = None
    approved_at: Optional[datetime] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    eventId: Optional[str] = None
