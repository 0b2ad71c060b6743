"""RawEvent model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text

from payhook.models.base import Base


class ProcessingStatus:
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class IdentitySource:
    PROVIDER = "provider"        # explicit event id sent by the provider
    TRANSACTION = "transaction"  # derived from the order/transaction id
    SYNTHESIZED = "synthesized"  # hash of the body, no id in the payload


class RawEvent(Base):
    """Provider webhook event log, unique per provider event identity"""
    __tablename__ = "raw_events"

    id = Column(Integer, primary_key=True, index=True)
    provider_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)  # normalized, e.g. 'PAYMENT_CONFIRMED'
    raw_event_type = Column(String(100), nullable=True)  # as sent, e.g. 'order_approved'
    transaction_id = Column(String(255), nullable=True, index=True)
    identity_source = Column(String(20), nullable=False, default=IdentitySource.PROVIDER)
    payload = Column(JSON, nullable=False)
    headers = Column(JSON, nullable=True)
    signature = Column(String(255), nullable=True)
    processing_status = Column(String(20), nullable=False, default=ProcessingStatus.PENDING, index=True)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_raw_events_status_received', 'processing_status', 'received_at'),
    )

    def to_dict(self, include_payload: bool = False) -> dict:
        data = {
            "id": self.id,
            "event_id": self.provider_event_id,
            "event_type": self.event_type,
            "raw_event_type": self.raw_event_type,
            "transaction_id": self.transaction_id,
            "identity_source": self.identity_source,
            "processing_status": self.processing_status,
            "error": self.error,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
        if include_payload:
            data["payload"] = self.payload
        return data
