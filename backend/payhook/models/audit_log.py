"""AuditLog model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String

from payhook.models.base import Base


class AuditLog(Base):
    """Append-only record of state-changing actions"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor = Column(String(255), nullable=True)  # 'user:<id>', 'admin:<id>', 'system', 'job:<name>'
    action = Column(String(60), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(255), nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    audit_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    __table_args__ = (
        Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "metadata": self.audit_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
