"""
Billing audit log model - append-only
"""
from sqlalchemy import Column, Integer, String, DateTime, Index
from datetime import datetime

from ..base import Base, JSONType


class BillingAuditLog(Base):
    """
    Append-only record of billing state changes
    
    Rows are never updated or deleted.
    """
    __tablename__ = "billing_audit_logs"
    
    id = Column(Integer, primary_key=True, index=True)
    billing_account_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    details = Column(JSONType, nullable=True)
    gateway_event_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    
    __table_args__ = (
        Index("idx_billing_audit_account_created", "billing_account_id", "created_at"),
    )
    
    def __repr__(self):
        return f"<BillingAuditLog {self.event_type} account={self.billing_account_id}>"
    
    def to_dict(self):
        return {
            "id": self.id,
            "billing_account_id": self.billing_account_id,
            "event_type": self.event_type,
            "details": self.details or {},
            "gateway_event_id": self.gateway_event_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
