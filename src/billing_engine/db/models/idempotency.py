"""
Idempotency record model - durable (key, scope) -> outcome mapping
"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from datetime import datetime

from ..base import Base, JSONType


class IdempotencyScope:
    """Idempotency scopes (enum-like constants)"""
    INVOICE_GENERATION = "invoice_generation"
    WALLET_DEDUCTION = "wallet_deduction"
    WEBHOOK = "webhook"
    REMINDER = "reminder"


class IdempotencyRecord(Base):
    """Marks a side-effecting operation instance as done"""
    __tablename__ = "billing_idempotency_records"
    
    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(255), nullable=False)
    scope = Column(String(50), nullable=False)
    result = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    
    __table_args__ = (
        UniqueConstraint("key", "scope", name="uq_billing_idempotency_key_scope"),
    )
    
    def __repr__(self):
        return f"<IdempotencyRecord {self.scope}:{self.key}>"
