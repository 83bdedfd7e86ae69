"""
Invoice model - one invoice per (billing account, cycle)
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from decimal import Decimal
import enum

from ..base import Base, JSONType


class InvoiceStatus(str, enum.Enum):
    """Invoice status enum"""
    DRAFT = "DRAFT"
    DUE = "DUE"
    PAID = "PAID"
    FAILED = "FAILED"


class Invoice(Base):
    """
    Invoice for a closed billing cycle
    
    The usage breakdown is a frozen snapshot taken at generation time. Only the
    status and payment fields change after creation.
    """
    __tablename__ = "billing_invoices"
    
    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(50), unique=True, nullable=False, index=True)  # INV-202601-7K2Q9D
    
    billing_account_id = Column(Integer, ForeignKey("billing_accounts.id"), nullable=False, index=True)
    cycle_start = Column(DateTime, nullable=False)
    cycle_end = Column(DateTime, nullable=False)
    
    # Frozen usage snapshot
    usage_breakdown = Column(JSONType, nullable=False)
    
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    status = Column(String(20), default=InvoiceStatus.DRAFT.value, nullable=False, index=True)
    
    due_date = Column(DateTime, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    
    # Settlement references
    wallet_transaction_id = Column(String(100), nullable=True)
    gateway_payment_id = Column(String(100), nullable=True, index=True)
    gateway_order_id = Column(String(100), nullable=True, index=True)
    # Set before a mandate debit is sent; cleared only by a confirmed decline
    gateway_debit_submitted_at = Column(DateTime, nullable=True)
    
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    billing_account = relationship("BillingAccount", back_populates="invoices")
    
    __table_args__ = (
        UniqueConstraint("billing_account_id", "cycle_start", "cycle_end", name="uq_billing_invoices_account_cycle"),
        Index("idx_billing_invoices_account_status", "billing_account_id", "status"),
    )
    
    @property
    def settlement_reference(self):
        return self.wallet_transaction_id or self.gateway_payment_id
    
    def __repr__(self):
        return f"<Invoice {self.invoice_number} account={self.billing_account_id} status={self.status}>"
    
    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "invoice_id": self.invoice_number,
            "billing_account_id": self.billing_account_id,
            "cycle_start": self.cycle_start.isoformat() if self.cycle_start else None,
            "cycle_end": self.cycle_end.isoformat() if self.cycle_end else None,
            "usage_breakdown": self.usage_breakdown,
            "amount": str(Decimal(self.amount)) if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "retry_count": self.retry_count,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "settlement_reference": self.settlement_reference,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
