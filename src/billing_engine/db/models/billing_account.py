"""
Billing account model - one mutable billing record per tenant
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base


class TenantType(str, enum.Enum):
    """Billable entity type"""
    PERSONAL = "PERSONAL"
    ORG = "ORG"


class BillingStatus(str, enum.Enum):
    """Billing account status"""
    ACTIVE = "ACTIVE"
    DUE = "DUE"
    SUSPENDED = "SUSPENDED"


class MandateStatus(str, enum.Enum):
    """Authorization state of the auto-debit payment method"""
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class BillingAccount(Base):
    """
    Billing account for a tenant (user or organization)
    
    Holds the billing status, the current cycle bounds, the grace period and the
    cycle lock. The gateway references are opaque to the engine.
    """
    __tablename__ = "billing_accounts"
    
    id = Column(Integer, primary_key=True, index=True)
    
    # Tenant identity
    tenant_type = Column(String(20), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    billing_email = Column(String(255), nullable=True)
    currency = Column(String(3), nullable=False, default="INR")
    
    # Status
    status = Column(String(20), nullable=False, default=BillingStatus.ACTIVE.value, index=True)
    grace_period_end = Column(DateTime, nullable=True, index=True)  # Set only while DUE
    
    # Current cycle [start, end]; end is the final instant of the period
    billing_cycle_start = Column(DateTime, nullable=False)
    billing_cycle_end = Column(DateTime, nullable=False, index=True)
    
    # Cycle lock (compare-and-set)
    is_cycle_locked = Column(Boolean, nullable=False, default=False)
    cycle_locked_at = Column(DateTime, nullable=True)
    cycle_lock_token = Column(String(64), nullable=True)
    
    # Audit timestamps (not used for control flow)
    last_payment_at = Column(DateTime, nullable=True)
    last_payment_failed_at = Column(DateTime, nullable=True)
    
    # Gateway references
    gateway_customer_id = Column(String(100), nullable=True, index=True)
    gateway_subscription_id = Column(String(100), nullable=True)
    mandate_id = Column(String(100), nullable=True)
    mandate_status = Column(String(20), nullable=True)
    payment_method_type = Column(String(50), nullable=True)
    payment_method_brand = Column(String(50), nullable=True)
    payment_method_last4 = Column(String(4), nullable=True)
    
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    # Relationships
    invoices = relationship("Invoice", back_populates="billing_account", lazy="dynamic")
    wallet = relationship("Wallet", back_populates="billing_account", uselist=False)
    
    __table_args__ = (
        UniqueConstraint("tenant_type", "tenant_id", name="uq_billing_accounts_tenant"),
        Index("idx_billing_accounts_status_grace", "status", "grace_period_end"),
    )
    
    @property
    def has_active_mandate(self) -> bool:
        return bool(self.mandate_id) and self.mandate_status == MandateStatus.AUTHORIZED.value
    
    def __repr__(self):
        return f"<BillingAccount {self.id} {self.tenant_type}:{self.tenant_id} status={self.status}>"
    
    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "tenant_type": self.tenant_type,
            "tenant_id": self.tenant_id,
            "status": self.status,
            "currency": self.currency,
            "billing_cycle_start": self.billing_cycle_start.isoformat() if self.billing_cycle_start else None,
            "billing_cycle_end": self.billing_cycle_end.isoformat() if self.billing_cycle_end else None,
            "grace_period_end": self.grace_period_end.isoformat() if self.grace_period_end else None,
            "is_cycle_locked": self.is_cycle_locked,
            "last_payment_at": self.last_payment_at.isoformat() if self.last_payment_at else None,
            "last_payment_failed_at": self.last_payment_failed_at.isoformat() if self.last_payment_failed_at else None,
            "mandate_status": self.mandate_status,
            "payment_method_type": self.payment_method_type,
            "payment_method_last4": self.payment_method_last4,
        }
