"""
Billing Audit Log Service
Append-only record of every billing state transition
"""
import logging
from typing import Optional, Dict, Any
from datetime import datetime
from sqlalchemy.orm import Session

from ..db.models.audit_log import BillingAuditLog

logger = logging.getLogger(__name__)


class BillingAuditEvent:
    """Billing audit event types (enum-like constants)"""
    # Account lifecycle
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    ACCOUNT_DUE = "ACCOUNT_DUE"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCOUNT_RESTORED = "ACCOUNT_RESTORED"
    
    # Cycle & invoices
    CYCLE_ADVANCED = "CYCLE_ADVANCED"
    CYCLE_LOCK_RECLAIMED = "CYCLE_LOCK_RECLAIMED"
    INVOICE_GENERATED = "INVOICE_GENERATED"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_FAILED = "INVOICE_FAILED"
    
    # Payments
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_AUTHORIZED = "PAYMENT_AUTHORIZED"
    PAYMENT_RETRY_SCHEDULED = "PAYMENT_RETRY_SCHEDULED"
    WALLET_DEDUCTION = "WALLET_DEDUCTION"
    WALLET_TOPUP = "WALLET_TOPUP"
    
    # Gateway
    SUBSCRIPTION_CHARGED = "SUBSCRIPTION_CHARGED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    REFUND_FAILED = "REFUND_FAILED"
    PAYMENT_METHOD_ADDED = "PAYMENT_METHOD_ADDED"
    PAYMENT_METHOD_REMOVED = "PAYMENT_METHOD_REMOVED"
    
    # Notifications
    REMINDER_SENT = "REMINDER_SENT"


class AuditLogService:
    """
    Service for writing billing audit entries
    
    Entries are append-only: this service has no update or delete path. Other
    billing services only write here; history is reconstructed by readers
    outside the engine.
    """
    
    def __init__(self, db: Session):
        self.db = db
    
    def log(
        self,
        event_type: str,
        billing_account_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        gateway_event_id: Optional[str] = None,
        commit: bool = True
    ) -> BillingAuditLog:
        """
        Create an audit log entry
        
        Args:
            event_type: Event type (use BillingAuditEvent constants)
            billing_account_id: Billing account affected
            details: Additional context (old/new state, reason, references)
            gateway_event_id: Gateway webhook event id, when driven by a webhook
            commit: Commit immediately; pass False to write inside the caller's transaction
        
        Returns:
            Created BillingAuditLog instance
        """
        entry = BillingAuditLog(
            billing_account_id=billing_account_id,
            event_type=event_type,
            details=details or {},
            gateway_event_id=gateway_event_id,
            created_at=datetime.utcnow()
        )
        
        self.db.add(entry)
        if not commit:
            return entry
        
        try:
            self.db.commit()
            self.db.refresh(entry)
            logger.debug(f"Audit log created: {event_type} for account {billing_account_id}")
            return entry
        except Exception as e:
            logger.error(f"Failed to create audit log: {e}", exc_info=True)
            self.db.rollback()
            raise

