"""
Billing account service

Account setup and the billing status state machine:

    ACTIVE    -> DUE        settlement failed (sets grace period)
    DUE       -> ACTIVE     payment succeeded (clears grace period)
    DUE       -> SUSPENDED  grace period expired
    SUSPENDED -> ACTIVE     payment succeeded

Every applied transition appends exactly one audit entry in the same commit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import config
from ..db.models.billing_account import BillingAccount, BillingStatus, TenantType
from ..db.models.wallet import Wallet
from ..exceptions import BillingAccountNotFound, InvalidStatusTransition
from .audit_log_service import AuditLogService, BillingAuditEvent
from .billing_period import current_cycle_bounds

logger = logging.getLogger(__name__)


VALID_STATUS_TRANSITIONS = {
    BillingStatus.ACTIVE.value: [BillingStatus.DUE.value],
    BillingStatus.DUE.value: [BillingStatus.ACTIVE.value, BillingStatus.SUSPENDED.value],
    BillingStatus.SUSPENDED.value: [BillingStatus.ACTIVE.value],
}

TRANSITION_AUDIT_EVENTS = {
    BillingStatus.DUE.value: BillingAuditEvent.ACCOUNT_DUE,
    BillingStatus.SUSPENDED.value: BillingAuditEvent.ACCOUNT_SUSPENDED,
    BillingStatus.ACTIVE.value: BillingAuditEvent.ACCOUNT_RESTORED,
}

GRACE_PERIOD_EXPIRED_REASON = "Grace period expired"


def assert_valid_status_transition(from_status: str, to_status: str) -> None:
    """
    Raise InvalidStatusTransition unless from_status -> to_status is allowed
    
    Same-status "transitions" are always valid no-ops.
    """
    if from_status == to_status:
        return
    allowed = VALID_STATUS_TRANSITIONS.get(from_status, [])
    if to_status not in allowed:
        raise InvalidStatusTransition(from_status, to_status, allowed)


@dataclass
class TransitionResult:
    changed: bool
    from_status: str
    to_status: str


class BillingAccountService:
    """Billing account setup, lookup and status transitions"""
    
    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditLogService(db)
    
    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    
    def get_billing_account(self, billing_account_id: int, for_update: bool = False) -> BillingAccount:
        query = self.db.query(BillingAccount).filter(BillingAccount.id == billing_account_id)
        if for_update:
            query = query.with_for_update()
        account = query.first()
        if not account:
            raise BillingAccountNotFound(f"Billing account {billing_account_id} not found")
        return account
    
    def find_for_tenant(self, tenant_type: str, tenant_id: str) -> Optional[BillingAccount]:
        return self.db.query(BillingAccount).filter(
            BillingAccount.tenant_type == tenant_type,
            BillingAccount.tenant_id == str(tenant_id)
        ).first()
    
    def find_by_gateway_customer(self, customer_id: str) -> Optional[BillingAccount]:
        return self.db.query(BillingAccount).filter(
            BillingAccount.gateway_customer_id == customer_id
        ).first()
    
    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    
    def setup_personal_billing(self, user_id: str, billing_email: Optional[str] = None,
                               now: Optional[datetime] = None) -> BillingAccount:
        """Create (or return) the billing account for an individual user"""
        return self._setup_billing(TenantType.PERSONAL.value, user_id, billing_email, now)
    
    def setup_organization_billing(self, organization_id: str, billing_email: Optional[str] = None,
                                   now: Optional[datetime] = None) -> BillingAccount:
        """Create (or return) the billing account for an organization"""
        return self._setup_billing(TenantType.ORG.value, organization_id, billing_email, now)
    
    def _setup_billing(self, tenant_type: str, tenant_id: str, billing_email: Optional[str],
                       now: Optional[datetime]) -> BillingAccount:
        existing = self.find_for_tenant(tenant_type, tenant_id)
        if existing:
            logger.info(f"Billing account already exists for {tenant_type}:{tenant_id} (account {existing.id})")
            return existing
        
        now = now or datetime.utcnow()
        cycle_start, cycle_end = current_cycle_bounds(now, config.BILLING_PERIOD)
        
        account = BillingAccount(
            tenant_type=tenant_type,
            tenant_id=str(tenant_id),
            billing_email=billing_email,
            currency=config.BILLING_CURRENCY,
            status=BillingStatus.ACTIVE.value,
            billing_cycle_start=cycle_start,
            billing_cycle_end=cycle_end,
            is_cycle_locked=False,
        )
        self.db.add(account)
        try:
            self.db.flush()
        except IntegrityError:
            # Concurrent onboarding created it first
            self.db.rollback()
            existing = self.find_for_tenant(tenant_type, tenant_id)
            if existing is None:
                raise
            return existing
        
        self.db.add(Wallet(
            billing_account_id=account.id,
            balance=Decimal("0.00"),
            currency=account.currency,
        ))
        self.audit.log(
            BillingAuditEvent.ACCOUNT_CREATED,
            billing_account_id=account.id,
            details={
                "tenant_type": tenant_type,
                "tenant_id": str(tenant_id),
                "cycle_start": cycle_start.isoformat(),
                "cycle_end": cycle_end.isoformat(),
            },
            commit=False
        )
        self.db.commit()
        self.db.refresh(account)
        
        logger.info(f"Created billing account {account.id} for {tenant_type}:{tenant_id}")
        return account
    
    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    
    def transition_status(
        self,
        account: BillingAccount,
        to_status: str,
        reason: str,
        now: Optional[datetime] = None,
        gateway_event_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> TransitionResult:
        """
        Apply a status transition and append its audit entry
        
        Same-status requests are no-ops (an account that is already DUE keeps
        its original grace period). Disallowed transitions are logged and
        raise InvalidStatusTransition.
        """
        from_status = account.status
        if from_status == to_status:
            logger.debug(f"Account {account.id} already {to_status}; transition skipped")
            return TransitionResult(changed=False, from_status=from_status, to_status=to_status)
        
        try:
            assert_valid_status_transition(from_status, to_status)
        except InvalidStatusTransition:
            logger.warning(
                f"Rejected billing status transition for account {account.id}: "
                f"{from_status} -> {to_status} (reason: {reason})"
            )
            raise
        
        now = now or datetime.utcnow()
        previous_grace_end = account.grace_period_end
        
        account.status = to_status
        if to_status == BillingStatus.DUE.value:
            account.grace_period_end = now + timedelta(days=config.GRACE_PERIOD_DAYS)
            account.last_payment_failed_at = now
        elif to_status == BillingStatus.ACTIVE.value:
            account.grace_period_end = None
            account.last_payment_at = now
        else:
            account.grace_period_end = None
        
        audit_details = {
            "old_status": from_status,
            "new_status": to_status,
            "reason": reason,
        }
        if previous_grace_end:
            audit_details["previous_grace_period_end"] = previous_grace_end.isoformat()
        if account.grace_period_end:
            audit_details["grace_period_end"] = account.grace_period_end.isoformat()
        if details:
            audit_details.update(details)
        
        self.audit.log(
            TRANSITION_AUDIT_EVENTS[to_status],
            billing_account_id=account.id,
            details=audit_details,
            gateway_event_id=gateway_event_id,
            commit=False
        )
        if commit:
            self.db.commit()
        
        logger.info(f"Billing account {account.id}: {from_status} -> {to_status} ({reason})")
        return TransitionResult(changed=True, from_status=from_status, to_status=to_status)
    
    def mark_payment_failed(self, account: BillingAccount, reason: str, now: Optional[datetime] = None,
                            gateway_event_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                            commit: bool = True) -> TransitionResult:
        """
        ACTIVE -> DUE with a fresh grace period
        
        DUE and SUSPENDED accounts are left as they are; the existing grace
        period is never overwritten.
        """
        if account.status != BillingStatus.ACTIVE.value:
            logger.info(f"Account {account.id} is {account.status}; payment failure does not change status")
            account.last_payment_failed_at = now or datetime.utcnow()
            if commit:
                self.db.commit()
            return TransitionResult(changed=False, from_status=account.status, to_status=account.status)
        return self.transition_status(account, BillingStatus.DUE.value, reason, now=now,
                                      gateway_event_id=gateway_event_id, details=details, commit=commit)
    
    def restore_after_payment(self, account: BillingAccount, reason: str, now: Optional[datetime] = None,
                              gateway_event_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                              commit: bool = True) -> TransitionResult:
        """DUE/SUSPENDED -> ACTIVE; an ACTIVE account only records the payment time"""
        if account.status == BillingStatus.ACTIVE.value:
            account.last_payment_at = now or datetime.utcnow()
            if commit:
                self.db.commit()
            return TransitionResult(changed=False, from_status=account.status, to_status=account.status)
        return self.transition_status(account, BillingStatus.ACTIVE.value, reason, now=now,
                                      gateway_event_id=gateway_event_id, details=details, commit=commit)
    
    def suspend_if_grace_expired(self, account: BillingAccount, now: Optional[datetime] = None,
                                 reason: str = GRACE_PERIOD_EXPIRED_REASON,
                                 gateway_event_id: Optional[str] = None,
                                 commit: bool = True) -> TransitionResult:
        """DUE -> SUSPENDED, strictly after the grace period has ended"""
        now = now or datetime.utcnow()
        if account.status != BillingStatus.DUE.value or account.grace_period_end is None:
            return TransitionResult(changed=False, from_status=account.status, to_status=account.status)
        if not now > account.grace_period_end:
            return TransitionResult(changed=False, from_status=account.status, to_status=account.status)
        return self.transition_status(
            account,
            BillingStatus.SUSPENDED.value,
            reason,
            now=now,
            gateway_event_id=gateway_event_id,
            details={"suspended_at": now.isoformat()},
            commit=commit
        )


def get_billing_account_service(db: Session) -> BillingAccountService:
    """Get billing account service instance"""
    return BillingAccountService(db)
