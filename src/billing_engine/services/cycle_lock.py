"""
Billing cycle lock manager

Per-tenant mutual exclusion for cycle processing, implemented as a
compare-and-set on the persisted is_cycle_locked / cycle_locked_at /
cycle_lock_token columns followed by a re-read verification.

A lock older than CYCLE_LOCK_MAX_AGE_MINUTES is treated as abandoned by a
crashed process and may be reclaimed; reclamation is logged and audited.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import config
from ..db.models.billing_account import BillingAccount
from .audit_log_service import AuditLogService, BillingAuditEvent

logger = logging.getLogger(__name__)


@dataclass
class LockResult:
    success: bool
    already_locked: bool = False
    locked_at: Optional[datetime] = None
    token: Optional[str] = None
    reclaimed: bool = False
    error: Optional[str] = None


class CycleLockManager:
    """Compare-and-set lock over a billing account's cycle fields"""
    
    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditLogService(db)
    
    @staticmethod
    def max_lock_age() -> timedelta:
        return timedelta(minutes=config.CYCLE_LOCK_MAX_AGE_MINUTES)
    
    def is_cycle_locked(self, billing_account_id: int) -> bool:
        locked = self.db.query(BillingAccount.is_cycle_locked).filter(
            BillingAccount.id == billing_account_id
        ).scalar()
        return bool(locked)
    
    def acquire(self, billing_account_id: int, now: Optional[datetime] = None, force: bool = False) -> LockResult:
        """
        Acquire the cycle lock for one billing account
        
        Reads the current lock state, writes the lock only if the row still
        holds exactly what was read, then re-reads and verifies the written
        token. Losing at any step means another process holds the lock.
        
        Args:
            billing_account_id: Account to lock
            now: Current time (defaults to utcnow)
            force: Reclaim a held lock regardless of its age (operator override)
        """
        now = now or datetime.utcnow()
        
        account = self.db.query(BillingAccount).filter(BillingAccount.id == billing_account_id).first()
        if account is None:
            return LockResult(success=False, error=f"Billing account {billing_account_id} not found")
        
        observed_locked = bool(account.is_cycle_locked)
        observed_token = account.cycle_lock_token
        observed_locked_at = account.cycle_locked_at
        
        reclaiming = False
        if observed_locked:
            stale = observed_locked_at is None or now - observed_locked_at > self.max_lock_age()
            if not stale and not force:
                logger.info(
                    f"[LOCK] Cycle already locked for account {billing_account_id} "
                    f"(locked_at={observed_locked_at}); skipping"
                )
                return LockResult(success=False, already_locked=True, locked_at=observed_locked_at)
            reclaiming = True
        
        token = uuid.uuid4().hex
        
        # Conditional write against exactly the state that was read
        if observed_locked:
            token_matches = (
                BillingAccount.cycle_lock_token.is_(None)
                if observed_token is None
                else BillingAccount.cycle_lock_token == observed_token
            )
            condition = and_(BillingAccount.is_cycle_locked.is_(True), token_matches)
        else:
            condition = BillingAccount.is_cycle_locked.is_(False)
        
        updated = self.db.query(BillingAccount).filter(
            BillingAccount.id == billing_account_id,
            condition
        ).update(
            {
                BillingAccount.is_cycle_locked: True,
                BillingAccount.cycle_locked_at: now,
                BillingAccount.cycle_lock_token: token,
            },
            synchronize_session=False
        )
        self.db.commit()
        
        if updated != 1:
            logger.info(f"[LOCK] Lost lock race for account {billing_account_id}")
            return LockResult(success=False, already_locked=True)
        
        # Verify what is persisted is what this attempt wrote
        self.db.expire(account)
        verified = self.db.query(BillingAccount).filter(BillingAccount.id == billing_account_id).first()
        if verified is None or verified.cycle_lock_token != token:
            logger.info(f"[LOCK] Lock verification failed for account {billing_account_id}; another process won")
            return LockResult(success=False, already_locked=True)
        
        if reclaiming:
            logger.warning(
                f"[LOCK] Reclaimed cycle lock for account {billing_account_id} "
                f"held since {observed_locked_at} (force={force})"
            )
            self.audit.log(
                BillingAuditEvent.CYCLE_LOCK_RECLAIMED,
                billing_account_id=billing_account_id,
                details={
                    "previous_locked_at": observed_locked_at.isoformat() if observed_locked_at else None,
                    "max_age_minutes": config.CYCLE_LOCK_MAX_AGE_MINUTES,
                    "forced": force,
                }
            )
        
        logger.debug(f"[LOCK] Acquired cycle lock for account {billing_account_id}")
        return LockResult(success=True, locked_at=now, token=token, reclaimed=reclaiming)
    
    def release(self, billing_account_id: int) -> None:
        """Clear the cycle lock unconditionally"""
        self.db.query(BillingAccount).filter(BillingAccount.id == billing_account_id).update(
            {
                BillingAccount.is_cycle_locked: False,
                BillingAccount.cycle_locked_at: None,
                BillingAccount.cycle_lock_token: None,
            },
            synchronize_session=False
        )
        self.db.commit()
        logger.debug(f"[LOCK] Released cycle lock for account {billing_account_id}")


def get_cycle_lock_manager(db: Session) -> CycleLockManager:
    """Get cycle lock manager instance"""
    return CycleLockManager(db)
