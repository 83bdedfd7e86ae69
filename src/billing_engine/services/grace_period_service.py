"""
Grace Period Service

Suspends DUE accounts whose grace period has ended. A payment that lands while
the batch is running wins: each account is re-read in its own session right
before the decision.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable
from sqlalchemy.orm import Session, sessionmaker

from ..config import config
from ..db.models.billing_account import BillingAccount, BillingStatus
from .account_service import BillingAccountService
from .batch import iter_account_id_pages, run_with_timeout
from .run_mode import RunMode, DEFAULT_RUN_MODE

logger = logging.getLogger(__name__)


class GracePeriodService:
    """Grace period enforcement"""
    
    def __init__(self, db: Session, session_factory: Optional[Callable[[], Session]] = None):
        self.db = db
        self.session_factory = session_factory or sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    
    def enforce_grace_periods(self, run_mode: RunMode = DEFAULT_RUN_MODE, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Suspend every DUE account with ``now > grace_period_end``
        
        Returns:
            Stats dict: checked, suspended, errors, dry_run
        """
        now = now or datetime.utcnow()
        stats = {
            "checked": 0,
            "suspended": 0,
            "errors": 0,
            "dry_run": run_mode.dry_run,
        }
        
        candidates = self.db.query(BillingAccount.id).filter(
            BillingAccount.status == BillingStatus.DUE.value,
            BillingAccount.grace_period_end.isnot(None),
            BillingAccount.grace_period_end < now
        )
        
        for page in iter_account_id_pages(candidates, config.BILLING_PAGE_SIZE, config.BILLING_MAX_PAGES):
            for billing_account_id in page:
                stats["checked"] += 1
                try:
                    suspended = run_with_timeout(
                        self._enforce_account,
                        config.TENANT_TIMEOUT_SECONDS,
                        billing_account_id,
                        run_mode,
                        now
                    )
                    if suspended:
                        stats["suspended"] += 1
                except Exception as e:
                    logger.error(f"Error enforcing grace period for account {billing_account_id}: {e}", exc_info=True)
                    stats["errors"] += 1
        
        logger.info(f"Grace period enforcement complete: {stats}")
        return stats
    
    def _enforce_account(self, billing_account_id: int, run_mode: RunMode, now: datetime) -> bool:
        db = self.session_factory()
        try:
            accounts = BillingAccountService(db)
            account = accounts.get_billing_account(billing_account_id, for_update=True)
            
            if account.status != BillingStatus.DUE.value or account.grace_period_end is None:
                logger.info(f"Account {billing_account_id} is {account.status}; nothing to enforce")
                return False
            if not now > account.grace_period_end:
                return False
            
            if run_mode.dry_run:
                logger.info(f"[DRY RUN] Would suspend account {billing_account_id} (grace ended {account.grace_period_end})")
                return True
            
            result = accounts.suspend_if_grace_expired(account, now=now)
            return result.changed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def get_grace_period_service(db: Session, **kwargs) -> GracePeriodService:
    """Get grace period service instance"""
    return GracePeriodService(db, **kwargs)
