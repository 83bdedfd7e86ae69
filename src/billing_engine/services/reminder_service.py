"""
Reminder Service

Sends grace period reminders to DUE accounts on the configured days
(1, 7 and 13 by default) after the grace period started. Delivery is handed
to the notifier; this module only decides who is due today.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from ..config import config
from ..db.models.billing_account import BillingAccount, BillingStatus
from ..db.models.idempotency import IdempotencyScope
from ..db.models.invoice import Invoice, InvoiceStatus
from .audit_log_service import AuditLogService, BillingAuditEvent
from .batch import iter_account_id_pages, run_with_timeout
from .idempotency_registry import IdempotencyRegistry, reminder_key
from .notifier import Notifier, get_notifier
from .run_mode import RunMode, DEFAULT_RUN_MODE

logger = logging.getLogger(__name__)


def days_since_grace_start(grace_period_end: datetime, now: datetime) -> int:
    """Whole days elapsed since the account entered DUE"""
    grace_start = grace_period_end - timedelta(days=config.GRACE_PERIOD_DAYS)
    return math.floor((now - grace_start) / timedelta(days=1))


def reminder_template_id(day: int) -> str:
    return f"grace_period_reminder_day_{day}"


class ReminderService:
    """
    Grace period reminder scheduling
    
    Each account is handled in its own session from ``session_factory`` under
    the per-tenant timeout, so one slow notifier call cannot stall the batch.
    """
    
    def __init__(
        self,
        db: Session,
        notifier: Optional[Notifier] = None,
        session_factory: Optional[Callable[[], Session]] = None
    ):
        self.db = db
        self.notifier = notifier or get_notifier()
        self.session_factory = session_factory or sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    
    def send_grace_period_reminders(self, run_mode: RunMode = DEFAULT_RUN_MODE, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Notify each DUE account whose grace period day is on the schedule
        
        At most one reminder per account per calendar day; ``force_writes``
        re-sends reminders already sent today.
        
        Returns:
            Stats dict: processed, sent, skipped, errors, dry_run
        """
        now = now or datetime.utcnow()
        stats = {
            "processed": 0,
            "sent": 0,
            "skipped": 0,
            "errors": 0,
            "dry_run": run_mode.dry_run,
        }
        
        due_accounts = self.db.query(BillingAccount.id).filter(
            BillingAccount.status == BillingStatus.DUE.value,
            BillingAccount.grace_period_end.isnot(None)
        )
        
        for page in iter_account_id_pages(due_accounts, config.BILLING_PAGE_SIZE, config.BILLING_MAX_PAGES):
            for billing_account_id in page:
                stats["processed"] += 1
                try:
                    outcome = run_with_timeout(
                        self._remind_account,
                        config.TENANT_TIMEOUT_SECONDS,
                        billing_account_id,
                        run_mode,
                        now
                    )
                except Exception as e:
                    logger.error(f"Error sending reminder for account {billing_account_id}: {e}", exc_info=True)
                    stats["errors"] += 1
                    continue
                
                if outcome == "sent":
                    stats["sent"] += 1
                elif outcome == "failed":
                    stats["errors"] += 1
                else:
                    stats["skipped"] += 1
        
        logger.info(f"Grace period reminders complete: {stats}")
        return stats
    
    def _remind_account(self, billing_account_id: int, run_mode: RunMode, now: datetime) -> str:
        db = self.session_factory()
        try:
            return self._remind(db, billing_account_id, run_mode, now)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    
    def _remind(self, db: Session, billing_account_id: int, run_mode: RunMode, now: datetime) -> str:
        account = db.query(BillingAccount).filter(BillingAccount.id == billing_account_id).first()
        if account is None or account.status != BillingStatus.DUE.value or account.grace_period_end is None:
            return "skipped"
        
        day = days_since_grace_start(account.grace_period_end, now)
        if day not in config.REMINDER_SCHEDULE_DAYS:
            return "skipped"
        
        registry = IdempotencyRegistry(db)
        key = reminder_key(account.id, now)
        if not run_mode.force_writes and registry.is_processed(key, IdempotencyScope.REMINDER):
            logger.debug(f"Reminder {key} already sent today")
            return "skipped"
        
        if not account.billing_email:
            logger.warning(f"Account {account.id} has no billing email; reminder day {day} not sent")
            return "skipped"
        
        template_id = reminder_template_id(day)
        variables = self._template_variables(db, account, now)
        
        if run_mode.dry_run:
            logger.info(f"[DRY RUN] Would send {template_id} to {account.billing_email}")
            return "sent"
        
        if not self.notifier.send(account.billing_email, template_id, variables):
            logger.warning(f"Notifier failed to deliver {template_id} for account {account.id}")
            return "failed"
        
        # A forced re-send leaves the first record in place
        registry.mark_processed(key, IdempotencyScope.REMINDER, {"template_id": template_id, "day": day})
        AuditLogService(db).log(
            BillingAuditEvent.REMINDER_SENT,
            billing_account_id=account.id,
            details={
                "template_id": template_id,
                "day": day,
                "recipient": account.billing_email,
                "invoice_id": variables.get("invoice_id"),
                "forced": run_mode.force_writes,
            }
        )
        return "sent"
    
    @staticmethod
    def _template_variables(db: Session, account: BillingAccount, now: datetime) -> Dict[str, Any]:
        invoice = db.query(Invoice).filter(
            Invoice.billing_account_id == account.id,
            Invoice.status.in_([InvoiceStatus.DUE.value, InvoiceStatus.FAILED.value])
        ).order_by(Invoice.created_at.desc(), Invoice.id.desc()).first()
        
        days_remaining = max(0, math.ceil((account.grace_period_end - now) / timedelta(days=1)))
        return {
            "invoice_id": invoice.invoice_number if invoice else None,
            "amount": str(invoice.amount) if invoice else None,
            "currency": invoice.currency if invoice else account.currency,
            "grace_period_end": account.grace_period_end.strftime("%Y-%m-%d %H:%M UTC"),
            "days_remaining": days_remaining,
            "billing_url": config.BILLING_PORTAL_URL,
        }


def get_reminder_service(db: Session, notifier: Optional[Notifier] = None) -> ReminderService:
    """Get reminder service instance"""
    return ReminderService(db, notifier)
