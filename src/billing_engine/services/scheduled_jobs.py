"""
Scheduled Jobs Service
In-process scheduling for deployments without an external cron
(the /v1/cron endpoints run the same jobs on demand)
"""
import logging
from typing import Optional
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import config

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> BackgroundScheduler:
    """
    Get or create the background scheduler instance
    
    Returns:
        BackgroundScheduler instance
    """
    global _scheduler
    
    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Only one instance at a time
                'misfire_grace_time': 3600  # 1 hour grace period
            }
        )
    
    return _scheduler


def start_scheduler():
    """
    Start the background scheduler and register all jobs
    """
    scheduler = get_scheduler()
    
    if not scheduler.running:
        scheduler.add_job(
            func=run_billing_cycle_job,
            trigger=CronTrigger(day=1, hour=0, minute=5),  # Monthly, just after the cycle boundary
            id='billing_cycle',
            name='Process billing cycle',
            replace_existing=True
        )
        logger.info("Registered billing cycle job (monthly on day 1 at 00:05)")
        
        scheduler.add_job(
            func=run_grace_period_enforcement_job,
            trigger=CronTrigger(hour=1, minute=0),  # Daily at 1 AM
            id='grace_period_enforcement',
            name='Enforce grace periods',
            replace_existing=True
        )
        logger.info("Registered grace period enforcement job (daily at 1 AM)")
        
        scheduler.add_job(
            func=run_reminder_job,
            trigger=CronTrigger(hour=10, minute=0),  # Daily at 10 AM (user-friendly time)
            id='grace_period_reminders',
            name='Send grace period reminders',
            replace_existing=True
        )
        logger.info("Registered grace period reminder job (daily at 10 AM)")
        
        scheduler.add_job(
            func=run_idempotency_purge_job,
            trigger=CronTrigger(hour=3, minute=0),  # Daily at 3 AM
            id='idempotency_purge',
            name='Purge expired idempotency records',
            replace_existing=True
        )
        logger.info("Registered idempotency purge job (daily at 3 AM)")
        
        scheduler.start()
        logger.info("Background scheduler started")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """
    Stop the background scheduler
    """
    scheduler = get_scheduler()
    
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")


def run_billing_cycle_job():
    """
    Billing cycle job - invoices and settles every account whose cycle ended
    """
    from ..db.engine import SessionLocal
    from .settlement_service import get_settlement_service
    
    logger.info("=" * 60)
    logger.info("Starting scheduled billing cycle job")
    logger.info("=" * 60)
    
    db = SessionLocal()
    
    try:
        report = get_settlement_service(db).process_billing_cycle()
        
        logger.info("Billing cycle complete:")
        logger.info(f"  - Accounts processed: {report.processed}")
        logger.info(f"  - Invoices settled: {report.settled}")
        logger.info(f"  - Insufficient balance: {report.insufficient_balance}")
        logger.info(f"  - Auto-debits pending: {report.pending}")
        logger.info(f"  - Skipped (locked): {report.skipped_locked}")
        logger.info(f"  - Errors: {len(report.errors)}")
        if report.has_more:
            logger.warning("  - Page limit reached; remaining accounts are picked up by the next run")
        
    except Exception as e:
        logger.error(f"Billing cycle job failed: {e}", exc_info=True)
    finally:
        db.close()
    
    logger.info("Billing cycle job completed")
    logger.info("=" * 60)


def run_grace_period_enforcement_job():
    """
    Grace period job - suspends DUE accounts whose grace period has ended
    """
    from ..db.engine import SessionLocal
    from .grace_period_service import get_grace_period_service
    
    logger.info("=" * 60)
    logger.info("Starting scheduled grace period enforcement job")
    logger.info("=" * 60)
    
    db = SessionLocal()
    
    try:
        stats = get_grace_period_service(db).enforce_grace_periods()
        
        logger.info("Grace period enforcement complete:")
        logger.info(f"  - Accounts checked: {stats['checked']}")
        logger.info(f"  - Accounts suspended: {stats['suspended']}")
        logger.info(f"  - Errors: {stats['errors']}")
        
    except Exception as e:
        logger.error(f"Grace period enforcement job failed: {e}", exc_info=True)
    finally:
        db.close()
    
    logger.info("Grace period enforcement job completed")
    logger.info("=" * 60)


def run_reminder_job():
    """
    Reminder job - notifies DUE accounts on the configured grace period days
    """
    from ..db.engine import SessionLocal
    from .reminder_service import get_reminder_service
    
    logger.info("=" * 60)
    logger.info("Starting scheduled grace period reminder job")
    logger.info("=" * 60)
    
    db = SessionLocal()
    
    try:
        stats = get_reminder_service(db).send_grace_period_reminders()
        
        logger.info("Grace period reminders complete:")
        logger.info(f"  - Accounts processed: {stats['processed']}")
        logger.info(f"  - Reminders sent: {stats['sent']}")
        logger.info(f"  - Errors: {stats['errors']}")
        
    except Exception as e:
        logger.error(f"Grace period reminder job failed: {e}", exc_info=True)
    finally:
        db.close()
    
    logger.info("Grace period reminder job completed")
    logger.info("=" * 60)


def run_idempotency_purge_job():
    """
    Idempotency purge job - deletes records past the retention window
    """
    from ..db.engine import SessionLocal
    from .idempotency_registry import get_idempotency_registry
    
    logger.info("Starting idempotency purge job")
    
    db = SessionLocal()
    
    try:
        deleted = get_idempotency_registry(db).purge_expired(config.IDEMPOTENCY_RETENTION_DAYS)
        logger.info(f"Idempotency purge complete: {deleted} records deleted")
    except Exception as e:
        logger.error(f"Idempotency purge job failed: {e}", exc_info=True)
    finally:
        db.close()
