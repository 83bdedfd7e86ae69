"""
Billing jobs command line

Usage:
    billing-engine process-billing-cycle [--dry-run | --force-writes]
    billing-engine enforce-grace-periods [--dry-run]
    billing-engine send-reminders [--dry-run | --force-writes]
    billing-engine purge-idempotency
    billing-engine init-db

Schedule (when the in-process scheduler is disabled):
    5 0 1 * *  billing-engine process-billing-cycle
    0 1 * * *  billing-engine enforce-grace-periods
    0 10 * * * billing-engine send-reminders
"""
import json
import logging
import sys

from .config import config
from .logging_config import setup_logging

logger = logging.getLogger(__name__)

JOBS = (
    "process-billing-cycle",
    "enforce-grace-periods",
    "send-reminders",
    "purge-idempotency",
    "init-db",
)


def run_job(job: str, dry_run: bool = False, force_writes: bool = False) -> dict:
    """Run one billing job in a fresh session and return its result"""
    from .db.engine import SessionLocal, init_db
    from .services.run_mode import RunMode
    
    if job == "init-db":
        init_db()
        return {"initialized": True}
    
    run_mode = RunMode(dry_run=dry_run, force_writes=force_writes)
    db = SessionLocal()
    try:
        if job == "process-billing-cycle":
            from .services.settlement_service import get_settlement_service
            return get_settlement_service(db).process_billing_cycle(run_mode=run_mode).to_dict()
        if job == "enforce-grace-periods":
            from .services.grace_period_service import get_grace_period_service
            return get_grace_period_service(db).enforce_grace_periods(run_mode=run_mode)
        if job == "send-reminders":
            from .services.reminder_service import get_reminder_service
            return get_reminder_service(db).send_grace_period_reminders(run_mode=run_mode)
        if job == "purge-idempotency":
            from .services.idempotency_registry import get_idempotency_registry
            deleted = get_idempotency_registry(db).purge_expired(config.IDEMPOTENCY_RETENTION_DAYS)
            return {"deleted": deleted}
        raise ValueError(f"Unknown job: {job}")
    finally:
        db.close()


def _failed(result: dict) -> bool:
    errors = result.get("errors")
    if isinstance(errors, list):
        return len(errors) > 0
    return bool(errors)


def main(argv=None):
    """Main entry point"""
    import argparse
    
    parser = argparse.ArgumentParser(description="Billing engine jobs")
    parser.add_argument("job", choices=JOBS, help="Job to run")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute outcomes without persisting anything"
    )
    parser.add_argument(
        "--force-writes",
        action="store_true",
        help="Operator override: reclaim held cycle locks, re-send today's reminders"
    )
    
    args = parser.parse_args(argv)
    if args.dry_run and args.force_writes:
        parser.error("--dry-run and --force-writes cannot be combined")
    
    setup_logging(env=config.ENV, log_level=config.LOG_LEVEL)
    
    logger.info("=" * 60)
    logger.info(f"BILLING JOB: {args.job}")
    logger.info(f"Mode: {'DRY RUN' if args.dry_run else 'LIVE'}{' (force writes)' if args.force_writes else ''}")
    logger.info("=" * 60)
    
    try:
        result = run_job(args.job, dry_run=args.dry_run, force_writes=args.force_writes)
    except Exception as e:
        logger.error(f"Billing job {args.job} failed: {e}", exc_info=True)
        sys.exit(1)
    
    print(json.dumps(result, indent=2, default=str))
    sys.exit(1 if _failed(result) else 0)


if __name__ == "__main__":
    main()
