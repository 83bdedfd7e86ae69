"""
Cron routes - externally triggered billing jobs

Every endpoint requires the shared cron secret, sent either as
``Authorization: Bearer <secret>`` or as the raw secret.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status, Header
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
import asyncio
import hmac
import logging

from .config import config
from .db.engine import get_db
from .services.grace_period_service import get_grace_period_service
from .services.reminder_service import get_reminder_service
from .services.run_mode import RunMode
from .services.settlement_service import get_settlement_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/cron", tags=["cron"])


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Reject requests that do not carry the cron secret"""
    secret = config.CRON_SECRET
    if not secret:
        if config.is_dev or config.is_test:
            logger.warning("CRON_SECRET not set - cron endpoints are unauthenticated (development only)")
            return
        logger.error("[SECURITY] CRON_SECRET is not configured; rejecting cron request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    
    provided = authorization or ""
    if provided.startswith("Bearer "):
        provided = provided[len("Bearer "):]
    
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        logger.warning("[SECURITY] Cron request rejected: invalid or missing secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_run_mode(
    dry_run: bool = Query(False, description="Compute outcomes without persisting anything"),
    force_writes: bool = Query(False, description="Operator override: reclaim held locks, re-send today's reminders")
) -> RunMode:
    try:
        return RunMode(dry_run=dry_run, force_writes=force_writes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


async def _run_job(func, *args, **kwargs):
    """Run a blocking batch job in the default executor so the event loop keeps serving"""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


@router.post("/process-billing-cycle", dependencies=[Depends(verify_cron_secret)])
async def process_billing_cycle(
    run_mode: RunMode = Depends(get_run_mode),
    db: Session = Depends(get_db)
):
    """Invoice and settle every account whose billing cycle has ended"""
    started_at = datetime.utcnow()
    logger.info(f"Cron: process-billing-cycle ({run_mode.to_dict()})")
    
    report = await _run_job(get_settlement_service(db).process_billing_cycle, run_mode=run_mode)
    
    return {
        "success": True,
        "job": "process-billing-cycle",
        "started_at": started_at.isoformat(),
        "completed_at": datetime.utcnow().isoformat(),
        "run_mode": run_mode.to_dict(),
        "result": report.to_dict(),
    }


@router.post("/enforce-grace-periods", dependencies=[Depends(verify_cron_secret)])
async def enforce_grace_periods(
    run_mode: RunMode = Depends(get_run_mode),
    db: Session = Depends(get_db)
):
    """Suspend DUE accounts whose grace period has ended"""
    started_at = datetime.utcnow()
    logger.info(f"Cron: enforce-grace-periods ({run_mode.to_dict()})")
    
    stats = await _run_job(get_grace_period_service(db).enforce_grace_periods, run_mode=run_mode)
    
    return {
        "success": True,
        "job": "enforce-grace-periods",
        "started_at": started_at.isoformat(),
        "completed_at": datetime.utcnow().isoformat(),
        "run_mode": run_mode.to_dict(),
        "result": stats,
    }


@router.post("/send-reminders", dependencies=[Depends(verify_cron_secret)])
async def send_reminders(
    run_mode: RunMode = Depends(get_run_mode),
    db: Session = Depends(get_db)
):
    """Send grace period reminders due today"""
    started_at = datetime.utcnow()
    logger.info(f"Cron: send-reminders ({run_mode.to_dict()})")
    
    stats = await _run_job(get_reminder_service(db).send_grace_period_reminders, run_mode=run_mode)
    
    return {
        "success": True,
        "job": "send-reminders",
        "started_at": started_at.isoformat(),
        "completed_at": datetime.utcnow().isoformat(),
        "run_mode": run_mode.to_dict(),
        "result": stats,
    }


@router.get("/health", dependencies=[Depends(verify_cron_secret)])
async def cron_health():
    return {
        "status": "healthy",
        "jobs": ["process-billing-cycle", "enforce-grace-periods", "send-reminders"],
        "timestamp": datetime.utcnow().isoformat(),
    }
