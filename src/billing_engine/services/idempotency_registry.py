"""
Idempotency Registry
Durable (key, scope) records guaranteeing at-most-once side effects across
process restarts and at-least-once redelivery.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models.idempotency import IdempotencyRecord, IdempotencyScope

logger = logging.getLogger(__name__)


def invoice_generation_key(billing_account_id: int, cycle_start: datetime, cycle_end: datetime) -> str:
    """invoice:{accountId}:{cycleStart}:{cycleEnd}"""
    return f"invoice:{billing_account_id}:{cycle_start.isoformat()}:{cycle_end.isoformat()}"


def invoice_deduction_key(invoice_number: str) -> str:
    """invoice_deduction_{invoiceId}"""
    return f"invoice_deduction_{invoice_number}"


def reminder_key(billing_account_id: int, day: datetime) -> str:
    """reminder:{accountId}:{YYYY-MM-DD}"""
    return f"reminder:{billing_account_id}:{day.strftime('%Y-%m-%d')}"


def webhook_event_id(event_type: str, created_at: Any, entity_id: Optional[str]) -> str:
    """Deterministic event id: {eventType}-{createdAt}-{primaryEntityId}"""
    return f"{event_type}-{created_at}-{entity_id or 'unknown'}"


class IdempotencyRegistry:
    """
    Read/write access to idempotency records
    
    Records are written inside the caller's transaction when ``commit`` is
    False, so the record lands atomically with the side effect it guards.
    """
    
    def __init__(self, db: Session):
        self.db = db
    
    def get(self, key: str, scope: str) -> Optional[IdempotencyRecord]:
        return self.db.query(IdempotencyRecord).filter(
            IdempotencyRecord.key == key,
            IdempotencyRecord.scope == scope
        ).first()
    
    def is_processed(self, key: str, scope: str) -> bool:
        """Check whether an operation instance was already completed"""
        return self.get(key, scope) is not None
    
    def get_result(self, key: str, scope: str) -> Optional[Dict[str, Any]]:
        record = self.get(key, scope)
        if record is None:
            return None
        return record.result or {}
    
    def add(self, key: str, scope: str, result: Optional[Dict[str, Any]] = None) -> IdempotencyRecord:
        """Stage a record in the current transaction without committing"""
        record = IdempotencyRecord(
            key=key,
            scope=scope,
            result=result or {},
            created_at=datetime.utcnow()
        )
        self.db.add(record)
        return record
    
    def mark_processed(self, key: str, scope: str, result: Optional[Dict[str, Any]] = None) -> bool:
        """
        Persist a record for (key, scope) and commit
        
        Returns:
            True if this call wrote the record, False if another writer got there first
        """
        self.add(key, scope, result)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Idempotency record already exists: {scope}:{key}")
            return False
        
        logger.debug(f"Idempotency record written: {scope}:{key}")
        return True
    
    def purge_expired(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete records older than the retention window
        
        The window must exceed the longest gateway redelivery window.
        """
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
        deleted = self.db.query(IdempotencyRecord).filter(
            IdempotencyRecord.created_at < cutoff
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"Purged {deleted} idempotency records older than {retention_days} days")
        return deleted


def get_idempotency_registry(db: Session) -> IdempotencyRegistry:
    """Get idempotency registry instance"""
    return IdempotencyRegistry(db)


__all__ = [
    "IdempotencyRegistry",
    "IdempotencyScope",
    "get_idempotency_registry",
    "invoice_generation_key",
    "invoice_deduction_key",
    "reminder_key",
    "webhook_event_id",
]
