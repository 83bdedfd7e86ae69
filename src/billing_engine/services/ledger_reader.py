"""
Ledger Reader
Read-only access to the external usage ledger. The billing engine never
writes usage data.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..db.models.usage import UsageAggregation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageTotal:
    """Total measured units for one resource category"""
    category: str
    total_units: Decimal


class LedgerReader(ABC):
    """Read-only usage ledger interface"""
    
    @abstractmethod
    def query_usage(
        self,
        tenant_id: str,
        period_start: datetime,
        period_end: datetime,
        tenant_type: Optional[str] = None
    ) -> List[UsageTotal]:
        """Return usage totals per category within [period_start, period_end]"""
        pass


class SQLLedgerReader(LedgerReader):
    """Ledger reader over the usage_aggregations table"""
    
    def __init__(self, db: Session):
        self.db = db
    
    def query_usage(
        self,
        tenant_id: str,
        period_start: datetime,
        period_end: datetime,
        tenant_type: Optional[str] = None
    ) -> List[UsageTotal]:
        query = self.db.query(
            UsageAggregation.resource_type,
            func.sum(UsageAggregation.total_units)
        ).filter(
            UsageAggregation.tenant_id == str(tenant_id),
            UsageAggregation.period_start >= period_start,
            UsageAggregation.period_end <= period_end
        )
        if tenant_type:
            query = query.filter(UsageAggregation.tenant_type == tenant_type)
        
        rows = query.group_by(UsageAggregation.resource_type).all()
        totals = [
            UsageTotal(category=resource_type, total_units=Decimal(str(units or 0)))
            for resource_type, units in rows
        ]
        logger.debug(f"Ledger query for {tenant_id} [{period_start} - {period_end}]: {len(totals)} categories")
        return totals


def get_ledger_reader(db: Session) -> LedgerReader:
    """Get the ledger reader for this deployment"""
    return SQLLedgerReader(db)
