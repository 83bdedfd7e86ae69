"""
Usage aggregation model - the external, append-only usage ledger

The usage pipeline writes these rows; the billing engine only reads them.
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Index
from datetime import datetime

from ..base import Base


class UsageAggregation(Base):
    """Measured usage for one tenant, resource type and aggregation window"""
    __tablename__ = "usage_aggregations"
    
    id = Column(Integer, primary_key=True, index=True)
    tenant_type = Column(String(20), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=False)  # traffic, storage, compute, docs, github, ai...
    total_units = Column(Numeric(24, 4), nullable=False)  # bytes for traffic/storage
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    
    __table_args__ = (
        Index("idx_usage_aggregations_tenant_period", "tenant_type", "tenant_id", "period_start"),
    )
