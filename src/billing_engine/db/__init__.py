"""
Database module for the Billing Engine
"""
from .base import Base
from .engine import engine, SessionLocal, get_db, init_db
from .models import (
    BillingAccount,
    BillingStatus,
    TenantType,
    MandateStatus,
    Invoice,
    InvoiceStatus,
    IdempotencyRecord,
    BillingAuditLog,
    Wallet,
    WalletTransaction,
    UsageAggregation,
)

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "get_db",
    "init_db",
    "BillingAccount",
    "BillingStatus",
    "TenantType",
    "MandateStatus",
    "Invoice",
    "InvoiceStatus",
    "IdempotencyRecord",
    "BillingAuditLog",
    "Wallet",
    "WalletTransaction",
    "UsageAggregation",
]
