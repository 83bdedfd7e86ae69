"""
Database models for the Billing Engine
"""
from .billing_account import BillingAccount, BillingStatus, TenantType, MandateStatus
from .invoice import Invoice, InvoiceStatus
from .idempotency import IdempotencyRecord, IdempotencyScope
from .audit_log import BillingAuditLog
from .wallet import Wallet, WalletTransaction, WalletTransactionType
from .usage import UsageAggregation

__all__ = [
    "BillingAccount",
    "BillingStatus",
    "TenantType",
    "MandateStatus",
    "Invoice",
    "InvoiceStatus",
    "IdempotencyRecord",
    "IdempotencyScope",
    "BillingAuditLog",
    "Wallet",
    "WalletTransaction",
    "WalletTransactionType",
    "UsageAggregation",
]
