"""
Billing Guard

Read-only view of an account's billing standing for request gating and
client warnings:

- ACTIVE: no restriction
- DUE: allowed, with warning headers and a countdown to suspension
- SUSPENDED: blocked everywhere except billing, webhook, cron and health paths
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from ..db.models.billing_account import BillingAccount, BillingStatus

# Paths that stay reachable for a suspended account
BILLING_EXEMPT_PATHS = (
    "/v1/billing",
    "/webhooks",
    "/v1/cron",
    "/health",
)

CRITICAL_HOURS = 12
NEAR_SUSPENSION_HOURS = 48


class WarningState:
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    SUSPENDED = "SUSPENDED"


@dataclass
class AccountWarning:
    state: str
    status: str
    hours_remaining: Optional[float] = None
    days_until_suspension: Optional[int] = None
    message: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "status": self.status,
            "hours_remaining": self.hours_remaining,
            "days_until_suspension": self.days_until_suspension,
            "message": self.message,
        }


def is_exempt_path(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in BILLING_EXEMPT_PATHS)


def should_block_request(status: str, path: str) -> bool:
    """Only SUSPENDED accounts are blocked, and never on exempt paths"""
    if status != BillingStatus.SUSPENDED.value:
        return False
    return not is_exempt_path(path)


def days_until_suspension(account: BillingAccount, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days (rounded up) until suspension; None unless the account is DUE"""
    if account.status != BillingStatus.DUE.value or account.grace_period_end is None:
        return None
    now = now or datetime.utcnow()
    return max(0, math.ceil((account.grace_period_end - now) / timedelta(days=1)))


def get_account_warning_state(account: BillingAccount, now: Optional[datetime] = None) -> AccountWarning:
    now = now or datetime.utcnow()
    
    if account.status == BillingStatus.SUSPENDED.value:
        return AccountWarning(
            state=WarningState.SUSPENDED,
            status=account.status,
            hours_remaining=0,
            days_until_suspension=0,
            message="Your account is suspended due to an unpaid invoice. Add funds to your wallet to restore access.",
        )
    
    if account.status != BillingStatus.DUE.value or account.grace_period_end is None:
        return AccountWarning(state=WarningState.NORMAL, status=account.status)
    
    hours_remaining = max(0.0, (account.grace_period_end - now) / timedelta(hours=1))
    days = days_until_suspension(account, now)
    
    if hours_remaining <= CRITICAL_HOURS:
        state = WarningState.CRITICAL
        message = f"Your account will be suspended in {math.ceil(hours_remaining)} hours unless payment is received."
    elif hours_remaining <= NEAR_SUSPENSION_HOURS:
        state = WarningState.WARNING
        message = f"Your account will be suspended in {math.ceil(hours_remaining)} hours. Please pay your invoice."
    else:
        state = WarningState.WARNING
        message = f"Payment is overdue. Your account will be suspended in {days} days."
    
    return AccountWarning(
        state=state,
        status=account.status,
        hours_remaining=round(hours_remaining, 2),
        days_until_suspension=days,
        message=message,
    )


def billing_status_headers(account: BillingAccount, now: Optional[datetime] = None) -> Dict[str, str]:
    """Response headers advertising a non-ACTIVE billing status"""
    if account.status == BillingStatus.ACTIVE.value:
        return {}
    headers = {"X-Billing-Status": account.status}
    days = days_until_suspension(account, now)
    if days is not None:
        headers["X-Billing-Days-Until-Suspension"] = str(days)
    return headers
