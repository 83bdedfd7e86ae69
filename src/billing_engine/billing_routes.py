"""
Billing API routes - account setup, status, invoices and wallet top-ups
"""
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field, EmailStr
from decimal import Decimal
from typing import Optional
import asyncio
import logging

from .db.engine import get_db
from .db.models.billing_account import TenantType
from .db.models.invoice import Invoice
from .services.account_service import get_billing_account_service
from .services.billing_guard import get_account_warning_state, billing_status_headers
from .services.settlement_service import get_settlement_service
from .services.wallet_service import get_wallet_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["billing"])


class SetupBillingRequest(BaseModel):
    """Request to set up billing for a user or organization"""
    tenant_type: TenantType = Field(..., description="PERSONAL or ORG")
    tenant_id: str = Field(..., min_length=1, max_length=100, description="User id or organization id")
    billing_email: Optional[EmailStr] = Field(None, description="Address for invoices and reminders")


class TopUpRequest(BaseModel):
    """Request to credit a wallet"""
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    reference: Optional[str] = Field(None, max_length=100, description="External payment reference")


def _wallet_to_dict(wallet) -> dict:
    return {
        "id": wallet.id,
        "billing_account_id": wallet.billing_account_id,
        "balance": str(Decimal(wallet.balance)),
        "currency": wallet.currency,
    }


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
async def setup_billing(request: SetupBillingRequest, db: Session = Depends(get_db)):
    """Create the billing account and wallet for a tenant (idempotent)"""
    service = get_billing_account_service(db)
    if request.tenant_type == TenantType.ORG:
        account = service.setup_organization_billing(request.tenant_id, billing_email=request.billing_email)
    else:
        account = service.setup_personal_billing(request.tenant_id, billing_email=request.billing_email)
    
    return {
        "account": account.to_dict(),
        "wallet": _wallet_to_dict(account.wallet) if account.wallet else None,
    }


@router.get("/accounts/{billing_account_id}")
async def get_billing_account(billing_account_id: int, db: Session = Depends(get_db)):
    account = get_billing_account_service(db).get_billing_account(billing_account_id)
    return {
        "account": account.to_dict(),
        "wallet": _wallet_to_dict(account.wallet) if account.wallet else None,
    }


@router.get("/accounts/{billing_account_id}/status")
async def get_billing_status(billing_account_id: int, db: Session = Depends(get_db)):
    """
    Billing standing for client-side warnings
    
    Non-ACTIVE accounts also get X-Billing-Status response headers.
    """
    account = get_billing_account_service(db).get_billing_account(billing_account_id)
    warning = get_account_warning_state(account)
    
    content = {
        "billing_account_id": account.id,
        "status": account.status,
        "grace_period_end": account.grace_period_end.isoformat() if account.grace_period_end else None,
        "warning": warning.to_dict(),
    }
    return JSONResponse(content=content, headers=billing_status_headers(account))


@router.get("/accounts/{billing_account_id}/invoices")
async def list_invoices(billing_account_id: int, limit: int = 50, db: Session = Depends(get_db)):
    account = get_billing_account_service(db).get_billing_account(billing_account_id)
    invoices = db.query(Invoice).filter(
        Invoice.billing_account_id == account.id
    ).order_by(Invoice.cycle_start.desc()).limit(min(max(limit, 1), 100)).all()
    return {
        "billing_account_id": account.id,
        "invoices": [invoice.to_dict() for invoice in invoices],
    }


@router.post("/invoices/{invoice_id}/retry")
async def retry_invoice_payment(invoice_id: str, db: Session = Depends(get_db)):
    """
    Re-attempt settlement of a DUE or FAILED invoice
    
    Other statuses are rejected with 400.
    """
    # Settlement may call the payment gateway; keep it off the event loop
    loop = asyncio.get_event_loop()
    outcome = await loop.run_in_executor(None, lambda: get_settlement_service(db).retry_payment(invoice_id))
    return {
        "invoice_id": outcome.invoice_id,
        "status": outcome.status,
        "invoice_status": outcome.invoice_status,
        "reference": outcome.reference,
        "reason": outcome.reason,
        "retry_count": outcome.retry_count,
    }


@router.post("/wallets/{wallet_id}/top-up")
async def top_up_wallet(wallet_id: int, request: TopUpRequest, db: Session = Depends(get_db)):
    service = get_wallet_service(db)
    try:
        transaction = service.top_up(wallet_id, request.amount, reference=request.reference)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    
    wallet = service.get_wallet(wallet_id)
    return {
        "wallet": _wallet_to_dict(wallet),
        "transaction_ref": transaction.transaction_ref,
        "amount": str(Decimal(transaction.amount)),
    }
