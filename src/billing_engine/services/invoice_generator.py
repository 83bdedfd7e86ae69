"""
Invoice Generator

Aggregates ledger usage for a closed cycle into an immutable invoice,
exactly once per (billing account, cycle).

The idempotency record, the invoice and its audit entry are committed in a
single transaction. If a record exists, or an invoice for the cycle already
exists without one (crash recovery), the existing invoice is returned and
nothing is regenerated.
"""
import logging
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, Iterable, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import config
from ..db.models.billing_account import BillingAccount
from ..db.models.idempotency import IdempotencyScope
from ..db.models.invoice import Invoice, InvoiceStatus
from ..exceptions import BillingAccountNotFound, assert_invariant
from .audit_log_service import AuditLogService, BillingAuditEvent
from .idempotency_registry import IdempotencyRegistry, invoice_generation_key
from .ledger_reader import LedgerReader, UsageTotal, get_ledger_reader

logger = logging.getLogger(__name__)

BYTES_PER_GB = Decimal(1024 ** 3)
CENTS = Decimal("0.01")
UNIT_PRECISION = Decimal("0.000001")

# Ledger resource type -> (billing category, divisor to normalized unit, unit label)
CATEGORY_MAP = {
    "traffic": ("traffic", BYTES_PER_GB, "GB"),
    "bandwidth": ("traffic", BYTES_PER_GB, "GB"),
    "storage": ("storage", BYTES_PER_GB, "GB"),
    "compute": ("compute", Decimal(1), "units"),
    "docs": ("docs", Decimal(1), "units"),
    "github": ("github", Decimal(1), "units"),
    "ai": ("ai", Decimal(1), "units"),
    "ai_inference": ("ai", Decimal(1), "units"),
    "ai_training": ("ai", Decimal(1), "units"),
}

INVOICE_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_invoice_number(now: datetime) -> str:
    """INV-YYYYMM-XXXXXX"""
    suffix = "".join(secrets.choice(INVOICE_ID_ALPHABET) for _ in range(6))
    return f"INV-{now.strftime('%Y%m')}-{suffix}"


def calculate_usage_cost(usage: Iterable[UsageTotal], rates: Dict[str, Decimal]) -> Tuple[Dict[str, Any], Decimal]:
    """
    Convert ledger totals into a priced breakdown
    
    Each category cost is rounded to 2 decimals; the total is the sum of the
    rounded category costs and is not rounded again.
    
    Returns:
        (breakdown, total_amount)
    """
    units: Dict[str, Decimal] = {}
    unit_labels: Dict[str, str] = {}
    unrated: Dict[str, str] = {}
    
    for row in usage:
        mapping = CATEGORY_MAP.get(row.category)
        if mapping is None:
            logger.debug(f"Ignoring unknown usage category: {row.category}")
            unrated[row.category] = str(row.total_units)
            continue
        category, divisor, label = mapping
        units[category] = units.get(category, Decimal(0)) + Decimal(row.total_units) / divisor
        unit_labels[category] = label
    
    categories = {}
    total = Decimal("0.00")
    for category in sorted(units):
        normalized = units[category].quantize(UNIT_PRECISION, rounding=ROUND_HALF_UP)
        rate = Decimal(rates.get(category, 0))
        cost = (units[category] * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        total += cost
        categories[category] = {
            "units": str(normalized),
            "unit": unit_labels[category],
            "rate": str(rate),
            "cost": str(cost),
        }
    
    breakdown = {
        "categories": categories,
        "total": str(total),
    }
    if unrated:
        breakdown["unrated"] = unrated
    return breakdown, total


class InvoiceGenerator:
    """Idempotent per-cycle invoice generation"""
    
    def __init__(self, db: Session, ledger: Optional[LedgerReader] = None):
        self.db = db
        self.ledger = ledger or get_ledger_reader(db)
        self.registry = IdempotencyRegistry(db)
        self.audit = AuditLogService(db)
    
    def find_cycle_invoice(self, billing_account_id: int, cycle_start: datetime, cycle_end: datetime) -> Optional[Invoice]:
        """
        Look up the invoice for one cycle
        
        More than one match breaks the one-invoice-per-cycle invariant: raises
        outside production, otherwise logs an alert and returns the first.
        """
        invoices: List[Invoice] = self.db.query(Invoice).filter(
            Invoice.billing_account_id == billing_account_id,
            Invoice.cycle_start == cycle_start,
            Invoice.cycle_end == cycle_end
        ).order_by(Invoice.id.asc()).all()
        
        if len(invoices) > 1:
            assert_invariant(
                False,
                "ONE_INVOICE_PER_CYCLE",
                f"Found {len(invoices)} invoices for account {billing_account_id} cycle {cycle_start} - {cycle_end}",
                {"invoice_ids": [inv.invoice_number for inv in invoices]}
            )
        return invoices[0] if invoices else None
    
    def generate_invoice(self, billing_account_id: int, now: Optional[datetime] = None, dry_run: bool = False) -> Invoice:
        """
        Generate the invoice for the account's current cycle bounds
        
        Any exception leaves no idempotency record behind, so a retry starts
        again from the beginning.
        
        Args:
            billing_account_id: Billing account to invoice
            now: Generation time (defaults to utcnow)
            dry_run: Compute the invoice without persisting anything
        """
        now = now or datetime.utcnow()
        account = self.db.query(BillingAccount).filter(BillingAccount.id == billing_account_id).first()
        if not account:
            raise BillingAccountNotFound(f"Billing account {billing_account_id} not found")
        
        cycle_start = account.billing_cycle_start
        cycle_end = account.billing_cycle_end
        key = invoice_generation_key(account.id, cycle_start, cycle_end)
        
        if self.registry.is_processed(key, IdempotencyScope.INVOICE_GENERATION):
            existing = self.find_cycle_invoice(account.id, cycle_start, cycle_end)
            if existing:
                logger.info(f"Invoice {existing.invoice_number} already generated for {key}")
                return existing
            assert_invariant(
                False,
                "INVOICE_RECORD_HAS_INVOICE",
                f"Idempotency record {key} exists but no invoice was found",
                {"billing_account_id": account.id}
            )
        else:
            existing = self.find_cycle_invoice(account.id, cycle_start, cycle_end)
            if existing:
                # Crashed after the invoice was written but before the record
                logger.warning(f"Recovering missing idempotency record for invoice {existing.invoice_number}")
                if not dry_run:
                    self.registry.mark_processed(key, IdempotencyScope.INVOICE_GENERATION,
                                                 {"invoice_id": existing.invoice_number})
                return existing
        
        usage = self.ledger.query_usage(
            account.tenant_id, cycle_start, cycle_end, tenant_type=account.tenant_type
        )
        breakdown, amount = calculate_usage_cost(usage, config.get_usage_rates())
        
        invoice = Invoice(
            invoice_number=self._unique_invoice_number(now),
            billing_account_id=account.id,
            cycle_start=cycle_start,
            cycle_end=cycle_end,
            usage_breakdown=breakdown,
            amount=amount,
            currency=account.currency,
            status=InvoiceStatus.DUE.value,
            due_date=now + timedelta(days=config.INVOICE_DUE_DAYS),
            retry_count=0,
        )
        
        if dry_run:
            logger.info(f"[DRY RUN] Would generate invoice for account {account.id}: {amount} {account.currency}")
            return invoice
        
        self.db.add(invoice)
        self.registry.add(key, IdempotencyScope.INVOICE_GENERATION, {"invoice_id": invoice.invoice_number})
        self.audit.log(
            BillingAuditEvent.INVOICE_GENERATED,
            billing_account_id=account.id,
            details={
                "invoice_id": invoice.invoice_number,
                "amount": str(amount),
                "currency": invoice.currency,
                "cycle_start": cycle_start.isoformat(),
                "cycle_end": cycle_end.isoformat(),
            },
            commit=False
        )
        
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent generator committed this cycle first
            self.db.rollback()
            existing = self.find_cycle_invoice(billing_account_id, cycle_start, cycle_end)
            if existing is None:
                raise
            logger.info(f"Concurrent generation detected; using invoice {existing.invoice_number}")
            return existing
        
        self.db.refresh(invoice)
        logger.info(
            f"Generated invoice {invoice.invoice_number} for account {account.id}: "
            f"{invoice.amount} {invoice.currency}"
        )
        return invoice
    
    def _unique_invoice_number(self, now: datetime) -> str:
        for _ in range(5):
            number = generate_invoice_number(now)
            taken = self.db.query(Invoice.id).filter(Invoice.invoice_number == number).first()
            if not taken:
                return number
        raise RuntimeError("Could not allocate a unique invoice number")


def get_invoice_generator(db: Session, ledger: Optional[LedgerReader] = None) -> InvoiceGenerator:
    """Get invoice generator instance"""
    return InvoiceGenerator(db, ledger)
