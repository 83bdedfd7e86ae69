"""
Settlement Service

Drives the billing cycle for every tenant whose cycle has ended:

    lock -> generate invoice -> advance cycle -> release -> settle

Settlement prefers the wallet and falls back to a gateway auto-debit against
an authorized mandate. Settlement runs outside the cycle lock and is made
idempotent by the per-invoice deduction key.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable
from sqlalchemy.orm import Session, sessionmaker

from ..config import config
from ..db.models.billing_account import BillingAccount, BillingStatus
from ..db.models.invoice import Invoice, InvoiceStatus
from ..exceptions import BillingError, InvoiceNotFound, InvoiceNotRetryable
from .account_service import BillingAccountService
from .audit_log_service import AuditLogService, BillingAuditEvent
from .batch import iter_account_id_pages, run_with_timeout
from .billing_period import next_cycle_bounds
from .cycle_lock import CycleLockManager
from .idempotency_registry import invoice_deduction_key
from .invoice_generator import InvoiceGenerator
from .ledger_reader import LedgerReader
from .payment_gateway import PaymentGateway, ChargeStatus, get_payment_gateway
from .run_mode import RunMode, DEFAULT_RUN_MODE
from .wallet_service import WalletService, INSUFFICIENT_BALANCE

logger = logging.getLogger(__name__)


class SettlementStatus:
    """Per-invoice settlement outcomes"""
    SETTLED = "settled"
    ALREADY_PAID = "already_paid"
    PENDING = "pending"
    FAILED = "failed"
    NOTHING_DUE = "nothing_due"
    DRY_RUN = "dry_run"


class CycleOutcome:
    """Per-tenant cycle processing outcomes"""
    SETTLED = "settled"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PENDING = "pending"
    NOTHING_DUE = "nothing_due"
    ALREADY_LOCKED = "already_locked"
    NOT_DUE = "not_due"
    DRY_RUN = "dry_run"


@dataclass
class SettlementOutcome:
    status: str
    invoice_id: str
    reference: Optional[str] = None
    reason: Optional[str] = None
    retry_count: int = 0
    invoice_status: Optional[str] = None


@dataclass
class TenantCycleResult:
    outcome: str
    invoice_id: Optional[str] = None
    amount: Optional[Decimal] = None
    settlement: Optional[SettlementOutcome] = None


@dataclass
class BillingCycleReport:
    processed: int = 0
    settled: int = 0
    insufficient_balance: int = 0
    pending: int = 0
    skipped_locked: int = 0
    skipped_not_due: int = 0
    invoices: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    dry_run: bool = False
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "settled": self.settled,
            "insufficient_balance": self.insufficient_balance,
            "pending": self.pending,
            "skipped_locked": self.skipped_locked,
            "skipped_not_due": self.skipped_not_due,
            "invoices": list(self.invoices),
            "errors": list(self.errors),
            "has_more": self.has_more,
            "dry_run": self.dry_run,
        }


class SettlementService:
    """
    Billing cycle processing and invoice settlement
    
    Batch processing opens one session per tenant from ``session_factory`` so
    that a stalled tenant can be abandoned without sharing a session across
    threads.
    """
    
    def __init__(
        self,
        db: Session,
        ledger: Optional[LedgerReader] = None,
        gateway: Optional[PaymentGateway] = None,
        session_factory: Optional[Callable[[], Session]] = None
    ):
        self.db = db
        self.ledger = ledger
        self._gateway = gateway
        self.session_factory = session_factory or sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    
    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway
    
    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    
    def process_billing_cycle(self, run_mode: RunMode = DEFAULT_RUN_MODE, now: Optional[datetime] = None) -> BillingCycleReport:
        """
        Process every ACTIVE/DUE account whose cycle has ended
        
        Accounts are handled in pages of at most BILLING_PAGE_SIZE; one
        tenant's failure or timeout is recorded and never stops the batch.
        """
        now = now or datetime.utcnow()
        report = BillingCycleReport(dry_run=run_mode.dry_run)
        
        due_accounts = self.db.query(BillingAccount.id).filter(
            BillingAccount.billing_cycle_end <= now,
            BillingAccount.status.in_([BillingStatus.ACTIVE.value, BillingStatus.DUE.value])
        )
        
        pages = 0
        last_page_full = False
        for page in iter_account_id_pages(due_accounts, config.BILLING_PAGE_SIZE, config.BILLING_MAX_PAGES):
            pages += 1
            last_page_full = len(page) == config.BILLING_PAGE_SIZE
            logger.info(f"Processing billing cycle page {pages} ({len(page)} accounts)")
            
            for billing_account_id in page:
                try:
                    result = run_with_timeout(
                        self._process_account_in_session,
                        config.TENANT_TIMEOUT_SECONDS,
                        billing_account_id,
                        run_mode,
                        now
                    )
                except Exception as e:
                    logger.error(f"Billing cycle failed for account {billing_account_id}: {e}", exc_info=True)
                    report.errors.append({"billing_account_id": billing_account_id, "error": str(e)})
                    continue
                
                self._tally(report, result)
        
        report.has_more = last_page_full and pages >= config.BILLING_MAX_PAGES
        logger.info(f"Billing cycle complete: {report.to_dict()}")
        return report
    
    @staticmethod
    def _tally(report: BillingCycleReport, result: TenantCycleResult):
        if result.outcome == CycleOutcome.ALREADY_LOCKED:
            report.skipped_locked += 1
            return
        if result.outcome == CycleOutcome.NOT_DUE:
            report.skipped_not_due += 1
            return
        
        report.processed += 1
        if result.invoice_id:
            report.invoices.append(result.invoice_id)
        if result.outcome == CycleOutcome.SETTLED:
            report.settled += 1
        elif result.outcome == CycleOutcome.INSUFFICIENT_BALANCE:
            report.insufficient_balance += 1
        elif result.outcome == CycleOutcome.PENDING:
            report.pending += 1
    
    def _process_account_in_session(self, billing_account_id: int, run_mode: RunMode, now: datetime) -> TenantCycleResult:
        db = self.session_factory()
        try:
            return SettlementService(
                db, ledger=self.ledger, gateway=self._gateway, session_factory=self.session_factory
            ).process_account(billing_account_id, run_mode=run_mode, now=now)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    
    # ------------------------------------------------------------------
    # Single tenant
    # ------------------------------------------------------------------
    
    def process_account(self, billing_account_id: int, run_mode: RunMode = DEFAULT_RUN_MODE,
                        now: Optional[datetime] = None) -> TenantCycleResult:
        """Run one account through lock, invoice, cycle advance, release, settle"""
        now = now or datetime.utcnow()
        generator = InvoiceGenerator(self.db, self.ledger)
        
        if run_mode.dry_run:
            if not self._cycle_has_ended(billing_account_id, now):
                return TenantCycleResult(outcome=CycleOutcome.NOT_DUE)
            invoice = generator.generate_invoice(billing_account_id, now=now, dry_run=True)
            return TenantCycleResult(
                outcome=CycleOutcome.DRY_RUN,
                invoice_id=invoice.invoice_number,
                amount=Decimal(invoice.amount),
            )
        
        locks = CycleLockManager(self.db)
        lock = locks.acquire(billing_account_id, now=now, force=run_mode.force_writes)
        if not lock.success:
            if lock.already_locked:
                return TenantCycleResult(outcome=CycleOutcome.ALREADY_LOCKED)
            raise BillingError(lock.error or f"Could not lock billing account {billing_account_id}")
        
        # The id list was read before the lock; another run may have closed this cycle since
        if not self._cycle_has_ended(billing_account_id, now):
            locks.release(billing_account_id)
            logger.info(f"Account {billing_account_id} has no ended cycle at {now}; skipping")
            return TenantCycleResult(outcome=CycleOutcome.NOT_DUE)

        try:
            invoice = generator.generate_invoice(billing_account_id, now=now)
            self._advance_cycle(billing_account_id, lock.token, now)
        except Exception:
            self.db.rollback()
            raise
        finally:
            locks.release(billing_account_id)
        
        settlement = self.settle_invoice(invoice.id, now=now)
        return TenantCycleResult(
            outcome=self._cycle_outcome(settlement),
            invoice_id=invoice.invoice_number,
            amount=Decimal(invoice.amount),
            settlement=settlement,
        )
    
    @staticmethod
    def _cycle_outcome(settlement: SettlementOutcome) -> str:
        if settlement.status in (SettlementStatus.SETTLED, SettlementStatus.ALREADY_PAID):
            return CycleOutcome.SETTLED
        if settlement.status == SettlementStatus.PENDING:
            return CycleOutcome.PENDING
        if settlement.status == SettlementStatus.NOTHING_DUE:
            return CycleOutcome.NOTHING_DUE
        return CycleOutcome.INSUFFICIENT_BALANCE
    
    def _cycle_has_ended(self, billing_account_id: int, now: datetime) -> bool:
        row = self.db.query(BillingAccount.billing_cycle_end, BillingAccount.status).filter(
            BillingAccount.id == billing_account_id
        ).first()
        if row is None:
            return False
        cycle_end, account_status = row
        return cycle_end <= now and account_status in (BillingStatus.ACTIVE.value, BillingStatus.DUE.value)
    
    def _advance_cycle(self, billing_account_id: int, lock_token: str, now: datetime):
        """Move the cycle bounds forward while this attempt still holds the lock"""
        account = self.db.query(BillingAccount).filter(BillingAccount.id == billing_account_id).first()
        old_start, old_end = account.billing_cycle_start, account.billing_cycle_end
        new_start, new_end = next_cycle_bounds(old_end, config.BILLING_PERIOD)
        
        updated = self.db.query(BillingAccount).filter(
            BillingAccount.id == billing_account_id,
            BillingAccount.cycle_lock_token == lock_token,
            BillingAccount.billing_cycle_end == old_end,
            BillingAccount.billing_cycle_end <= now
        ).update(
            {
                BillingAccount.billing_cycle_start: new_start,
                BillingAccount.billing_cycle_end: new_end,
            },
            synchronize_session=False
        )
        if updated != 1:
            self.db.rollback()
            raise BillingError(
                f"Cycle lock for account {billing_account_id} was lost before the cycle could advance",
                code="CYCLE_LOCK_LOST"
            )
        
        AuditLogService(self.db).log(
            BillingAuditEvent.CYCLE_ADVANCED,
            billing_account_id=billing_account_id,
            details={
                "previous_cycle_start": old_start.isoformat(),
                "previous_cycle_end": old_end.isoformat(),
                "cycle_start": new_start.isoformat(),
                "cycle_end": new_end.isoformat(),
            },
            commit=False
        )
        self.db.commit()
        logger.info(f"Advanced billing cycle for account {billing_account_id} to {new_start} - {new_end}")
    
    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    
    def settle_invoice(self, invoice_pk: int, now: Optional[datetime] = None, dry_run: bool = False) -> SettlementOutcome:
        """
        Attempt to satisfy one invoice: wallet first, then gateway auto-debit
        
        Safe to call repeatedly for the same invoice: the wallet deduction is
        keyed by ``invoice_deduction_{invoiceId}`` and a pending gateway debit is
        never re-submitted.
        """
        now = now or datetime.utcnow()
        invoice = self.db.query(Invoice).filter(Invoice.id == invoice_pk).first()
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_pk} not found")
        account = self.db.query(BillingAccount).filter(BillingAccount.id == invoice.billing_account_id).first()
        
        if invoice.status == InvoiceStatus.PAID.value:
            return self._outcome(SettlementStatus.ALREADY_PAID, invoice, reference=invoice.settlement_reference)
        
        amount = Decimal(invoice.amount)
        if amount <= 0:
            if not dry_run:
                self._mark_paid(invoice, account, now, restore_account=False)
                self.db.commit()
            return self._outcome(SettlementStatus.NOTHING_DUE, invoice)
        
        if invoice.gateway_debit_submitted_at is not None or (
            invoice.gateway_payment_id and invoice.status == InvoiceStatus.DUE.value
        ):
            reference = invoice.gateway_payment_id or invoice.gateway_order_id
            logger.info(f"Invoice {invoice.invoice_number} has a gateway debit in flight ({reference})")
            return self._outcome(SettlementStatus.PENDING, invoice, reference=reference)
        
        wallets = WalletService(self.db)
        wallet = wallets.get_wallet_for_account(account.id)
        
        if dry_run:
            covered = wallet is not None and Decimal(wallet.balance) >= amount
            return self._outcome(
                SettlementStatus.DRY_RUN, invoice,
                reason="wallet_covers_invoice" if covered else INSUFFICIENT_BALANCE
            )
        
        failure_reason = "no_wallet"
        if wallet is not None:
            deduction = wallets.deduct(
                wallet.id,
                amount,
                invoice_deduction_key(invoice.invoice_number),
                f"Invoice {invoice.invoice_number} - billing cycle deduction"
            )
            if deduction.success:
                invoice.wallet_transaction_id = deduction.transaction_ref
                self._mark_paid(invoice, account, now)
                self.db.commit()
                return self._outcome(SettlementStatus.SETTLED, invoice, reference=deduction.transaction_ref)
            failure_reason = deduction.reason or INSUFFICIENT_BALANCE
        
        if account.has_active_mandate and account.gateway_customer_id:
            notes = {
                "billing_account_id": str(account.id),
                "invoice_id": invoice.invoice_number,
            }
            if invoice.gateway_order_id is None:
                try:
                    order = self.gateway.create_order(amount, invoice.currency, invoice.invoice_number, notes)
                except Exception as e:
                    logger.error(f"Could not create gateway order for invoice {invoice.invoice_number}: {e}")
                    self._record_failure(invoice, account, "order_creation_failed", now)
                    self.db.commit()
                    return self._outcome(SettlementStatus.FAILED, invoice, reason="order_creation_failed")
                invoice.gateway_order_id = order["order_id"]
            
            # Persist the marker first: if the process dies mid-request the debit is treated as in flight
            invoice.gateway_debit_submitted_at = now
            invoice.last_attempt_at = now
            self.db.commit()
            
            charge = self.gateway.charge_mandate(
                customer_id=account.gateway_customer_id,
                token_id=account.mandate_id,
                amount=amount,
                currency=invoice.currency,
                receipt=invoice.invoice_number,
                notes=notes,
                order_id=invoice.gateway_order_id
            )
            if charge.status == ChargeStatus.SUCCEEDED:
                invoice.gateway_payment_id = charge.payment_id
                self._mark_paid(invoice, account, now)
                self.db.commit()
                return self._outcome(SettlementStatus.SETTLED, invoice, reference=charge.payment_id)
            if charge.status == ChargeStatus.PENDING:
                invoice.gateway_payment_id = charge.payment_id
                self.db.commit()
                reference = charge.payment_id or invoice.gateway_order_id
                logger.info(f"Auto-debit submitted for invoice {invoice.invoice_number}: {reference}")
                return self._outcome(SettlementStatus.PENDING, invoice, reference=reference, reason=charge.reason)
            invoice.gateway_debit_submitted_at = None
            failure_reason = charge.reason or "gateway_declined"
        
        self._record_failure(invoice, account, failure_reason, now)
        self.db.commit()
        return self._outcome(SettlementStatus.FAILED, invoice, reason=failure_reason)
    
    def retry_payment(self, invoice_number: str, now: Optional[datetime] = None) -> SettlementOutcome:
        """
        Re-attempt settlement of a DUE or FAILED invoice on demand
        
        Uses the same deduction key as the cycle run, so a retry racing the
        original attempt cannot double-charge.
        """
        now = now or datetime.utcnow()
        invoice = self.db.query(Invoice).filter(Invoice.invoice_number == invoice_number).first()
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_number} not found")
        if invoice.status not in (InvoiceStatus.DUE.value, InvoiceStatus.FAILED.value):
            raise InvoiceNotRetryable(
                f"Invoice {invoice_number} is {invoice.status}; only DUE or FAILED invoices can be retried",
                details={"status": invoice.status}
            )
        
        AuditLogService(self.db).log(
            BillingAuditEvent.PAYMENT_RETRY_SCHEDULED,
            billing_account_id=invoice.billing_account_id,
            details={
                "invoice_id": invoice.invoice_number,
                "retry_count": invoice.retry_count,
                "previous_status": invoice.status,
            }
        )
        logger.info(f"Retrying payment for invoice {invoice_number} (failed attempts so far: {invoice.retry_count})")
        return self.settle_invoice(invoice.id, now=now)
    
    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    
    def _mark_paid(self, invoice: Invoice, account: BillingAccount, now: datetime, restore_account: bool = True):
        previous_status = invoice.status
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = now
        invoice.last_attempt_at = now
        invoice.failure_reason = None
        
        AuditLogService(self.db).log(
            BillingAuditEvent.INVOICE_PAID,
            billing_account_id=account.id,
            details={
                "invoice_id": invoice.invoice_number,
                "amount": str(invoice.amount),
                "previous_status": previous_status,
                "reference": invoice.settlement_reference,
            },
            commit=False
        )
        
        if not restore_account:
            return
        accounts = BillingAccountService(self.db)
        if account.status != BillingStatus.ACTIVE.value and self._has_other_unpaid(account.id, invoice.id):
            logger.info(f"Account {account.id} still has unpaid invoices; status stays {account.status}")
            account.last_payment_at = now
            return
        accounts.restore_after_payment(
            account,
            reason=f"Invoice {invoice.invoice_number} paid",
            now=now,
            details={"invoice_id": invoice.invoice_number},
            commit=False
        )
    
    def _has_other_unpaid(self, billing_account_id: int, invoice_pk: int) -> bool:
        return self.db.query(Invoice.id).filter(
            Invoice.billing_account_id == billing_account_id,
            Invoice.id != invoice_pk,
            Invoice.status.in_([InvoiceStatus.DUE.value, InvoiceStatus.FAILED.value]),
            Invoice.amount > 0
        ).first() is not None
    
    def _record_failure(self, invoice: Invoice, account: BillingAccount, reason: str, now: datetime):
        """
        Count a failed attempt and start the grace period
        
        The invoice stays DUE while retries remain; it becomes FAILED once
        MAX_RETRY_ATTEMPTS failed attempts have been recorded.
        """
        invoice.retry_count = (invoice.retry_count or 0) + 1
        invoice.last_attempt_at = now
        invoice.failure_reason = reason
        
        if invoice.retry_count >= config.MAX_RETRY_ATTEMPTS and invoice.status != InvoiceStatus.FAILED.value:
            invoice.status = InvoiceStatus.FAILED.value
            AuditLogService(self.db).log(
                BillingAuditEvent.INVOICE_FAILED,
                billing_account_id=account.id,
                details={
                    "invoice_id": invoice.invoice_number,
                    "retry_count": invoice.retry_count,
                    "reason": reason,
                },
                commit=False
            )
            logger.warning(f"Invoice {invoice.invoice_number} marked FAILED after {invoice.retry_count} attempts")
        
        BillingAccountService(self.db).mark_payment_failed(
            account,
            reason=f"Settlement failed for invoice {invoice.invoice_number}: {reason}",
            now=now,
            details={"invoice_id": invoice.invoice_number, "failure": reason},
            commit=False
        )
        logger.info(f"Settlement failed for invoice {invoice.invoice_number}: {reason} (attempt {invoice.retry_count})")
    
    @staticmethod
    def _outcome(status: str, invoice: Invoice, reference: Optional[str] = None, reason: Optional[str] = None) -> SettlementOutcome:
        return SettlementOutcome(
            status=status,
            invoice_id=invoice.invoice_number,
            reference=reference,
            reason=reason,
            retry_count=invoice.retry_count or 0,
            invoice_status=invoice.status,
        )


def get_settlement_service(db: Session, **kwargs) -> SettlementService:
    """Get settlement service instance"""
    return SettlementService(db, **kwargs)
