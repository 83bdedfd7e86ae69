"""
Wallet Service
Prepaid wallet balance with idempotent deductions
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models.idempotency import IdempotencyScope
from ..db.models.wallet import Wallet, WalletTransaction, WalletTransactionType
from ..exceptions import WalletNotFound
from .audit_log_service import AuditLogService, BillingAuditEvent
from .idempotency_registry import IdempotencyRegistry

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass
class DeductionResult:
    success: bool
    transaction_ref: Optional[str] = None
    reason: Optional[str] = None
    already_processed: bool = False
    balance_after: Optional[Decimal] = None


def _new_transaction_ref() -> str:
    return f"wtx_{uuid.uuid4().hex[:24]}"


class WalletService:
    """
    Wallet balance operations
    
    A deduction, its transaction row and its idempotency record commit
    together, so a repeated call with the same key returns the first outcome
    and never deducts twice.
    """
    
    def __init__(self, db: Session):
        self.db = db
        self.registry = IdempotencyRegistry(db)
        self.audit = AuditLogService(db)
    
    def get_wallet(self, wallet_id: int, for_update: bool = False) -> Wallet:
        query = self.db.query(Wallet).filter(Wallet.id == wallet_id)
        if for_update:
            query = query.with_for_update()
        wallet = query.first()
        if not wallet:
            raise WalletNotFound(f"Wallet {wallet_id} not found")
        return wallet
    
    def get_wallet_for_account(self, billing_account_id: int) -> Optional[Wallet]:
        return self.db.query(Wallet).filter(Wallet.billing_account_id == billing_account_id).first()
    
    def deduct(self, wallet_id: int, amount: Decimal, idempotency_key: str, description: str) -> DeductionResult:
        """
        Deduct ``amount`` from the wallet at most once per idempotency key
        
        Insufficient balance is an expected outcome, not an error: it returns
        ``success=False, reason="insufficient_balance"`` and records nothing,
        so the same key can succeed after a top-up.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError(f"Deduction amount must be positive (got {amount})")
        
        previous = self.registry.get_result(idempotency_key, IdempotencyScope.WALLET_DEDUCTION)
        if previous is not None:
            logger.info(f"Wallet deduction {idempotency_key} already processed")
            return DeductionResult(
                success=True,
                transaction_ref=previous.get("transaction_ref"),
                already_processed=True,
            )
        
        wallet = self.get_wallet(wallet_id, for_update=True)
        balance = Decimal(wallet.balance)
        if balance < amount:
            logger.info(f"Insufficient wallet balance for {idempotency_key}: balance={balance}, required={amount}")
            return DeductionResult(success=False, reason=INSUFFICIENT_BALANCE, balance_after=balance)
        
        transaction_ref = _new_transaction_ref()
        wallet.balance = balance - amount
        self.db.add(WalletTransaction(
            wallet_id=wallet.id,
            transaction_ref=transaction_ref,
            type=WalletTransactionType.DEBIT.value,
            amount=amount,
            balance_after=wallet.balance,
            idempotency_key=idempotency_key,
            description=description,
        ))
        self.registry.add(idempotency_key, IdempotencyScope.WALLET_DEDUCTION, {
            "transaction_ref": transaction_ref,
            "amount": str(amount),
        })
        self.audit.log(
            BillingAuditEvent.WALLET_DEDUCTION,
            billing_account_id=wallet.billing_account_id,
            details={
                "wallet_id": wallet.id,
                "amount": str(amount),
                "transaction_ref": transaction_ref,
                "idempotency_key": idempotency_key,
            },
            commit=False
        )
        
        try:
            self.db.commit()
        except IntegrityError:
            # Same key committed concurrently; report its outcome instead
            self.db.rollback()
            previous = self.registry.get_result(idempotency_key, IdempotencyScope.WALLET_DEDUCTION)
            if previous is None:
                raise
            return DeductionResult(
                success=True,
                transaction_ref=previous.get("transaction_ref"),
                already_processed=True,
            )
        
        logger.info(f"Deducted {amount} from wallet {wallet_id} ({idempotency_key}) ref={transaction_ref}")
        return DeductionResult(success=True, transaction_ref=transaction_ref, balance_after=Decimal(wallet.balance))
    
    def top_up(self, wallet_id: int, amount: Decimal, reference: Optional[str] = None) -> WalletTransaction:
        """Credit the wallet"""
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError(f"Top-up amount must be positive (got {amount})")
        
        wallet = self.get_wallet(wallet_id, for_update=True)
        wallet.balance = Decimal(wallet.balance) + amount
        transaction = WalletTransaction(
            wallet_id=wallet.id,
            transaction_ref=_new_transaction_ref(),
            type=WalletTransactionType.CREDIT.value,
            amount=amount,
            balance_after=wallet.balance,
            description=f"Top-up {reference}" if reference else "Top-up",
        )
        self.db.add(transaction)
        self.audit.log(
            BillingAuditEvent.WALLET_TOPUP,
            billing_account_id=wallet.billing_account_id,
            details={
                "wallet_id": wallet.id,
                "amount": str(amount),
                "transaction_ref": transaction.transaction_ref,
                "reference": reference,
            },
            commit=False
        )
        self.db.commit()
        self.db.refresh(transaction)
        
        logger.info(f"Credited {amount} to wallet {wallet_id}")
        return transaction


def get_wallet_service(db: Session) -> WalletService:
    """Get wallet service instance"""
    return WalletService(db)
