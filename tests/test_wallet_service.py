"""
Tests for wallet deductions and top-ups
"""
import pytest
from decimal import Decimal

from billing_engine.db.models.wallet import WalletTransaction, WalletTransactionType
from billing_engine.exceptions import WalletNotFound
from billing_engine.services.wallet_service import WalletService, INSUFFICIENT_BALANCE


class TestWalletDeduction:
    """Test idempotent deductions"""
    
    def test_deduct_reduces_balance(self, db_session, make_account):
        account = make_account(wallet_balance="25.00")
        service = WalletService(db_session)
        
        result = service.deduct(account.wallet.id, Decimal("10.00"), "invoice_deduction_INV-1", "test")
        
        assert result.success
        assert not result.already_processed
        assert result.balance_after == Decimal("15.00")
        assert result.transaction_ref.startswith("wtx_")
    
    def test_same_key_never_deducts_twice(self, db_session, make_account):
        account = make_account(wallet_balance="25.00")
        service = WalletService(db_session)
        
        first = service.deduct(account.wallet.id, Decimal("10.00"), "invoice_deduction_INV-1", "test")
        second = service.deduct(account.wallet.id, Decimal("10.00"), "invoice_deduction_INV-1", "test")
        
        assert second.success
        assert second.already_processed
        assert second.transaction_ref == first.transaction_ref
        db_session.refresh(account.wallet)
        assert account.wallet.balance == Decimal("15.00")
        debits = db_session.query(WalletTransaction).filter(
            WalletTransaction.type == WalletTransactionType.DEBIT.value
        ).count()
        assert debits == 1
    
    def test_insufficient_balance_is_an_outcome(self, db_session, make_account):
        account = make_account(wallet_balance="5.00")
        service = WalletService(db_session)
        
        result = service.deduct(account.wallet.id, Decimal("10.00"), "invoice_deduction_INV-2", "test")
        
        assert not result.success
        assert result.reason == INSUFFICIENT_BALANCE
        db_session.refresh(account.wallet)
        assert account.wallet.balance == Decimal("5.00")
    
    def test_same_key_succeeds_after_top_up(self, db_session, make_account):
        account = make_account(wallet_balance="5.00")
        service = WalletService(db_session)
        service.deduct(account.wallet.id, Decimal("10.00"), "invoice_deduction_INV-3", "test")
        
        service.top_up(account.wallet.id, Decimal("20.00"), reference="bank-123")
        result = service.deduct(account.wallet.id, Decimal("10.00"), "invoice_deduction_INV-3", "test")
        
        assert result.success
        assert not result.already_processed
        assert result.balance_after == Decimal("15.00")
    
    def test_non_positive_amount_rejected(self, db_session, make_account):
        account = make_account()
        
        with pytest.raises(ValueError):
            WalletService(db_session).deduct(account.wallet.id, Decimal("0"), "key", "test")
    
    def test_unknown_wallet(self, db_session):
        with pytest.raises(WalletNotFound):
            WalletService(db_session).deduct(12345, Decimal("1.00"), "key", "test")


class TestWalletTopUp:
    """Test wallet credits"""
    
    def test_top_up_credits_balance(self, db_session, make_account):
        account = make_account(wallet_balance="1.50")
        
        transaction = WalletService(db_session).top_up(account.wallet.id, Decimal("8.50"))
        
        assert transaction.type == WalletTransactionType.CREDIT.value
        assert transaction.balance_after == Decimal("10.00")
    
    def test_top_up_rejects_negative(self, db_session, make_account):
        account = make_account()
        
        with pytest.raises(ValueError):
            WalletService(db_session).top_up(account.wallet.id, Decimal("-1"))
