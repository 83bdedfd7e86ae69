"""
Wallet models - prepaid balance used to settle invoices
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base


class WalletTransactionType(str, enum.Enum):
    """Wallet transaction direction"""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class Wallet(Base):
    """One wallet per billing account"""
    __tablename__ = "billing_wallets"
    
    id = Column(Integer, primary_key=True, index=True)
    billing_account_id = Column(Integer, ForeignKey("billing_accounts.id"), nullable=False, unique=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    billing_account = relationship("BillingAccount", back_populates="wallet")
    transactions = relationship("WalletTransaction", back_populates="wallet", lazy="dynamic")
    
    def __repr__(self):
        return f"<Wallet {self.id} account={self.billing_account_id} balance={self.balance}>"


class WalletTransaction(Base):
    """Ledger entry for a wallet balance change"""
    __tablename__ = "billing_wallet_transactions"
    
    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("billing_wallets.id"), nullable=False, index=True)
    transaction_ref = Column(String(64), nullable=False, unique=True)
    type = Column(String(10), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    idempotency_key = Column(String(255), nullable=True, index=True)
    description = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    
    wallet = relationship("Wallet", back_populates="transactions")
    
    __table_args__ = (
        Index("idx_billing_wallet_tx_wallet_created", "wallet_id", "created_at"),
    )
