"""
Tests for invoice generation and usage pricing
"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock

from billing_engine.db.models.idempotency import IdempotencyRecord, IdempotencyScope
from billing_engine.db.models.invoice import Invoice, InvoiceStatus
from billing_engine.exceptions import InvariantViolation
from billing_engine.services.idempotency_registry import invoice_generation_key
from billing_engine.services.invoice_generator import (
    BYTES_PER_GB,
    InvoiceGenerator,
    calculate_usage_cost,
    generate_invoice_number,
)
from billing_engine.services.ledger_reader import UsageTotal

T = datetime(2026, 2, 1, 0, 5)
RATES = {
    "traffic": Decimal("0.10"),
    "storage": Decimal("0.05"),
    "compute": Decimal("0.001"),
    "docs": Decimal("0"),
    "github": Decimal("0"),
    "ai": Decimal("0"),
}


class TestUsagePricing:
    """Test cost calculation"""
    
    def test_traffic_bytes_priced_per_gb(self):
        usage = [UsageTotal("traffic", Decimal(100) * BYTES_PER_GB)]
        
        breakdown, total = calculate_usage_cost(usage, RATES)
        
        assert total == Decimal("10.00")
        assert breakdown["categories"]["traffic"]["cost"] == "10.00"
        assert breakdown["categories"]["traffic"]["unit"] == "GB"
    
    def test_total_is_sum_of_rounded_category_costs(self):
        # 0.005 and 0.005 each round half-up to 0.01; the raw sum would be 0.01
        usage = [
            UsageTotal("compute", Decimal("5")),
            UsageTotal("storage", Decimal("0.1") * BYTES_PER_GB),
        ]
        
        breakdown, total = calculate_usage_cost(usage, RATES)
        
        assert breakdown["categories"]["compute"]["cost"] == "0.01"
        assert breakdown["categories"]["storage"]["cost"] == "0.01"
        assert total == Decimal("0.02")
    
    def test_aliases_merge_into_one_category(self):
        usage = [
            UsageTotal("traffic", Decimal(10) * BYTES_PER_GB),
            UsageTotal("bandwidth", Decimal(10) * BYTES_PER_GB),
        ]
        
        breakdown, total = calculate_usage_cost(usage, RATES)
        
        assert list(breakdown["categories"]) == ["traffic"]
        assert total == Decimal("2.00")
    
    def test_unknown_categories_are_reported_unrated(self):
        breakdown, total = calculate_usage_cost([UsageTotal("quantum", Decimal(3))], RATES)
        
        assert total == Decimal("0.00")
        assert breakdown["unrated"] == {"quantum": "3"}
    
    def test_invoice_number_format(self):
        number = generate_invoice_number(T)
        
        assert number.startswith("INV-202602-")
        assert len(number) == len("INV-202602-") + 6


class TestInvoiceGenerator:
    """Test once-per-cycle invoice generation"""
    
    def test_generates_due_invoice_for_current_cycle(self, db_session, make_account, ledger):
        account = make_account()
        
        invoice = InvoiceGenerator(db_session, ledger).generate_invoice(account.id, now=T)
        
        assert invoice.status == InvoiceStatus.DUE.value
        assert invoice.amount == Decimal("10.00")
        assert invoice.cycle_start == account.billing_cycle_start
        assert invoice.cycle_end == account.billing_cycle_end
        assert invoice.due_date == T + timedelta(days=7)
        assert invoice.retry_count == 0
        ledger.query_usage.assert_called_once_with(
            account.tenant_id, account.billing_cycle_start, account.billing_cycle_end,
            tenant_type=account.tenant_type
        )
    
    def test_generate_twice_returns_same_invoice(self, db_session, make_account, ledger):
        account = make_account()
        generator = InvoiceGenerator(db_session, ledger)
        
        first = generator.generate_invoice(account.id, now=T)
        second = generator.generate_invoice(account.id, now=T + timedelta(minutes=5))
        
        assert first.id == second.id
        assert db_session.query(Invoice).count() == 1
        assert ledger.query_usage.call_count == 1
    
    def test_record_written_with_invoice(self, db_session, make_account, ledger):
        account = make_account()
        
        InvoiceGenerator(db_session, ledger).generate_invoice(account.id, now=T)
        
        key = invoice_generation_key(account.id, account.billing_cycle_start, account.billing_cycle_end)
        record = db_session.query(IdempotencyRecord).filter(
            IdempotencyRecord.key == key,
            IdempotencyRecord.scope == IdempotencyScope.INVOICE_GENERATION
        ).one()
        assert record.result["invoice_id"].startswith("INV-")
    
    def test_recovers_invoice_without_record(self, db_session, make_account, ledger):
        """A crash between the invoice write and the record write must not double-invoice"""
        account = make_account()
        generator = InvoiceGenerator(db_session, ledger)
        invoice = generator.generate_invoice(account.id, now=T)
        db_session.query(IdempotencyRecord).delete()
        db_session.commit()
        
        recovered = generator.generate_invoice(account.id, now=T)
        
        assert recovered.id == invoice.id
        assert ledger.query_usage.call_count == 1
        assert db_session.query(IdempotencyRecord).count() == 1
    
    def test_dry_run_persists_nothing(self, db_session, make_account, ledger):
        account = make_account()
        
        invoice = InvoiceGenerator(db_session, ledger).generate_invoice(account.id, now=T, dry_run=True)
        
        assert invoice.amount == Decimal("10.00")
        assert db_session.query(Invoice).count() == 0
        assert db_session.query(IdempotencyRecord).count() == 0
    
    def test_ledger_failure_leaves_no_record(self, db_session, make_account):
        account = make_account()
        failing = Mock()
        failing.query_usage.side_effect = ConnectionError("ledger unavailable")
        
        with pytest.raises(ConnectionError):
            InvoiceGenerator(db_session, failing).generate_invoice(account.id, now=T)
        
        assert db_session.query(IdempotencyRecord).count() == 0
        assert db_session.query(Invoice).count() == 0
    
    def test_reads_usage_from_ledger_table(self, db_session, make_account, record_usage):
        account = make_account()
        record_usage(account, "traffic", Decimal(50) * BYTES_PER_GB)
        record_usage(account, "compute", Decimal(2000))
        # Outside the cycle
        record_usage(account, "traffic", Decimal(999) * BYTES_PER_GB,
                     period_start=datetime(2026, 2, 1), period_end=datetime(2026, 2, 2))
        
        invoice = InvoiceGenerator(db_session).generate_invoice(account.id, now=T)
        
        assert invoice.amount == Decimal("7.00")
    
    def test_duplicate_cycle_invoices_fail_loudly_outside_production(self):
        mock_db = Mock()
        first, second = Mock(invoice_number="INV-A"), Mock(invoice_number="INV-B")
        mock_db.query().filter().order_by().all.return_value = [first, second]
        generator = InvoiceGenerator(mock_db, Mock())
        
        with pytest.raises(InvariantViolation):
            generator.find_cycle_invoice(1, T, T)
    
    def test_duplicate_cycle_invoices_tolerated_in_production(self, monkeypatch):
        from billing_engine.config import config
        
        monkeypatch.setattr(config, "ENV", "prod")
        mock_db = Mock()
        first, second = Mock(invoice_number="INV-A"), Mock(invoice_number="INV-B")
        mock_db.query().filter().order_by().all.return_value = [first, second]
        generator = InvoiceGenerator(mock_db, Mock())
        
        assert generator.find_cycle_invoice(1, T, T) is first
