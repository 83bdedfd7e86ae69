"""
Tests for grace period reminders
"""
import time
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock

from billing_engine.db.models.audit_log import BillingAuditLog
from billing_engine.db.models.invoice import Invoice, InvoiceStatus
from billing_engine.services.audit_log_service import BillingAuditEvent
from billing_engine.services.reminder_service import ReminderService, days_since_grace_start
from billing_engine.services.run_mode import RunMode

GRACE_END = datetime(2026, 2, 15, 0, 5)


@pytest.fixture
def notifier():
    mock = Mock()
    mock.send.return_value = True
    return mock


@pytest.fixture
def due_account(db_session, make_account):
    account = make_account(status="DUE", grace_period_end=GRACE_END)
    db_session.add(Invoice(
        invoice_number="INV-202602-REMIND",
        billing_account_id=account.id,
        cycle_start=datetime(2026, 1, 1),
        cycle_end=datetime(2026, 1, 31, 23, 59, 59, 999999),
        usage_breakdown={},
        amount=Decimal("10.00"),
        currency="INR",
        status=InvoiceStatus.DUE.value,
        due_date=datetime(2026, 2, 8),
        retry_count=1,
    ))
    db_session.commit()
    return account


def _day(n, hour=10):
    """Instant on day ``n`` of the grace period"""
    return GRACE_END - timedelta(days=14) + timedelta(days=n, hours=hour)


class TestDaysSinceGraceStart:
    
    def test_counts_whole_days(self):
        assert days_since_grace_start(GRACE_END, GRACE_END - timedelta(days=14)) == 0
        assert days_since_grace_start(GRACE_END, _day(1, hour=0)) == 1
        assert days_since_grace_start(GRACE_END, _day(6, hour=23)) == 6
        assert days_since_grace_start(GRACE_END, _day(13, hour=0)) == 13


class TestSendGracePeriodReminders:
    """Test scheduled reminder delivery"""
    
    @pytest.mark.parametrize("day", [1, 7, 13])
    def test_sends_on_scheduled_days(self, db_session, due_account, notifier, day):
        stats = ReminderService(db_session, notifier).send_grace_period_reminders(now=_day(day))
        
        assert stats["sent"] == 1
        notifier.send.assert_called_once()
        recipient, template_id, variables = notifier.send.call_args.args
        assert recipient == "owner@example.com"
        assert template_id == f"grace_period_reminder_day_{day}"
        assert variables["invoice_id"] == "INV-202602-REMIND"
        assert variables["amount"] == "10.00"
    
    @pytest.mark.parametrize("day", [0, 2, 8, 12])
    def test_skips_other_days(self, db_session, due_account, notifier, day):
        stats = ReminderService(db_session, notifier).send_grace_period_reminders(now=_day(day))
        
        assert stats["sent"] == 0
        assert stats["skipped"] == 1
        notifier.send.assert_not_called()
    
    def test_at_most_once_per_day(self, db_session, due_account, notifier):
        service = ReminderService(db_session, notifier)
        
        service.send_grace_period_reminders(now=_day(7, hour=9))
        stats = service.send_grace_period_reminders(now=_day(7, hour=15))
        
        assert stats["sent"] == 0
        assert notifier.send.call_count == 1
        sent = db_session.query(BillingAuditLog).filter(
            BillingAuditLog.event_type == BillingAuditEvent.REMINDER_SENT
        ).count()
        assert sent == 1
    
    def test_force_writes_resends(self, db_session, due_account, notifier):
        service = ReminderService(db_session, notifier)
        
        service.send_grace_period_reminders(now=_day(7))
        stats = service.send_grace_period_reminders(run_mode=RunMode(force_writes=True), now=_day(7, hour=11))
        
        assert stats["sent"] == 1
        assert notifier.send.call_count == 2
    
    def test_dry_run_does_not_send(self, db_session, due_account, notifier):
        stats = ReminderService(db_session, notifier).send_grace_period_reminders(
            run_mode=RunMode(dry_run=True), now=_day(1)
        )
        
        assert stats["sent"] == 1
        notifier.send.assert_not_called()
    
    def test_failed_delivery_can_be_retried_same_day(self, db_session, due_account, notifier):
        notifier.send.return_value = False
        service = ReminderService(db_session, notifier)
        
        failed = service.send_grace_period_reminders(now=_day(1))
        notifier.send.return_value = True
        retried = service.send_grace_period_reminders(now=_day(1, hour=12))
        
        assert failed["errors"] == 1
        assert retried["sent"] == 1
    
    def test_account_without_email_is_skipped(self, db_session, make_account, notifier):
        make_account(status="DUE", grace_period_end=GRACE_END, billing_email=None)
        
        stats = ReminderService(db_session, notifier).send_grace_period_reminders(now=_day(1))
        
        assert stats["skipped"] == 1
        notifier.send.assert_not_called()
    
    def test_active_accounts_are_not_reminded(self, db_session, make_account, notifier):
        make_account(status="ACTIVE")
        
        stats = ReminderService(db_session, notifier).send_grace_period_reminders(now=_day(1))
        
        assert stats["processed"] == 0
        notifier.send.assert_not_called()
    
    def test_stalled_delivery_times_out(self, db_session, due_account, make_account, notifier, monkeypatch):
        from billing_engine.config import config
        
        make_account(status="DUE", grace_period_end=GRACE_END, billing_email="other@example.com")
        monkeypatch.setattr(config, "TENANT_TIMEOUT_SECONDS", 0.2)
        
        def send(recipient, template_id, variables):
            if recipient == "owner@example.com":
                time.sleep(1)
                return False
            return True
        
        notifier.send.side_effect = send
        
        stats = ReminderService(db_session, notifier).send_grace_period_reminders(now=_day(1))
        
        assert stats["processed"] == 2
        assert stats["errors"] == 1
        assert stats["sent"] == 1
