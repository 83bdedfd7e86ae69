"""
Tests for grace period enforcement
"""
import pytest
from datetime import datetime, timedelta

from billing_engine.db.models.audit_log import BillingAuditLog
from billing_engine.db.models.billing_account import BillingStatus
from billing_engine.services.audit_log_service import BillingAuditEvent
from billing_engine.services.grace_period_service import GracePeriodService
from billing_engine.services.run_mode import RunMode

GRACE_END = datetime(2026, 2, 15, 0, 5)


def _suspensions(db_session, account_id):
    return db_session.query(BillingAuditLog).filter(
        BillingAuditLog.billing_account_id == account_id,
        BillingAuditLog.event_type == BillingAuditEvent.ACCOUNT_SUSPENDED
    ).all()


class TestEnforceGracePeriods:
    """Test DUE -> SUSPENDED enforcement"""
    
    def test_not_suspended_one_second_before_grace_end(self, db_session, make_account):
        account = make_account(status="DUE", grace_period_end=GRACE_END)
        
        stats = GracePeriodService(db_session).enforce_grace_periods(now=GRACE_END - timedelta(seconds=1))
        
        assert stats["suspended"] == 0
        db_session.refresh(account)
        assert account.status == BillingStatus.DUE.value
    
    def test_not_suspended_at_exact_grace_end(self, db_session, make_account):
        account = make_account(status="DUE", grace_period_end=GRACE_END)
        
        GracePeriodService(db_session).enforce_grace_periods(now=GRACE_END)
        
        db_session.refresh(account)
        assert account.status == BillingStatus.DUE.value
    
    def test_suspended_one_second_after_grace_end(self, db_session, make_account):
        account = make_account(status="DUE", grace_period_end=GRACE_END)
        
        stats = GracePeriodService(db_session).enforce_grace_periods(now=GRACE_END + timedelta(seconds=1))
        
        assert stats["checked"] == 1
        assert stats["suspended"] == 1
        db_session.refresh(account)
        assert account.status == BillingStatus.SUSPENDED.value
        assert account.grace_period_end is None
    
    def test_suspension_writes_one_audit_entry(self, db_session, make_account):
        account = make_account(status="DUE", grace_period_end=GRACE_END)
        service = GracePeriodService(db_session)
        
        service.enforce_grace_periods(now=GRACE_END + timedelta(days=15))
        service.enforce_grace_periods(now=GRACE_END + timedelta(days=15, hours=1))
        
        entries = _suspensions(db_session, account.id)
        assert len(entries) == 1
        assert entries[0].details["reason"] == "Grace period expired"
        assert entries[0].details["old_status"] == "DUE"
        assert entries[0].details["new_status"] == "SUSPENDED"
    
    def test_active_and_suspended_accounts_untouched(self, db_session, make_account):
        active = make_account(status="ACTIVE")
        suspended = make_account(status="SUSPENDED")
        
        stats = GracePeriodService(db_session).enforce_grace_periods(now=GRACE_END + timedelta(days=30))
        
        assert stats["checked"] == 0
        db_session.refresh(active)
        db_session.refresh(suspended)
        assert active.status == BillingStatus.ACTIVE.value
        assert suspended.status == BillingStatus.SUSPENDED.value
    
    def test_dry_run_reports_without_suspending(self, db_session, make_account):
        account = make_account(status="DUE", grace_period_end=GRACE_END)
        
        stats = GracePeriodService(db_session).enforce_grace_periods(
            run_mode=RunMode(dry_run=True), now=GRACE_END + timedelta(days=1)
        )
        
        assert stats["dry_run"] is True
        assert stats["suspended"] == 1
        db_session.refresh(account)
        assert account.status == BillingStatus.DUE.value
        assert _suspensions(db_session, account.id) == []
    
    def test_payment_during_batch_wins(self, db_session, session_factory, make_account, monkeypatch):
        """An account restored after selection is re-read and left ACTIVE"""
        account = make_account(status="DUE", grace_period_end=GRACE_END)
        service = GracePeriodService(db_session, session_factory=session_factory)
        original = service._enforce_account
        
        def pay_then_enforce(billing_account_id, run_mode, now):
            session = session_factory()
            try:
                paid = session.get(type(account), billing_account_id)
                paid.status = BillingStatus.ACTIVE.value
                paid.grace_period_end = None
                session.commit()
            finally:
                session.close()
            return original(billing_account_id, run_mode, now)
        
        monkeypatch.setattr(service, "_enforce_account", pay_then_enforce)
        
        stats = service.enforce_grace_periods(now=GRACE_END + timedelta(days=1))
        
        assert stats["checked"] == 1
        assert stats["suspended"] == 0
        db_session.refresh(account)
        assert account.status == BillingStatus.ACTIVE.value
