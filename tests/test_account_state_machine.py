"""
Tests for billing account setup and the status state machine
"""
import pytest
from datetime import datetime, timedelta

from billing_engine.db.models.audit_log import BillingAuditLog
from billing_engine.db.models.billing_account import BillingStatus, TenantType
from billing_engine.exceptions import InvalidStatusTransition
from billing_engine.services.account_service import (
    BillingAccountService,
    GRACE_PERIOD_EXPIRED_REASON,
    assert_valid_status_transition,
)
from billing_engine.services.audit_log_service import BillingAuditEvent

T = datetime(2026, 2, 1, 0, 5)


def _audit_entries(db, account_id, event_type=None):
    query = db.query(BillingAuditLog).filter(BillingAuditLog.billing_account_id == account_id)
    if event_type:
        query = query.filter(BillingAuditLog.event_type == event_type)
    return query.all()


class TestTransitionTable:
    """Test the allowed transition table"""
    
    @pytest.mark.parametrize("from_status,to_status", [
        ("ACTIVE", "DUE"),
        ("DUE", "ACTIVE"),
        ("DUE", "SUSPENDED"),
        ("SUSPENDED", "ACTIVE"),
    ])
    def test_allowed_transitions(self, from_status, to_status):
        assert_valid_status_transition(from_status, to_status)
    
    @pytest.mark.parametrize("from_status,to_status", [
        ("ACTIVE", "SUSPENDED"),
        ("SUSPENDED", "DUE"),
    ])
    def test_rejected_transitions(self, from_status, to_status):
        with pytest.raises(InvalidStatusTransition) as exc_info:
            assert_valid_status_transition(from_status, to_status)
        assert exc_info.value.from_status == from_status
        assert exc_info.value.to_status == to_status
    
    def test_same_status_is_noop(self):
        for status in BillingStatus:
            assert_valid_status_transition(status.value, status.value)


class TestAccountSetup:
    """Test account onboarding"""
    
    def test_setup_personal_creates_account_and_wallet(self, db_session):
        service = BillingAccountService(db_session)
        
        account = service.setup_personal_billing("user-42", billing_email="a@example.com", now=datetime(2026, 3, 15, 9))
        
        assert account.tenant_type == TenantType.PERSONAL.value
        assert account.status == BillingStatus.ACTIVE.value
        assert account.billing_cycle_start == datetime(2026, 3, 1)
        assert account.billing_cycle_end == datetime(2026, 3, 31, 23, 59, 59, 999999)
        assert account.wallet is not None
        assert account.wallet.balance == 0
        assert len(_audit_entries(db_session, account.id, BillingAuditEvent.ACCOUNT_CREATED)) == 1
    
    def test_setup_is_idempotent(self, db_session):
        service = BillingAccountService(db_session)
        
        first = service.setup_organization_billing("org-7")
        second = service.setup_organization_billing("org-7")
        
        assert first.id == second.id
        assert first.tenant_type == TenantType.ORG.value
        assert len(_audit_entries(db_session, first.id, BillingAuditEvent.ACCOUNT_CREATED)) == 1


class TestStatusTransitions:
    """Test transitions applied to stored accounts"""
    
    def test_payment_failure_sets_grace_period_exactly(self, db_session, make_account):
        account = make_account()
        service = BillingAccountService(db_session)
        
        result = service.mark_payment_failed(account, reason="insufficient_balance", now=T)
        
        assert result.changed
        assert account.status == BillingStatus.DUE.value
        assert account.grace_period_end == T + timedelta(days=14)
        assert account.last_payment_failed_at == T
        entries = _audit_entries(db_session, account.id, BillingAuditEvent.ACCOUNT_DUE)
        assert len(entries) == 1
        assert entries[0].details["old_status"] == "ACTIVE"
        assert entries[0].details["new_status"] == "DUE"
    
    def test_second_failure_keeps_original_grace_period(self, db_session, make_account):
        account = make_account()
        service = BillingAccountService(db_session)
        service.mark_payment_failed(account, reason="first", now=T)
        
        result = service.mark_payment_failed(account, reason="second", now=T + timedelta(days=3))
        
        assert not result.changed
        assert account.grace_period_end == T + timedelta(days=14)
        assert len(_audit_entries(db_session, account.id, BillingAuditEvent.ACCOUNT_DUE)) == 1
    
    def test_payment_restores_due_account(self, db_session, make_account):
        account = make_account(status="DUE", grace_period_end=T + timedelta(days=5))
        service = BillingAccountService(db_session)
        
        result = service.restore_after_payment(account, reason="paid", now=T)
        
        assert result.changed
        assert account.status == BillingStatus.ACTIVE.value
        assert account.grace_period_end is None
        assert account.last_payment_at == T
    
    def test_payment_restores_suspended_account(self, db_session, make_account):
        account = make_account(status="SUSPENDED")
        
        BillingAccountService(db_session).restore_after_payment(account, reason="paid", now=T)
        
        assert account.status == BillingStatus.ACTIVE.value
        assert len(_audit_entries(db_session, account.id, BillingAuditEvent.ACCOUNT_RESTORED)) == 1
    
    def test_active_account_cannot_be_suspended(self, db_session, make_account):
        account = make_account()
        
        with pytest.raises(InvalidStatusTransition):
            BillingAccountService(db_session).transition_status(account, "SUSPENDED", reason="test", now=T)
        
        db_session.refresh(account)
        assert account.status == BillingStatus.ACTIVE.value
        assert _audit_entries(db_session, account.id, BillingAuditEvent.ACCOUNT_SUSPENDED) == []
    
    def test_suspended_account_cannot_become_due(self, db_session, make_account):
        account = make_account(status="SUSPENDED")
        
        with pytest.raises(InvalidStatusTransition):
            BillingAccountService(db_session).transition_status(account, "DUE", reason="test", now=T)
    
    def test_suspend_if_grace_expired_uses_standard_reason(self, db_session, make_account):
        account = make_account(status="DUE", grace_period_end=T - timedelta(days=1))
        
        result = BillingAccountService(db_session).suspend_if_grace_expired(account, now=T)
        
        assert result.changed
        entries = _audit_entries(db_session, account.id, BillingAuditEvent.ACCOUNT_SUSPENDED)
        assert len(entries) == 1
        assert entries[0].details["reason"] == GRACE_PERIOD_EXPIRED_REASON
        assert account.grace_period_end is None
