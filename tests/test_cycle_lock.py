"""
Tests for the billing cycle lock (compare-and-set)
"""
import uuid
import pytest
from datetime import datetime, timedelta
from unittest.mock import patch

from billing_engine.db.models.audit_log import BillingAuditLog
from billing_engine.services.audit_log_service import BillingAuditEvent
from billing_engine.services.cycle_lock import CycleLockManager

T = datetime(2026, 2, 1, 0, 5)


class TestCycleLock:
    """Test lock acquisition and release"""
    
    def test_acquire_and_release(self, db_session, make_account):
        account = make_account()
        manager = CycleLockManager(db_session)
        
        result = manager.acquire(account.id, now=T)
        
        assert result.success
        assert result.token
        assert manager.is_cycle_locked(account.id)
        
        manager.release(account.id)
        assert not manager.is_cycle_locked(account.id)
    
    def test_second_acquire_reports_already_locked(self, db_session, session_factory, make_account):
        account = make_account()
        first = CycleLockManager(db_session).acquire(account.id, now=T)
        
        other_session = session_factory()
        try:
            second = CycleLockManager(other_session).acquire(account.id, now=T)
        finally:
            other_session.close()
        
        assert first.success
        assert not second.success
        assert second.already_locked
    
    def test_concurrent_acquire_exactly_one_wins(self, session_factory, make_account):
        """Both processes read the unlocked row; only one conditional write lands"""
        account = make_account()
        session_a = session_factory()
        session_b = session_factory()
        results = {}
        real_uuid4 = uuid.uuid4
        
        def interleave():
            # B has read the unlocked state and is about to write; A gets there first
            if "a" not in results:
                results["a"] = CycleLockManager(session_a).acquire(account.id, now=T)
            return real_uuid4()
        
        try:
            with patch("billing_engine.services.cycle_lock.uuid.uuid4", side_effect=interleave):
                results["b"] = CycleLockManager(session_b).acquire(account.id, now=T)
            
            assert results["a"].success
            assert not results["b"].success
            assert results["b"].already_locked
            
            CycleLockManager(session_a).release(account.id)
            again = CycleLockManager(session_b).acquire(account.id, now=T)
            assert again.success
        finally:
            session_a.close()
            session_b.close()
    
    def test_missing_account(self, db_session):
        result = CycleLockManager(db_session).acquire(9999, now=T)
        
        assert not result.success
        assert not result.already_locked
        assert "not found" in result.error


class TestStaleLockReclaim:
    """Test reclamation of locks abandoned by crashed processes"""
    
    def _hold_lock(self, db_session, account, locked_at):
        account.is_cycle_locked = True
        account.cycle_locked_at = locked_at
        account.cycle_lock_token = "crashed-process"
        db_session.commit()
    
    def test_recent_lock_is_respected(self, db_session, make_account):
        account = make_account()
        self._hold_lock(db_session, account, T - timedelta(minutes=9))
        
        result = CycleLockManager(db_session).acquire(account.id, now=T)
        
        assert result.already_locked
    
    def test_stale_lock_is_reclaimed_and_audited(self, db_session, make_account):
        account = make_account()
        self._hold_lock(db_session, account, T - timedelta(minutes=11))
        
        result = CycleLockManager(db_session).acquire(account.id, now=T)
        
        assert result.success
        assert result.reclaimed
        entries = db_session.query(BillingAuditLog).filter(
            BillingAuditLog.billing_account_id == account.id,
            BillingAuditLog.event_type == BillingAuditEvent.CYCLE_LOCK_RECLAIMED
        ).all()
        assert len(entries) == 1
        assert entries[0].details["forced"] is False
    
    def test_force_reclaims_recent_lock(self, db_session, make_account):
        account = make_account()
        self._hold_lock(db_session, account, T - timedelta(minutes=1))
        
        result = CycleLockManager(db_session).acquire(account.id, now=T, force=True)
        
        assert result.success
        assert result.reclaimed
        db_session.refresh(account)
        assert account.cycle_lock_token == result.token
