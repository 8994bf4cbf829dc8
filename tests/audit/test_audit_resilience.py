"""
Tests for the audit ledger's retry and failsafe paths.

Covers:
- create_audit_entry_with_retry(): recovery after transient failures,
  linear backoff, exhausted retries, validation errors never retried
- create_critical_audit_entry(): direct write, failsafe on unhealthy
  backend, failsafe after exhausted retries
- drain_failsafe_queue(): replay with original timestamps, queue cleared
  only when the draining transaction commits (not on savepoint commits,
  not on a later commit after a rollback)
- FailsafeAuditQueue: FIFO persistence across instances
"""

from datetime import timedelta

import pytest

from approval_kernel.domain.audit import (
    AuditEntry,
    AuditEntryData,
    AuditEventKind,
    FailsafeReceipt,
)
from approval_kernel.exceptions import MissingActorError, TransientStorageError
from approval_kernel.services.failsafe_queue import FailsafeAuditQueue


def bypass_data(actor="cfo-1", **kwargs):
    return AuditEntryData(
        event=AuditEventKind.EMERGENCY_BYPASS,
        entity_type="ApprovalWorkflow",
        entity_id=kwargs.pop("entity_id", "wf-bypass"),
        actor_id=actor,
        actor_role="CFO",
        new_values={"reason": "vendor shutdown"},
        **kwargs,
    )


def fail_persist(monkeypatch, ledger, failures):
    """Make the next ``failures`` writes of ``ledger`` fail transiently."""
    original = ledger._persist
    calls = {"count": 0}

    def _persist(row):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise TransientStorageError("create_audit_entry", "connection reset")
        return original(row)

    monkeypatch.setattr(ledger, "_persist", _persist)
    return calls


@pytest.fixture
def queue(tmp_path):
    return FailsafeAuditQueue(tmp_path / "audit-failsafe.jsonl")


# =========================================================================
# Retry
# =========================================================================


class TestRetry:
    def test_recovers_after_transient_failures(self, make_ledger, monkeypatch, captured_logs):
        sleeps = []
        ledger = make_ledger(retry_attempts=3, backoff_seconds=0.5, sleep=sleeps.append)
        calls = fail_persist(monkeypatch, ledger, failures=2)

        entry = ledger.create_audit_entry_with_retry(bypass_data())

        assert calls["count"] == 3
        assert sleeps == [0.5, 1.0]
        assert ledger.get_entry(entry.entry_id) is not None
        retries = [r for r in captured_logs() if r["message"] == "audit_entry_retry"]
        assert [r["attempt"] for r in retries] == [1, 2]

    def test_failed_attempts_leave_no_gap_in_chain(self, make_ledger, monkeypatch):
        ledger = make_ledger()
        first = ledger.create_audit_entry(bypass_data())
        fail_persist(monkeypatch, ledger, failures=1)
        second = ledger.create_audit_entry_with_retry(bypass_data())

        assert second.seq == first.seq + 1
        assert second.prev_hash == first.integrity_hash
        assert ledger.validate_chain().is_valid

    def test_exhausted_retries_raise(self, make_ledger, monkeypatch, captured_logs):
        sleeps = []
        ledger = make_ledger(retry_attempts=3, backoff_seconds=0.5, sleep=sleeps.append)
        fail_persist(monkeypatch, ledger, failures=10)

        with pytest.raises(TransientStorageError) as exc_info:
            ledger.create_audit_entry_with_retry(bypass_data())

        assert exc_info.value.detail == "connection reset"
        assert sleeps == [0.5, 1.0]
        assert any(r["message"] == "audit_entry_retries_exhausted" for r in captured_logs())

    def test_max_retries_override(self, make_ledger, monkeypatch):
        ledger = make_ledger(retry_attempts=5)
        calls = fail_persist(monkeypatch, ledger, failures=10)
        with pytest.raises(TransientStorageError):
            ledger.create_audit_entry_with_retry(bypass_data(), max_retries=2)
        assert calls["count"] == 2

    def test_validation_error_not_retried(self, make_ledger, monkeypatch):
        ledger = make_ledger()
        calls = fail_persist(monkeypatch, ledger, failures=0)
        with pytest.raises(MissingActorError):
            ledger.create_audit_entry_with_retry(bypass_data(actor=None))
        assert calls["count"] == 0


# =========================================================================
# Critical entries
# =========================================================================


class TestCriticalEntries:
    def test_written_directly_when_healthy(self, make_ledger, queue):
        ledger = make_ledger(failsafe_queue=queue)
        result = ledger.create_critical_audit_entry(bypass_data())
        assert isinstance(result, AuditEntry)
        assert len(queue) == 0

    def test_without_failsafe_errors_propagate(self, make_ledger, monkeypatch):
        ledger = make_ledger()
        fail_persist(monkeypatch, ledger, failures=10)
        with pytest.raises(TransientStorageError):
            ledger.create_critical_audit_entry(bypass_data())

    def test_unhealthy_backend_queues(self, make_ledger, queue, deterministic_clock, captured_logs):
        ledger = make_ledger(failsafe_queue=queue, health_check=lambda: False)

        receipt = ledger.create_critical_audit_entry(bypass_data())

        assert isinstance(receipt, FailsafeReceipt)
        assert receipt.failsafe_mode and receipt.queued
        assert receipt.queue_position == 1
        assert receipt.data.timestamp == deterministic_clock.now()
        assert ledger.get_actor_trail("cfo-1") == []
        [engaged] = [r for r in captured_logs() if r["message"] == "audit_failsafe_engaged"]
        assert engaged["reason"] == "backend_unhealthy"

    def test_exhausted_retries_queue(self, make_ledger, queue, monkeypatch):
        ledger = make_ledger(failsafe_queue=queue, health_check=lambda: True)
        fail_persist(monkeypatch, ledger, failures=10)

        receipt = ledger.create_critical_audit_entry(bypass_data())

        assert isinstance(receipt, FailsafeReceipt)
        assert [d.entity_id for d in queue.pending()] == ["wf-bypass"]

    def test_invalid_entry_never_queued(self, make_ledger, queue):
        ledger = make_ledger(failsafe_queue=queue, health_check=lambda: False)
        with pytest.raises(MissingActorError):
            ledger.create_critical_audit_entry(bypass_data(actor=None))
        assert len(queue) == 0

    def test_default_health_check(self, make_ledger):
        assert make_ledger().is_healthy()


# =========================================================================
# Drain
# =========================================================================


class TestDrain:
    @pytest.fixture
    def queued(self, make_ledger, queue, deterministic_clock):
        """Two entries queued while the backend was down, an hour apart."""
        down = make_ledger(failsafe_queue=queue, health_check=lambda: False)
        first = down.create_critical_audit_entry(bypass_data(entity_id="wf-1"))
        deterministic_clock.advance(hours=1)
        second = down.create_critical_audit_entry(bypass_data(entity_id="wf-2"))
        deterministic_clock.advance(hours=5)
        return [first, second]

    def test_replays_with_original_timestamps(self, make_ledger, queue, queued):
        ledger = make_ledger(failsafe_queue=queue)
        written = ledger.drain_failsafe_queue()

        assert [e.entity_id for e in written] == ["wf-1", "wf-2"]
        assert [e.timestamp for e in written] == [r.data.timestamp for r in queued]
        assert written[1].seq == written[0].seq + 1

    def test_queue_cleared_after_commit(self, make_ledger, queue, queued, session):
        ledger = make_ledger(failsafe_queue=queue)
        ledger.drain_failsafe_queue()
        assert len(queue) == 2

        session.commit()
        assert len(queue) == 0
        assert not queue.path.exists()

    def test_rollback_keeps_queue(self, make_ledger, queue, queued, session):
        ledger = make_ledger(failsafe_queue=queue)
        ledger.drain_failsafe_queue()
        session.rollback()
        assert len(queue) == 2

    def test_later_commit_after_rollback_keeps_queue(self, make_ledger, queue, queued, session):
        ledger = make_ledger(failsafe_queue=queue)
        ledger.drain_failsafe_queue()
        session.rollback()

        ledger.create_audit_entry(bypass_data(actor="ops-1", entity_id="unrelated"))
        session.commit()

        assert len(queue) == 2
        assert ledger.get_actor_trail("cfo-1") == []

    def test_savepoint_commit_does_not_acknowledge(self, make_ledger, queue, queued, session):
        ledger = make_ledger(failsafe_queue=queue)
        ledger.drain_failsafe_queue()
        with session.begin_nested():
            ledger.create_audit_entry(bypass_data(entity_id="wf-3"))
        assert len(queue) == 2

        session.commit()
        assert len(queue) == 0

    def test_second_drain_in_same_transaction_skips_replayed(
        self, make_ledger, queue, queued, session,
    ):
        ledger = make_ledger(failsafe_queue=queue)
        assert len(ledger.drain_failsafe_queue()) == 2
        assert ledger.drain_failsafe_queue() == []

        session.commit()
        assert len(queue) == 0

    def test_redrain_after_rollback(self, make_ledger, queue, queued, session):
        ledger = make_ledger(failsafe_queue=queue)
        ledger.drain_failsafe_queue()
        session.rollback()

        written = ledger.drain_failsafe_queue()
        session.commit()

        assert [e.entity_id for e in written] == ["wf-1", "wf-2"]
        assert len(queue) == 0

    def test_still_failing_backend_keeps_queue(self, make_ledger, queue, queued, monkeypatch):
        ledger = make_ledger(failsafe_queue=queue)
        fail_persist(monkeypatch, ledger, failures=100)
        with pytest.raises(TransientStorageError):
            ledger.drain_failsafe_queue()
        assert len(queue) == 2

    def test_empty_queue(self, make_ledger, queue):
        assert make_ledger(failsafe_queue=queue).drain_failsafe_queue() == []
        assert make_ledger().drain_failsafe_queue() == []


class TestFailsafeQueue:
    def test_fifo_and_durable(self, queue, deterministic_clock):
        now = deterministic_clock.now()
        assert queue.enqueue(bypass_data(entity_id="a", timestamp=now)) == 1
        assert queue.enqueue(bypass_data(entity_id="b", timestamp=now + timedelta(minutes=1))) == 2

        reopened = FailsafeAuditQueue(queue.path)
        pending = reopened.pending()
        assert [d.entity_id for d in pending] == ["a", "b"]
        assert pending[0].timestamp == now
        assert pending[0].new_values == {"reason": "vendor shutdown"}

    def test_replace_keeps_remainder(self, queue):
        for name in ("a", "b", "c"):
            queue.enqueue(bypass_data(entity_id=name))
        queue.replace(queue.pending()[2:])
        assert [d.entity_id for d in queue.pending()] == ["c"]
