"""
AuditLedger -- append-only, hash-verified record of approval events.

Responsibility:
    Creates immutable audit entries for workflow creation, approval
    actions, delegation grants, escalations and emergency bypasses.
    Verifies entry integrity on read, validates the hash chain, and serves
    compliance queries: stats, reports, anomaly detection, approval
    velocity, paginated reads and checksummed exports.  Owns the retry and
    failsafe paths that keep audit coverage when the backend is flaky.

Architecture position:
    Kernel > Services -- imperative shell.  Called by WorkflowService,
    DelegationService and EscalationService within their transaction.

Invariants enforced:
    - Append-only: ``update_audit_entry``/``delete_audit_entry`` always
      raise; the model is also guarded by ORM listeners and DB triggers.
    - ``integrity_hash = sha256(canonical JSON of every other field)``
      including ``seq``, ``timestamp`` and ``prev_hash``.
    - ``seq`` comes from SequenceService (locked counter row), so entries
      of one workflow are totally ordered regardless of clock resolution.
    - Tampering detected on read is reported as ``integrity_valid=False``;
      reads never raise because of a hash mismatch.

Failure modes:
    - InvalidAuditEventError / MissingActorError on malformed input.
    - TransientStorageError when the backend is unavailable.  Retried by
      ``create_audit_entry_with_retry``; diverted to the failsafe queue by
      ``create_critical_audit_entry``.
    - ImmutabilityViolationError on any modification attempt.

Audit relevance:
    This IS the audit ledger.  EMERGENCY_BYPASS entries are additionally
    published on the injected EventChannel for real-time alerting.
"""

from __future__ import annotations

import csv
import io
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import event as sa_event
from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from approval_engines.metrics import (
    completion_velocity,
    detect_bypass_bursts,
    summarize_entries,
)
from approval_kernel.domain.audit import (
    ApprovalVelocity,
    AuditChainReport,
    AuditEntry,
    AuditEntryData,
    AuditEventKind,
    AuditExportBundle,
    AuditPage,
    AuditStats,
    ComplianceReport,
    FailsafeReceipt,
    SuspiciousActivity,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidAuditEventError,
    MissingActorError,
    TransientStorageError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_log import ApprovalAuditLogModel
from approval_kernel.models.workflow import ApprovalWorkflowModel
from approval_kernel.services.event_channel import ChannelTopic, EventChannel
from approval_kernel.services.failsafe_queue import FailsafeAuditQueue
from approval_kernel.services.sequence_service import SequenceService
from approval_kernel.utils.hashing import canonicalize_json, hash_payload, to_jsonable

logger = get_logger("services.audit_ledger")

EXPORT_FORMATS = ("json", "csv")


def compute_integrity_hash(entry: AuditEntry) -> str:
    """SHA-256 over the canonical JSON of every field except the hash itself."""
    return hash_payload(entry.hashable_fields())


def validate_integrity(entry: AuditEntry) -> bool:
    """True when ``entry.integrity_hash`` matches its recomputed hash."""
    return compute_integrity_hash(entry) == entry.integrity_hash


class AuditLedger:
    """
    Writer and reader of the approval audit ledger.

    Contract:
        Every write flushes within the caller's transaction.  The ledger
        never commits or rolls back the outer transaction; retries use
        savepoints.

    Guarantees:
        - Entries are hash-verified on every read.
        - Critical entries are never lost: if they cannot be written they
          are durably queued and replayed by ``drain_failsafe_queue``.

    Non-goals:
        - Does NOT archive or purge entries; ``count_archivable_entries``
          only reports what a retention job would move.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        channel: EventChannel | None = None,
        failsafe_queue: FailsafeAuditQueue | None = None,
        *,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
        max_page_size: int = 500,
        suspicious_window_hours: int = 24,
        health_check: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._channel = channel
        self._failsafe = failsafe_queue
        self._retry_attempts = retry_attempts
        self._backoff_seconds = backoff_seconds
        self._max_page_size = max_page_size
        self._suspicious_window_hours = suspicious_window_hours
        self._health_check = health_check
        self._sleep = sleep
        self._sequence_service = SequenceService(session)
        # (root transaction, queued entries it replayed) until that transaction ends.
        self._unacknowledged: tuple[Any, int] | None = None
        self._drain_hooks_registered = False

    @property
    def channel(self) -> EventChannel | None:
        return self._channel

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _validate(self, data: AuditEntryData) -> AuditEventKind:
        try:
            kind = AuditEventKind(data.event)
        except ValueError:
            logger.warning("audit_entry_rejected", extra={"reason": "invalid_event"})
            raise InvalidAuditEventError(str(data.event)) from None
        if not data.actor_id:
            logger.warning(
                "audit_entry_rejected",
                extra={"reason": "missing_actor", "event_kind": kind.value},
            )
            raise MissingActorError(kind.value)
        return kind

    def _last_hash(self, before_seq: int) -> str | None:
        return self._session.execute(
            select(ApprovalAuditLogModel.integrity_hash)
            .where(ApprovalAuditLogModel.seq < before_seq)
            .order_by(ApprovalAuditLogModel.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _persist(self, row: ApprovalAuditLogModel) -> None:
        """Add and flush ``row``, mapping backend outages to TransientStorageError."""
        try:
            self._session.add(row)
            self._session.flush()
        except OperationalError as exc:
            raise TransientStorageError("create_audit_entry", str(exc.orig)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientStorageError("create_audit_entry", str(exc.orig)) from exc
            raise

    def create_audit_entry(self, data: AuditEntryData) -> AuditEntry:
        """
        Append one entry to the ledger.

        Postconditions:
            - A new row is flushed with the next ``seq``, ``prev_hash``
              linking to the previous entry and a valid ``integrity_hash``.

        Raises:
            InvalidAuditEventError: event kind outside the closed set.
            MissingActorError: no ``actor_id``.
            TransientStorageError: backend unavailable.
        """
        kind = self._validate(data)
        try:
            seq = self._sequence_service.next_value(SequenceService.AUDIT_ENTRY)
        except OperationalError as exc:
            raise TransientStorageError("allocate_audit_seq", str(exc.orig)) from exc

        draft = AuditEntry(
            entry_id=uuid4(),
            seq=seq,
            event=kind,
            entity_type=data.entity_type,
            entity_id=str(data.entity_id),
            actor_id=data.actor_id,
            timestamp=data.timestamp or self._clock.now(),
            integrity_hash="",
            workflow_id=data.workflow_id,
            actor_role=data.actor_role,
            old_values=to_jsonable(data.old_values),
            new_values=to_jsonable(data.new_values),
            ip_address=data.ip_address,
            user_agent=data.user_agent,
            session_id=data.session_id,
            owner_id=data.owner_id,
            prev_hash=self._last_hash(seq),
        )
        entry = replace(draft, integrity_hash=compute_integrity_hash(draft))

        self._persist(
            ApprovalAuditLogModel(
                id=entry.entry_id,
                seq=entry.seq,
                workflow_id=entry.workflow_id,
                event=entry.event.value,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                actor_id=entry.actor_id,
                actor_role=entry.actor_role,
                old_values=entry.old_values,
                new_values=entry.new_values,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                session_id=entry.session_id,
                owner_id=entry.owner_id,
                timestamp=entry.timestamp,
                prev_hash=entry.prev_hash,
                integrity_hash=entry.integrity_hash,
            )
        )

        logger.info(
            "audit_entry_created",
            extra={
                "seq": entry.seq,
                "event_kind": entry.event.value,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "audit_workflow_id": str(entry.workflow_id) if entry.workflow_id else None,
            },
        )

        if entry.event == AuditEventKind.EMERGENCY_BYPASS and self._channel is not None:
            self._channel.publish(ChannelTopic.EMERGENCY_BYPASS, entry, entry.timestamp)

        return entry

    def create_audit_entry_with_retry(
        self,
        data: AuditEntryData,
        max_retries: int | None = None,
    ) -> AuditEntry:
        """
        Create an entry, retrying transient failures with linear backoff.

        Each attempt runs in its own savepoint so a failed attempt leaves
        the caller's transaction usable.  Attempt ``n`` that fails waits
        ``backoff_seconds * n`` before the next one.

        Raises:
            TransientStorageError: the last error, once attempts run out.
            ValidationError subclasses: immediately, without retrying.
        """
        attempts = max_retries if max_retries is not None else self._retry_attempts
        attempts = max(1, attempts)
        last_error: TransientStorageError | None = None

        for attempt in range(1, attempts + 1):
            try:
                with self._session.begin_nested():
                    return self.create_audit_entry(data)
            except TransientStorageError as exc:
                last_error = exc
                logger.warning(
                    "audit_entry_retry",
                    extra={
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "detail": exc.detail,
                    },
                )
                if attempt < attempts:
                    self._sleep(self._backoff_seconds * attempt)

        logger.error("audit_entry_retries_exhausted", extra={"max_attempts": attempts})
        assert last_error is not None
        raise last_error

    def is_healthy(self) -> bool:
        """Probe the backend.  A custom ``health_check`` overrides ``SELECT 1``."""
        if self._health_check is not None:
            return bool(self._health_check())
        try:
            with self._session.begin_nested():
                self._session.execute(text("SELECT 1"))
            return True
        except (OperationalError, DBAPIError):
            logger.warning("audit_backend_unhealthy", exc_info=True)
            return False

    def _queue(self, data: AuditEntryData, reason: str) -> FailsafeReceipt:
        assert self._failsafe is not None
        stamped = data if data.timestamp else replace(data, timestamp=self._clock.now())
        position = self._failsafe.enqueue(stamped)
        logger.warning(
            "audit_failsafe_engaged",
            extra={"reason": reason, "queue_position": position},
        )
        return FailsafeReceipt(
            failsafe_mode=True, queued=True, data=stamped, queue_position=position,
        )

    def create_critical_audit_entry(
        self,
        data: AuditEntryData,
    ) -> AuditEntry | FailsafeReceipt:
        """
        Write an entry that must not be lost.

        Validates first (invalid entries never reach the queue), then writes
        with retry.  If the backend is unhealthy, or the retries end in a
        transient error, the entry goes to the failsafe queue and a receipt
        is returned instead of raising.
        """
        self._validate(data)
        if self._failsafe is None:
            return self.create_audit_entry_with_retry(data)
        if not self.is_healthy():
            return self._queue(data, reason="backend_unhealthy")
        try:
            return self.create_audit_entry_with_retry(data)
        except TransientStorageError:
            return self._queue(data, reason="transient_failure")

    def drain_failsafe_queue(self) -> list[AuditEntry]:
        """
        Replay queued entries into the ledger, keeping their timestamps.

        The replayed prefix is removed from the queue file only after the
        caller's transaction commits; a rollback leaves the queue intact
        for the next drain.  A second drain in the same transaction skips
        the entries already replayed.

        Raises:
            TransientStorageError: if the backend is still failing.  Nothing
                is removed from the queue in that case.
        """
        if self._failsafe is None:
            return []
        in_flight = 0
        if self._unacknowledged is not None:
            in_flight = self._unacknowledged[1]
        pending = self._failsafe.pending()[in_flight:]
        if not pending:
            return []

        written = [self.create_audit_entry_with_retry(data) for data in pending]

        self._register_drain_hooks()
        self._unacknowledged = (self._session.get_transaction(), in_flight + len(pending))
        return written

    def _register_drain_hooks(self) -> None:
        if self._drain_hooks_registered:
            return
        sa_event.listen(self._session, "after_commit", self._acknowledge_drain)
        sa_event.listen(self._session, "after_transaction_end", self._forget_drain)
        self._drain_hooks_registered = True

    def _acknowledge_drain(self, session: Session) -> None:
        # Savepoint commits also fire after_commit; only the root counts.
        if self._unacknowledged is None or session.get_nested_transaction() is not None:
            return
        transaction, drained = self._unacknowledged
        if session.get_transaction() is not transaction:
            return
        self._unacknowledged = None
        remaining = self._failsafe.pending()[drained:]
        self._failsafe.replace(remaining)
        logger.info(
            "audit_failsafe_drained",
            extra={"drained": drained, "remaining": len(remaining)},
        )

    def _forget_drain(self, session: Session, transaction) -> None:
        if self._unacknowledged is not None and self._unacknowledged[0] is transaction:
            logger.warning(
                "audit_failsafe_drain_rolled_back",
                extra={"kept": self._unacknowledged[1]},
            )
            self._unacknowledged = None

    def update_audit_entry(self, entry_id: UUID, changes: dict[str, Any]) -> None:
        """Always raises: audit history is immutable."""
        logger.error(
            "immutability_violation_blocked",
            extra={"entity_type": "ApprovalAuditLog", "entity_id": str(entry_id),
                   "operation": "UPDATE"},
        )
        raise ImmutabilityViolationError(
            "ApprovalAuditLog", str(entry_id), "Audit entries cannot be modified",
        )

    def delete_audit_entry(self, entry_id: UUID) -> None:
        """Always raises: audit history is immutable."""
        logger.error(
            "immutability_violation_blocked",
            extra={"entity_type": "ApprovalAuditLog", "entity_id": str(entry_id),
                   "operation": "DELETE"},
        )
        raise ImmutabilityViolationError(
            "ApprovalAuditLog", str(entry_id), "Audit entries cannot be deleted",
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _to_entry(self, row: ApprovalAuditLogModel) -> AuditEntry:
        entry = row.to_dto()
        if not validate_integrity(entry):
            logger.warning(
                "audit_integrity_mismatch",
                extra={"seq": entry.seq, "entry_id": str(entry.entry_id)},
            )
            entry = replace(entry, integrity_valid=False)
        return entry

    def validate_integrity(self, entry: AuditEntry) -> bool:
        return validate_integrity(entry)

    def validate_chain(self) -> AuditChainReport:
        """Recompute every hash and check every prev_hash link, in seq order."""
        rows = self._session.execute(
            select(ApprovalAuditLogModel).order_by(ApprovalAuditLogModel.seq)
        ).scalars().all()

        tampered: list[UUID] = []
        broken: list[UUID] = []
        prev_hash: str | None = None
        for row in rows:
            entry = row.to_dto()
            if not validate_integrity(entry):
                tampered.append(entry.entry_id)
            if entry.prev_hash != prev_hash:
                broken.append(entry.entry_id)
            prev_hash = entry.integrity_hash

        report = AuditChainReport(
            is_valid=not tampered and not broken,
            entries_checked=len(rows),
            tampered_entry_ids=tuple(tampered),
            broken_links=tuple(broken),
        )
        if report.is_valid:
            logger.info("audit_chain_valid", extra={"entry_count": len(rows)})
        else:
            logger.critical(
                "audit_chain_broken",
                extra={
                    "tampered_count": len(tampered),
                    "broken_link_count": len(broken),
                },
            )
        return report

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _window(self, start: datetime | None, end: datetime | None):
        stmt = select(ApprovalAuditLogModel)
        if start is not None:
            stmt = stmt.where(ApprovalAuditLogModel.timestamp >= start)
        if end is not None:
            stmt = stmt.where(ApprovalAuditLogModel.timestamp <= end)
        return stmt

    def get_entry(self, entry_id: UUID) -> AuditEntry | None:
        row = self._session.get(ApprovalAuditLogModel, entry_id)
        return self._to_entry(row) if row is not None else None

    def get_workflow_trail(self, workflow_id: UUID) -> list[AuditEntry]:
        """All entries of one workflow, oldest first."""
        rows = self._session.execute(
            select(ApprovalAuditLogModel)
            .where(ApprovalAuditLogModel.workflow_id == workflow_id)
            .order_by(ApprovalAuditLogModel.seq)
        ).scalars().all()
        return [self._to_entry(r) for r in rows]

    def get_events_by_type(
        self,
        workflow_id: UUID,
        event: AuditEventKind,
    ) -> list[AuditEntry]:
        rows = self._session.execute(
            select(ApprovalAuditLogModel)
            .where(
                ApprovalAuditLogModel.workflow_id == workflow_id,
                ApprovalAuditLogModel.event == AuditEventKind(event).value,
            )
            .order_by(ApprovalAuditLogModel.seq)
        ).scalars().all()
        return [self._to_entry(r) for r in rows]

    def get_actor_trail(self, actor_id: str, limit: int = 100) -> list[AuditEntry]:
        """Most recent entries by ``actor_id``, newest first."""
        rows = self._session.execute(
            select(ApprovalAuditLogModel)
            .where(ApprovalAuditLogModel.actor_id == actor_id)
            .order_by(ApprovalAuditLogModel.seq.desc())
            .limit(limit)
        ).scalars().all()
        return [self._to_entry(r) for r in rows]

    def count_archivable_entries(self, retention_date: datetime) -> int:
        """Entries older than ``retention_date``."""
        return self._session.execute(
            select(func.count())
            .select_from(ApprovalAuditLogModel)
            .where(ApprovalAuditLogModel.timestamp < retention_date)
        ).scalar_one()

    def query_audit_trail_paginated(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        page_size: int = 50,
        offset: int = 0,
        workflow_id: UUID | None = None,
    ) -> AuditPage:
        """
        Offset-paginated read, newest first (timestamp desc, seq desc).

        ``page_size`` is capped at the ledger's ``max_page_size``.

        Raises:
            ValueError: page_size < 1 or offset < 0.
        """
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        if offset < 0:
            raise ValueError(f"offset must not be negative, got {offset}")
        page_size = min(page_size, self._max_page_size)

        stmt = self._window(start, end)
        if workflow_id is not None:
            stmt = stmt.where(ApprovalAuditLogModel.workflow_id == workflow_id)

        total = self._session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        rows = self._session.execute(
            stmt.order_by(
                ApprovalAuditLogModel.timestamp.desc(),
                ApprovalAuditLogModel.seq.desc(),
            )
            .limit(page_size)
            .offset(offset)
        ).scalars().all()

        return AuditPage(
            total_count=total,
            page_size=page_size,
            offset=offset,
            entries=tuple(self._to_entry(r) for r in rows),
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def _entries_between(self, start: datetime | None, end: datetime | None) -> list[AuditEntry]:
        rows = self._session.execute(
            self._window(start, end).order_by(ApprovalAuditLogModel.seq)
        ).scalars().all()
        return [self._to_entry(r) for r in rows]

    def generate_audit_stats(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AuditStats:
        return summarize_entries(self._entries_between(start, end))

    def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        """Counts by event type and actor over ``[start, end]``, plus tampered entries."""
        if start > end:
            raise ValueError("start must not be after end")
        entries = self._entries_between(start, end)
        stats = summarize_entries(entries)
        report = ComplianceReport(
            period_start=start,
            period_end=end,
            total_events=stats.total_events,
            emergency_bypass_count=stats.by_event_type.get(
                AuditEventKind.EMERGENCY_BYPASS.value, 0,
            ),
            by_event_type=stats.by_event_type,
            by_actor=stats.by_actor,
            tampered_entry_ids=tuple(e.entry_id for e in entries if not e.integrity_valid),
        )
        logger.info(
            "compliance_report_generated",
            extra={
                "total_events": report.total_events,
                "emergency_bypass_count": report.emergency_bypass_count,
                "tampered_count": len(report.tampered_entry_ids),
            },
        )
        return report

    def detect_suspicious_patterns(
        self,
        window_hours: int | None = None,
    ) -> list[SuspiciousActivity]:
        """Actors with more than one EMERGENCY_BYPASS in the trailing window."""
        hours = window_hours if window_hours is not None else self._suspicious_window_hours
        now = self._clock.now()
        rows = self._session.execute(
            self._window(now - timedelta(hours=hours), now)
            .where(ApprovalAuditLogModel.event == AuditEventKind.EMERGENCY_BYPASS.value)
            .order_by(ApprovalAuditLogModel.seq)
        ).scalars().all()
        findings = detect_bypass_bursts(
            [self._to_entry(r) for r in rows], now=now, window_hours=hours,
        )
        for finding in findings:
            logger.warning(
                "suspicious_activity_detected",
                extra={
                    "pattern": finding.pattern,
                    "suspect_actor_id": finding.actor_id,
                    "count": finding.count,
                },
            )
        return findings

    def calculate_approval_velocity(self, owner_id: str | None = None) -> ApprovalVelocity:
        """Mean/median hours from workflow creation to completion."""
        stmt = select(ApprovalWorkflowModel.created_at, ApprovalWorkflowModel.completed_at).where(
            ApprovalWorkflowModel.completed_at.is_not(None)
        )
        if owner_id is not None:
            stmt = stmt.where(ApprovalWorkflowModel.owner_id == owner_id)
        pairs = [(created, completed) for created, completed in self._session.execute(stmt)]
        return completion_velocity(pairs)

    def export_audit_data(
        self,
        start: datetime,
        end: datetime,
        format: str = "json",
    ) -> AuditExportBundle:
        """
        Checksummed export for external compliance tooling.

        ``integrity_checksum`` is the SHA-256 of the canonical JSON of the
        exported entry list, independent of the rendering ``format``.

        Raises:
            ValueError: unsupported ``format``.
        """
        fmt = format.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {format!r}")

        entries = tuple(to_jsonable(e.to_export_dict()) for e in self._entries_between(start, end))
        checksum = hash_payload(list(entries))

        if fmt == "json":
            content = canonicalize_json(list(entries))
        else:
            content = _render_csv(entries)

        bundle = AuditExportBundle(
            format=fmt,
            entries=entries,
            exported_at=self._clock.now(),
            integrity_checksum=checksum,
            period_start=start,
            period_end=end,
            content=content,
        )
        logger.info(
            "audit_data_exported",
            extra={"format": fmt, "entry_count": len(entries), "checksum": checksum},
        )
        return bundle


_CSV_COLUMNS = (
    "seq", "id", "timestamp", "event", "workflow_id", "entity_type", "entity_id",
    "actor_id", "actor_role", "owner_id", "ip_address", "user_agent", "session_id",
    "old_values", "new_values", "prev_hash", "integrity_hash", "integrity_valid",
)


def _render_csv(entries: tuple[dict[str, Any], ...]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=_CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for entry in entries:
        row = dict(entry)
        for key in ("old_values", "new_values"):
            row[key] = canonicalize_json(row[key]) if row[key] is not None else ""
        writer.writerow({k: row.get(k) for k in _CSV_COLUMNS})
    return buffer.getvalue()
