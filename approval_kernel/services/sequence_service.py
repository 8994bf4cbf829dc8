"""
SequenceService -- gap-free ordering numbers for the audit ledger.

Each named sequence is one row of ``sequence_counters``.  Allocation locks
that row (``SELECT ... FOR UPDATE``), increments it and flushes, so two
writers can never draw the same ``seq`` and the ledger's hash chain has a
total order that does not depend on clock resolution.

The increment belongs to the caller's transaction: a rolled-back audit
write (including a failed retry attempt inside a savepoint) hands its
number back.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SequenceService:
    """Allocates the next value of a named counter.  Never commits."""

    AUDIT_ENTRY = "approval_audit"

    def __init__(self, session: Session):
        self._session = session

    def _select(self, sequence_name: str, lock: bool):
        stmt = select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        if lock:
            # Reload the row even if it is in the identity map: a savepoint
            # rollback may have reverted the value underneath the session.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def _create(self, sequence_name: str) -> SequenceCounter | None:
        """Insert the counter at 1; None when another writer created it first."""
        savepoint = self._session.begin_nested()
        try:
            self._session.add(SequenceCounter(name=sequence_name, current_value=1))
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
            return None
        savepoint.commit()
        return self._select(sequence_name, lock=True)

    def next_value(self, sequence_name: str) -> int:
        """Strictly greater than every value previously returned for ``sequence_name``."""
        counter = self._select(sequence_name, lock=True)
        if counter is None:
            created = self._create(sequence_name)
            if created is not None:
                value = created.current_value
                logger.debug("sequence_allocated", extra={"sequence_name": sequence_name, "value": value})
                return value
            counter = self._select(sequence_name, lock=True)
            if counter is None:
                raise RuntimeError(f"sequence counter {sequence_name!r} vanished after a creation race")

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._select(sequence_name, lock=False)
        return counter.current_value if counter is not None else None
