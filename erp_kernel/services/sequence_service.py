"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing numbers for journal entry numbers and
    automation execution numbers.  Uses the ``sequence_counters`` table with
    row-level locking (``SELECT ... FOR UPDATE``) so that concurrent
    allocations are serialized.

Invariants enforced:
    - The locked counter row is the sole source of the next value; the
      aggregate-max-plus-one pattern is never used.
    - The increment is only visible after the caller's transaction commits.
      A rollback returns the value.

Failure modes:
    - IntegrityError on a concurrent first-use race is absorbed by a
      savepoint rollback and a re-read of the winner's row.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from erp_kernel.logging_config import get_logger
from erp_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Transactional named sequences.

    Usage:
        seq = SequenceService(session).next_value("journal_entry:2024")
    """

    JOURNAL_ENTRY = "journal_entry"
    WORKFLOW_EXECUTION = "workflow_execution"
    COST_ADJUSTMENT = "cost_adjustment"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Return the next value of ``sequence_name`` (always > 0).

        Postconditions:
            - The returned value is strictly greater than every value
              previously committed for this sequence.
            - The counter row stays locked until the transaction completes.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
