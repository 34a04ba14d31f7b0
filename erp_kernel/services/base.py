"""
BaseService -- common constructor for every stateful engine service.

Responsibility:
    Holds the caller's ``Session`` and the injected ``Clock``.  Services use
    ``session.flush()`` and never ``session.commit()``; the caller (an
    ``ErpContext`` session scope, a scheduler tick, or the test harness)
    owns commit and rollback.

Architecture position:
    Kernel > Services.  Every stateful service in erp_kernel, erp_automation
    and erp_services extends this class.
"""

from abc import ABC
from uuid import UUID

from sqlalchemy.orm import Session

from erp_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for stateful services.

    Contract:
        Accepts a Session and an optional Clock.  Writes are flushed inside
        the caller's transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    @property
    def session(self) -> Session:
        return self._session

    def _stamp_new(self, row, actor_id: UUID | None = None) -> None:
        row.stamp_created(self._clock.now(), actor_id)

    def _stamp_changed(self, row, actor_id: UUID | None = None) -> None:
        row.stamp_updated(self._clock.now(), actor_id)
