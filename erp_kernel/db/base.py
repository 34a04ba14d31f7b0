"""
Module: erp_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, the type annotation map for consistent column
    types, and the TrackedBase mixin carrying the common entity envelope.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.

Invariants enforced:
    - UUID primary keys: every model inherits a uuid4-generated primary key.
    - Timezone-aware timestamps: UTCDateTime stores UTC and always loads
      aware datetimes, on every dialect (SQLite drops offsets natively).
    - Integer minor units: Python int maps to BigInteger.
    - Decimal precision: Decimal maps to Numeric(38, 9).  NEVER float.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, Date, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> lowercase hyphenated str.
        - process_result_value: str -> UUID on SELECT.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value if isinstance(value, PyUUID) else PyUUID(str(value)))
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """
    Timestamp normalized to UTC on write and returned timezone-aware.

    Naive datetimes are rejected on bind; every engine receives its time
    from an aware Clock.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - datetime maps to UTCDateTime, date to Date.
        - int maps to BigInteger (minor units, counters).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: UTCDateTime(),
        date: Date(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with the common entity envelope.

    Contract:
        created_at/updated_at are set by services from the injected Clock;
        the server default is only a fallback for rows written outside a
        service.  created_by_id and updated_by_id are optional principals.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    def stamp_created(self, now: datetime, actor_id: PyUUID | None = None) -> None:
        self.created_at = now
        self.updated_at = now
        self.created_by_id = actor_id

    def stamp_updated(self, now: datetime, actor_id: PyUUID | None = None) -> None:
        self.updated_at = now
        if actor_id is not None:
            self.updated_by_id = actor_id


UUID = PyUUID
