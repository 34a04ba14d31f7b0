"""Database layer - engine, base classes, column types, immutability."""

from erp_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from erp_kernel.db.engine import (
    create_engine_from_url,
    create_session_factory,
    create_tables,
    drop_tables,
    session_scope,
)
from erp_kernel.db.types import Currency, EnumText, MinorUnits, Quantity

__all__ = [
    "create_engine_from_url",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "session_scope",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "Currency",
    "EnumText",
    "MinorUnits",
    "Quantity",
]
