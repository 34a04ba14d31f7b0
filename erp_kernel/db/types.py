"""
Module: erp_kernel.db.types
Responsibility: Annotated type aliases and column types shared by every model.
    Centralizes minor-unit money, quantity precision and
    the tagged enum column so that every engine persists identical shapes.
Architecture position: Kernel > DB.  May import from domain/codec.py and
    exceptions.py only.

Invariants enforced:
    - Monetary amounts are 64-bit integer minor units (``MinorUnits``).
    - Quantities and unit costs are Numeric(38, 9) decimals, never floats.
    - Enumerations are stored as their exact variant names (EnumText).
"""

from decimal import Decimal
from enum import Enum
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String
from sqlalchemy.types import TypeDecorator

from erp_kernel.domain.codec import EnumCodec

# Monetary amount in integer minor units (cents)
MinorUnits = Annotated[int, BigInteger]

# Quantity / unit cost with 9 decimal places
Quantity = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code (e.g., "USD", "EUR", "GBP")
Currency = Annotated[str, String(3)]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Long text for descriptions
LongText = Annotated[str, String(4000)]


class EnumText(TypeDecorator):
    """
    Enum column stored as the exact variant name.

    Contract:
        Binds members (or valid names) through the enum's ``EnumCodec`` and
        decodes stored names back to members on load.  Unknown names raise
        InvalidEnumValueError in both directions.
    """

    impl = String(40)
    cache_ok = True

    def __init__(self, enum_cls: type[Enum], length: int = 40):
        super().__init__(length)
        self.enum_cls = enum_cls
        self._codec = EnumCodec(enum_cls)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self._codec.encode(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self._codec.decode(value)

    def copy(self, **kw):
        return EnumText(self.enum_cls, self.impl.length)
