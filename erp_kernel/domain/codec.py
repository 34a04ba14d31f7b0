"""
Tagged-variant codec for persisted enumerations.

Every enumeration the engines persist or accept from callers is encoded as
the exact, case-sensitive textual name of its variant (``"Posted"``,
``"HardClose"``, ``"AnyApprover"``).  All encoding and decoding goes through
``EnumCodec`` so that call sites never compare raw strings.

Usage:
    codec = EnumCodec(JournalStatus)
    codec.encode(JournalStatus.POSTED)   # "Posted"
    codec.decode("Posted")               # JournalStatus.POSTED
    codec.decode("posted")               # InvalidEnumValueError
"""

from enum import Enum
from typing import Any, Generic, TypeVar

from erp_kernel.exceptions import InvalidEnumValueError

E = TypeVar("E", bound=Enum)


class EnumCodec(Generic[E]):
    """Encoder/decoder between an Enum and its variant names."""

    def __init__(self, enum_cls: type[E]):
        self.enum_cls = enum_cls
        self._by_name: dict[str, E] = {
            str(member.value): member for member in enum_cls
        }

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._by_name)

    def encode(self, member: E | str) -> str:
        """Encode a member (or an already-valid name) to its variant name."""
        if isinstance(member, self.enum_cls):
            return str(member.value)
        return str(self.decode(member).value)

    def decode(self, value: Any) -> E:
        """Decode a variant name; unknown or mistyped names are rejected."""
        if isinstance(value, self.enum_cls):
            return value
        if isinstance(value, str):
            member = self._by_name.get(value)
            if member is not None:
                return member
        raise InvalidEnumValueError(self.enum_cls.__name__, value)

    def decode_optional(self, value: Any) -> E | None:
        return None if value is None else self.decode(value)

    def __repr__(self) -> str:
        return f"EnumCodec({self.enum_cls.__name__})"


def decode_enum(enum_cls: type[E], value: Any) -> E:
    """Decode ``value`` into ``enum_cls`` through its codec."""
    return EnumCodec(enum_cls).decode(value)
