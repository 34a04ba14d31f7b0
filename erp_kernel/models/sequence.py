"""
Sequence counter table.

Each row is a named sequence with its current value.  SequenceService locks
the row (``SELECT ... FOR UPDATE``) before incrementing it.
"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    # Sequence name (e.g., "journal_entry:2024")
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(nullable=False, default=0)
