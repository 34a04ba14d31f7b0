"""
ERP Kernel

The shared substrate for the ERP engines plus the journaled ledger core:
- Transactional store access (SQLAlchemy sessions, row locks, savepoints)
- Injectable clock, identity, and in-process event bus
- Integer minor-unit money with half-even rounding
- Double-entry journal posting with period locks
- Multi-stage approval workflows
"""

__version__ = "0.1.0"
