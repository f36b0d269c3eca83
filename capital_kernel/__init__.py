"""
Capital Kernel - event-sourced calculation ledger

An append-only calculation ledger with:
- Immutable calculation events grouped by correlation id
- Staged pipeline orchestration (STARTED -> INPUTS_CAPTURED -> COMPUTED -> COMPLETED)
- Self-contained input snapshots for exact replay
- Decimal-only arithmetic for every monetary and percentage value
"""

__version__ = "0.1.0"
