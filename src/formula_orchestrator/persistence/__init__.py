"""
formula-orchestrator — persistence layer

File: src/formula_orchestrator/persistence/__init__.py

Purpose
- Record store implementations and repositories for formula definitions and
  remote bundle cache entries.

Non-functional requirements
- SQLite-first; any engine with get/put/delete/range-by-prefix semantics fits.
"""

from formula_orchestrator.persistence.repositories import BundleEntryRepository, FormulaRepository
from formula_orchestrator.persistence.store import (
    InMemoryRecordStore,
    RecordStore,
    RecordStoreError,
    SQLiteRecordStore,
)

__all__ = [
    "BundleEntryRepository",
    "FormulaRepository",
    "InMemoryRecordStore",
    "RecordStore",
    "RecordStoreError",
    "SQLiteRecordStore",
]
