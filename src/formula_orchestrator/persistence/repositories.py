"""Repository helpers mapping domain records onto a ``RecordStore``."""

from __future__ import annotations

from typing import TYPE_CHECKING

from formula_orchestrator.constants import BUNDLE_NAMESPACE, FORMULA_NAMESPACE
from formula_orchestrator.domain.models import (
    FormulaDefinition,
    RemoteBundleCacheEntry,
    bundle_entry_id,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from formula_orchestrator.persistence.store import RecordStore


class FormulaRepository:
    """Parsed formula definitions keyed by ``id``."""

    def __init__(self, store: RecordStore, *, namespace: str = FORMULA_NAMESPACE) -> None:
        self._store = store
        self._namespace = namespace

    def save(self, formula: FormulaDefinition) -> None:
        self._store.put(self._namespace, formula.id, formula.to_dict())

    def save_many(self, formulas: Iterable[FormulaDefinition]) -> int:
        count = 0
        for formula in formulas:
            self.save(formula)
            count += 1
        return count

    def get(self, formula_id: str) -> FormulaDefinition | None:
        record = self._store.get(self._namespace, formula_id)
        return None if record is None else FormulaDefinition.from_dict(record)

    def list(self, *, prefix: str = "") -> list[FormulaDefinition]:
        return [
            FormulaDefinition.from_dict(record)
            for _, record in self._store.scan(self._namespace, prefix)
        ]

    def delete(self, formula_id: str) -> bool:
        return self._store.delete(self._namespace, formula_id)

    def clear(self) -> int:
        return self._store.clear(self._namespace)


class BundleEntryRepository:
    """Remote bundle cache entries keyed by ``formula_id:version``.

    Only the cache manager writes through this repository.
    """

    def __init__(self, store: RecordStore, *, namespace: str = BUNDLE_NAMESPACE) -> None:
        self._store = store
        self._namespace = namespace

    def get(self, formula_id: str, version: str) -> RemoteBundleCacheEntry | None:
        record = self._store.get(self._namespace, bundle_entry_id(formula_id, version))
        return None if record is None else RemoteBundleCacheEntry.from_dict(record)

    def put(self, entry: RemoteBundleCacheEntry) -> None:
        self._store.put(self._namespace, entry.id, entry.to_dict())

    def delete(self, formula_id: str, version: str) -> bool:
        return self._store.delete(self._namespace, bundle_entry_id(formula_id, version))

    def list_for_formula(self, formula_id: str) -> list[RemoteBundleCacheEntry]:
        entries = (
            RemoteBundleCacheEntry.from_dict(record)
            for _, record in self._store.scan(self._namespace, f"{formula_id}:")
        )
        # The key prefix also matches ids that merely start with ``formula_id:``.
        return [entry for entry in entries if entry.formula_id == formula_id]

    def list_all(self) -> list[RemoteBundleCacheEntry]:
        return [
            RemoteBundleCacheEntry.from_dict(record)
            for _, record in self._store.scan(self._namespace)
        ]

    def clear(self) -> int:
        return self._store.clear(self._namespace)


__all__ = ["BundleEntryRepository", "FormulaRepository"]
