"""
formula-orchestrator — remote bundle cache manager

File: src/formula_orchestrator/execution/cache_manager.py

Purpose
- Hand the remote backend a ready-to-call function for a bundle URL, going
  through memory, the persistent store, and finally the network.

What is included in this file
- ``BundleCacheManager.get_or_load``: two-tier read path with integrity
  checking and single-flight fetch deduplication per ``formula_id:version``.
- Version management: ``prune_versions``, ``list_versions``,
  ``latest_version``, ``has_version``.
- Housekeeping: ``clear_all``, ``clear_memory``, ``stats``.

Functional requirements
- Memory entries are keyed by ``formula_id:version:<allow-list fingerprint>``.
- A stored entry whose integrity hash does not match its source is ignored
  and re-fetched; the mismatch is logged, never raised to callers.
- Persisting a fetched bundle is best-effort.
- This manager is the only writer of bundle records in the store.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from collections.abc import Callable, Mapping
from typing import Any

import structlog

from formula_orchestrator.constants import DEFAULT_KEEP_LATEST_VERSIONS
from formula_orchestrator.domain.models import CacheStats, RemoteBundleCacheEntry, bundle_entry_id
from formula_orchestrator.errors import CompilationError, IntegrityError
from formula_orchestrator.execution.fetch import Fetcher, ensure_success
from formula_orchestrator.persistence.repositories import BundleEntryRepository
from formula_orchestrator.persistence.store import RecordStore, RecordStoreError
from formula_orchestrator.sandbox.compiler import CompiledModule, SandboxCompiler
from formula_orchestrator.utils.concurrency import SingleFlight
from formula_orchestrator.utils.hashing import (
    allow_list_fingerprint,
    integrity_hash,
    verify_integrity,
)

_STORE_ERRORS = (RecordStoreError, sqlite3.Error, OSError, ValueError)


def memory_key(formula_id: str, version: str, allowed_modules: Mapping[str, object] | None) -> str:
    return f"{bundle_entry_id(formula_id, version)}:{allow_list_fingerprint(allowed_modules)}"


class BundleCacheManager:
    """Two-tier cache of remotely fetched, sandbox-compiled formula bundles."""

    def __init__(
        self,
        store: RecordStore,
        fetcher: Fetcher,
        compiler: SandboxCompiler,
        *,
        clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        self._entries = BundleEntryRepository(store)
        self._fetcher = fetcher
        self._compiler = compiler
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._memory: dict[str, Callable[..., Any]] = {}
        self._loads: SingleFlight[CompiledModule] = SingleFlight()

    async def get_or_load(
        self,
        source_url: str,
        function_name: str | None,
        formula_id: str,
        version: str,
        allowed_modules: Mapping[str, object] | None = None,
    ) -> Callable[..., Any]:
        key = memory_key(formula_id, version, allowed_modules)
        cached = self._memory.get(key)
        if cached is not None:
            return cached

        compiled = await self._loads.run(
            bundle_entry_id(formula_id, version),
            lambda: self._load_compiled(source_url, function_name, formula_id, version),
        )
        function = self._compiler.extract_function(compiled, function_name, allowed_modules)
        self._memory[key] = function
        return function

    async def _load_compiled(
        self, source_url: str, function_name: str | None, formula_id: str, version: str
    ) -> CompiledModule:
        cache_key = bundle_entry_id(formula_id, version)
        entry = await self._read_entry(formula_id, version)
        if entry is not None:
            try:
                self._check_entry(entry, source_url)
                compiled = await self._compiler.compile(entry.source_text, cache_key)
            except IntegrityError as exc:
                self._logger.warning(
                    "integrity_mismatch",
                    formula_id=formula_id,
                    version=version,
                    error=exc.message,
                )
            except CompilationError as exc:
                self._logger.warning(
                    "cached_bundle_compile_failed",
                    formula_id=formula_id,
                    version=version,
                    error=str(exc),
                )
            else:
                self._logger.debug("bundle_cache_hit", formula_id=formula_id, version=version)
                return compiled

        response = ensure_success(await self._fetcher.fetch(source_url), source_url)
        compiled = await self._compiler.compile(response.text, cache_key)
        fetched = RemoteBundleCacheEntry(
            formula_id=formula_id,
            version=version,
            source_url=source_url,
            source_text=response.text,
            function_name=function_name,
            fetched_at=self._clock(),
            integrity_hash=integrity_hash(response.text),
        )
        self._logger.info(
            "bundle_fetched",
            formula_id=formula_id,
            version=version,
            url=source_url,
            chars=len(response.text),
        )
        await self._persist(fetched)
        return compiled

    def _check_entry(self, entry: RemoteBundleCacheEntry, source_url: str) -> None:
        if not verify_integrity(entry.source_text, entry.integrity_hash):
            raise IntegrityError(
                "stored bundle source does not match its integrity hash",
                context={"entry": entry.id, "expected": entry.integrity_hash},
            )
        if entry.source_url != source_url:
            raise IntegrityError(
                "stored bundle was fetched from a different url",
                context={"entry": entry.id, "stored_url": entry.source_url},
            )

    async def _read_entry(self, formula_id: str, version: str) -> RemoteBundleCacheEntry | None:
        try:
            return await asyncio.to_thread(self._entries.get, formula_id, version)
        except _STORE_ERRORS as exc:
            self._logger.warning(
                "bundle_store_read_failed",
                formula_id=formula_id,
                version=version,
                error=str(exc),
            )
            return None

    async def _persist(self, entry: RemoteBundleCacheEntry) -> None:
        try:
            await asyncio.to_thread(self._entries.put, entry)
        except _STORE_ERRORS as exc:
            self._logger.warning("bundle_persist_failed", entry=entry.id, error=str(exc))

    async def prune_versions(
        self, formula_id: str, keep_latest: int = DEFAULT_KEEP_LATEST_VERSIONS
    ) -> int:
        """Delete all but the ``keep_latest`` most recently fetched versions."""

        if keep_latest < 0:
            raise ValueError("keep_latest must be >= 0")
        entries = await self._sorted_entries(formula_id)
        stale = entries[: max(len(entries) - keep_latest, 0)]
        for entry in stale:
            await asyncio.to_thread(self._entries.delete, entry.formula_id, entry.version)
            self._drop_memory(entry.id)
        if stale:
            self._logger.info(
                "bundle_versions_pruned",
                formula_id=formula_id,
                removed=[entry.version for entry in stale],
                kept=len(entries) - len(stale),
            )
        return len(stale)

    async def list_versions(self, formula_id: str) -> list[str]:
        """Stored versions, oldest fetch first."""

        return [entry.version for entry in await self._sorted_entries(formula_id)]

    async def latest_version(self, formula_id: str) -> str | None:
        versions = await self.list_versions(formula_id)
        return versions[-1] if versions else None

    async def has_version(self, formula_id: str, version: str) -> bool:
        entry = await asyncio.to_thread(self._entries.get, formula_id, version)
        return entry is not None

    async def clear_all(self) -> int:
        removed = await asyncio.to_thread(self._entries.clear)
        self.clear_memory()
        self._logger.info("bundle_cache_cleared", removed=removed)
        return removed

    def clear_memory(self) -> int:
        removed = len(self._memory)
        self._memory.clear()
        return removed

    async def stats(self) -> CacheStats:
        entries = await asyncio.to_thread(self._entries.list_all)
        return CacheStats(
            entry_count=len(entries),
            total_bytes=sum(len(entry.source_text.encode("utf-8")) for entry in entries),
            memory_entries=len(self._memory),
            in_flight=self._loads.in_flight,
        )

    async def _sorted_entries(self, formula_id: str) -> list[RemoteBundleCacheEntry]:
        entries = await asyncio.to_thread(self._entries.list_for_formula, formula_id)
        return sorted(entries, key=lambda entry: (entry.fetched_at, entry.version))

    def _drop_memory(self, entry_id: str) -> None:
        prefix = f"{entry_id}:"
        for key in [key for key in self._memory if key.startswith(prefix)]:
            del self._memory[key]


__all__ = ["BundleCacheManager", "memory_key"]
