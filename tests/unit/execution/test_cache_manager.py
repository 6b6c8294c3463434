"""Two-tier bundle cache: dedup, integrity, persistence, pruning."""

from __future__ import annotations

import asyncio
import decimal
from collections.abc import Mapping
from itertools import count
from typing import Any

import pytest

from formula_orchestrator.domain.models import RemoteBundleCacheEntry
from formula_orchestrator.errors import NetworkError
from formula_orchestrator.execution.cache_manager import BundleCacheManager, memory_key
from formula_orchestrator.execution.fetch import FetchResponse
from formula_orchestrator.persistence.repositories import BundleEntryRepository
from formula_orchestrator.persistence.store import InMemoryRecordStore, RecordStoreError
from formula_orchestrator.sandbox.compiler import CompilerBackend, SandboxCompiler
from formula_orchestrator.utils.hashing import integrity_hash

BUNDLE_URL = "https://bundles.example.test/funding.py"
BUNDLE_SOURCE = "def funding_fee(size, rate):\n    return size * rate\n"


class CountingFetcher:
    def __init__(self, bodies: Mapping[str, str] | None = None, *, delay: float = 0.0) -> None:
        self.bodies = dict(bodies) if bodies is not None else {BUNDLE_URL: BUNDLE_SOURCE}
        self.delay = delay
        self.calls: list[str] = []

    async def fetch(self, url: str) -> FetchResponse:
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        body = self.bodies.get(url)
        if body is None:
            raise NetworkError("fetch returned HTTP 404", url=url, status=404)
        return FetchResponse(status=200, text=body)


class FailingPutStore(InMemoryRecordStore):
    def put(self, namespace: str, key: str, record: Mapping[str, Any]) -> None:
        raise RecordStoreError("disk full")


def _clock(start: int = 1_000) -> Any:
    ticks = count(start)
    return lambda: float(next(ticks))


def _manager(store: InMemoryRecordStore, fetcher: CountingFetcher, **kwargs: Any) -> BundleCacheManager:
    return BundleCacheManager(store, fetcher, SandboxCompiler(CompilerBackend()), **kwargs)


async def test_concurrent_loads_fetch_once() -> None:
    fetcher = CountingFetcher(delay=0.02)
    manager = _manager(InMemoryRecordStore(), fetcher)

    functions = await asyncio.gather(
        *(manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0") for _ in range(10))
    )

    assert fetcher.calls == [BUNDLE_URL]
    assert all(function(100, 0.01) == pytest.approx(1.0) for function in functions)


async def test_memory_hit_skips_store_and_network() -> None:
    fetcher = CountingFetcher()
    manager = _manager(InMemoryRecordStore(), fetcher)

    first = await manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0")
    second = await manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0")

    assert first is second
    assert len(fetcher.calls) == 1


async def test_persisted_entry_is_reused_by_a_new_manager() -> None:
    store = InMemoryRecordStore()
    await _manager(store, CountingFetcher(), clock=_clock()).get_or_load(
        BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0"
    )

    entry = BundleEntryRepository(store).get("funding_fee", "1.0.0")
    assert entry is not None
    assert entry.integrity_hash == integrity_hash(BUNDLE_SOURCE)
    assert entry.fetched_at == 1_000.0
    assert entry.function_name == "funding_fee"

    fresh_fetcher = CountingFetcher()
    function = await _manager(store, fresh_fetcher).get_or_load(
        BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0"
    )
    assert function(10, 0.5) == 5.0
    assert fresh_fetcher.calls == []


async def test_corrupted_entry_is_refetched_and_replaced() -> None:
    store = InMemoryRecordStore()
    entries = BundleEntryRepository(store)
    entries.put(
        RemoteBundleCacheEntry(
            formula_id="funding_fee",
            version="1.0.0",
            source_url=BUNDLE_URL,
            source_text="def funding_fee(size, rate):\n    return 0\n",
            function_name="funding_fee",
            fetched_at=1.0,
            integrity_hash=integrity_hash(BUNDLE_SOURCE),
        )
    )
    fetcher = CountingFetcher()

    function = await _manager(store, fetcher).get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0")

    assert function(10, 0.5) == 5.0
    assert fetcher.calls == [BUNDLE_URL]
    repaired = entries.get("funding_fee", "1.0.0")
    assert repaired is not None
    assert repaired.source_text == BUNDLE_SOURCE


async def test_entry_from_a_different_url_is_refetched() -> None:
    store = InMemoryRecordStore()
    other_url = "https://mirror.example.test/funding.py"
    await _manager(store, CountingFetcher({other_url: BUNDLE_SOURCE})).get_or_load(
        other_url, "funding_fee", "funding_fee", "1.0.0"
    )

    fetcher = CountingFetcher()
    await _manager(store, fetcher).get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0")
    assert fetcher.calls == [BUNDLE_URL]


async def test_network_failure_propagates_and_nothing_is_cached() -> None:
    store = InMemoryRecordStore()
    manager = _manager(store, CountingFetcher({}))
    with pytest.raises(NetworkError):
        await manager.get_or_load(BUNDLE_URL, None, "funding_fee", "1.0.0")
    assert not await manager.has_version("funding_fee", "1.0.0")
    assert (await manager.stats()).entry_count == 0


async def test_persist_failure_is_best_effort() -> None:
    fetcher = CountingFetcher()
    manager = _manager(FailingPutStore(), fetcher)
    function = await manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0")
    assert function(2, 3) == 6
    assert (await manager.stats()).entry_count == 0


async def test_memory_entries_are_keyed_by_allow_list() -> None:
    fetcher = CountingFetcher()
    manager = _manager(InMemoryRecordStore(), fetcher)

    plain = await manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0")
    with_decimal = await manager.get_or_load(
        BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0", {"decimal": decimal}
    )

    assert plain is not with_decimal
    assert len(fetcher.calls) == 1
    assert (await manager.stats()).memory_entries == 2
    assert memory_key("funding_fee", "1.0.0", None) == "funding_fee:1.0.0:none"
    assert memory_key("funding_fee", "1.0.0", {"decimal": decimal}) == "funding_fee:1.0.0:decimal"


async def test_prune_keeps_latest_versions_by_fetch_time() -> None:
    store = InMemoryRecordStore()
    manager = _manager(store, CountingFetcher(), clock=_clock())
    for minor in range(5):
        await manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", f"1.{minor}.0")

    assert await manager.list_versions("funding_fee") == ["1.0.0", "1.1.0", "1.2.0", "1.3.0", "1.4.0"]

    removed = await manager.prune_versions("funding_fee", keep_latest=3)

    assert removed == 2
    assert await manager.list_versions("funding_fee") == ["1.2.0", "1.3.0", "1.4.0"]
    assert await manager.latest_version("funding_fee") == "1.4.0"
    assert not await manager.has_version("funding_fee", "1.0.0")
    assert (await manager.stats()).memory_entries == 3
    assert await manager.prune_versions("funding_fee", keep_latest=3) == 0


async def test_prune_rejects_negative_keep() -> None:
    manager = _manager(InMemoryRecordStore(), CountingFetcher())
    with pytest.raises(ValueError):
        await manager.prune_versions("funding_fee", keep_latest=-1)


async def test_listing_ignores_formulas_sharing_an_id_prefix() -> None:
    bodies = {BUNDLE_URL: BUNDLE_SOURCE}
    manager = _manager(InMemoryRecordStore(), CountingFetcher(bodies), clock=_clock())
    await manager.get_or_load(BUNDLE_URL, None, "fee", "1")
    await manager.get_or_load(BUNDLE_URL, None, "fee:extra", "1")

    assert await manager.list_versions("fee") == ["1"]


async def test_clear_all_and_stats() -> None:
    manager = _manager(InMemoryRecordStore(), CountingFetcher(), clock=_clock())
    await manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "1.0.0")
    await manager.get_or_load(BUNDLE_URL, "funding_fee", "funding_fee", "2.0.0")

    stats = await manager.stats()
    assert stats.entry_count == 2
    assert stats.total_bytes == 2 * len(BUNDLE_SOURCE.encode("utf-8"))
    assert stats.in_flight == 0

    assert await manager.clear_all() == 2
    cleared = await manager.stats()
    assert (cleared.entry_count, cleared.memory_entries) == (0, 0)
    assert await manager.latest_version("funding_fee") is None
