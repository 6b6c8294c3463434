"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

from formula_orchestrator.domain.models import (
    BaseType,
    CreationKind,
    FormulaDefinition,
    InputSpec,
    OutputSpec,
    RemoteBundleCacheEntry,
    TypeModel,
)
from formula_orchestrator.utils.hashing import integrity_hash

BUNDLE_SOURCE = "def funding_fee(size, rate):\n    return size * rate\n"


def make_formula(formula_id: str = "funding_fee", *, version: str = "1.0.0") -> FormulaDefinition:
    number = TypeModel.primitive(BaseType.NUMBER)
    return FormulaDefinition(
        id=formula_id,
        name=formula_id.replace("_", " ").title(),
        version=version,
        inputs=(
            InputSpec(key="size", base_type=BaseType.NUMBER, type_model=number, unit="USD"),
            InputSpec(key="rate", base_type=BaseType.NUMBER, type_model=number, default=0.0001),
        ),
        outputs=(OutputSpec.result(number),),
        source_text=BUNDLE_SOURCE,
        creation_kind=CreationKind.USER_AUTHORED,
    )


def make_bundle_entry(
    formula_id: str = "funding_fee",
    version: str = "1.0.0",
    *,
    fetched_at: float = 1_700_000_000.0,
    source_text: str = BUNDLE_SOURCE,
) -> RemoteBundleCacheEntry:
    return RemoteBundleCacheEntry(
        formula_id=formula_id,
        version=version,
        source_url=f"https://bundles.example.test/{formula_id}.py",
        source_text=source_text,
        function_name=formula_id,
        fetched_at=fetched_at,
        integrity_hash=integrity_hash(source_text),
    )
