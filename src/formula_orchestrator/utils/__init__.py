"""Utility exports for hashing and concurrency helpers."""

from formula_orchestrator.utils.concurrency import OnceInitializer, SingleFlight
from formula_orchestrator.utils.hashing import (
    allow_list_fingerprint,
    integrity_hash,
    sha256_text,
    verify_integrity,
)

__all__ = [
    "OnceInitializer",
    "SingleFlight",
    "allow_list_fingerprint",
    "integrity_hash",
    "sha256_text",
    "verify_integrity",
]
