"""
formula-orchestrator — hashing utilities

File: src/formula_orchestrator/utils/hashing.py

Purpose
- Fast deterministic integrity codes for cached bundle source text.
- Stable fingerprints for sandbox allow-lists.

Functional requirements
- The integrity code is a 31-multiplier rolling hash over code points,
  wrapped to 32 bits and rendered as 8 lower-case hex digits.
- It detects accidental corruption only; it is not tamper resistant.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Final

from formula_orchestrator.constants import NO_ALLOWED_MODULES_FINGERPRINT

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

_INTEGRITY_MULTIPLIER: Final[int] = 31
_UINT32_MASK: Final[int] = 0xFFFFFFFF
INTEGRITY_HASH_LENGTH: Final[int] = 8


def integrity_hash(text: str) -> str:
    """Return the fixed-width rolling integrity code for ``text``."""

    if not isinstance(text, str):
        raise TypeError(f"integrity_hash expects str, got {type(text).__name__}")
    value = 0
    for char in text:
        value = (value * _INTEGRITY_MULTIPLIER + ord(char)) & _UINT32_MASK
    return format(value, f"0{INTEGRITY_HASH_LENGTH}x")


def verify_integrity(text: str, expected: str) -> bool:
    return integrity_hash(text) == expected.strip().lower()


def allow_list_fingerprint(allowed: Mapping[str, object] | Iterable[str] | None) -> str:
    """Sorted allow-list keys joined by ``|``, or ``none`` when empty."""

    if allowed is None:
        return NO_ALLOWED_MODULES_FINGERPRINT
    keys = sorted(str(key) for key in allowed)
    if not keys:
        return NO_ALLOWED_MODULES_FINGERPRINT
    return "|".join(keys)


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest of ``text`` encoded with ``encoding``."""

    return hashlib.sha256(text.encode(encoding)).hexdigest()


__all__ = [
    "INTEGRITY_HASH_LENGTH",
    "allow_list_fingerprint",
    "integrity_hash",
    "sha256_text",
    "verify_integrity",
]
