"""Workflow ID generation and validation."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

WORKFLOW_ID_PREFIX: Final[str] = "wf"

# Workflow IDs may be user-supplied in definitions; generated ones are ``wf-<ulid>``.
_WORKFLOW_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_RandBytes = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {ts_ms}"
        )
    provider = secrets.token_bytes if randbytes is None else randbytes
    random_bytes = bytes(provider(ULID_RANDOM_BYTES))
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")
    return _encode_crockford_base32(value, ULID_LENGTH)


def generate_workflow_id(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    return f"{WORKFLOW_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_workflow_id(workflow_id: str) -> str:
    """Return the stripped ID or raise ``ValueError``."""
    if not isinstance(workflow_id, str):
        raise ValueError(f"workflow id must be a string, got {type(workflow_id).__name__}")
    candidate = workflow_id.strip()
    if not _WORKFLOW_ID_RE.fullmatch(candidate):
        raise ValueError(
            f"invalid workflow id {workflow_id!r}; expected letters, digits, '.', '_' or '-'"
        )
    return candidate


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if len(id_str) <= 8:
        return id_str
    return id_str[-8:]


def _encode_crockford_base32(value: int, length: int) -> str:
    mask = 0b11111
    chars = ["0"] * length
    working = value
    for index in range(length - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[working & mask]
        working >>= 5
    if working != 0:
        raise ValueError(f"value does not fit into {length} Crockford Base32 characters")
    return "".join(chars)


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "ULID_LENGTH",
    "WORKFLOW_ID_PREFIX",
    "generate_ulid",
    "generate_workflow_id",
    "short_id",
    "validate_workflow_id",
]
