"""Deterministic SHA-256 digests for reports and workflow definitions."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import os

_READ_CHUNK_BYTES = 1024 * 1024


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return hashlib.sha256(text.encode(encoding)).hexdigest()


def sha256_json(payload: object) -> str:
    """Digest of the canonical JSON form of ``payload`` (sorted keys, compact)."""

    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return sha256_text(encoded)


def sha256_file(path: str | os.PathLike[str]) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        while chunk := handle.read(_READ_CHUNK_BYTES):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = ["sha256_file", "sha256_json", "sha256_text"]
