"""Unit tests for atomic file output and deterministic digests."""

from __future__ import annotations

from pathlib import Path

from policy_orchestrator.utils.fs import atomic_write
from policy_orchestrator.utils.hashing import sha256_file, sha256_json, sha256_text


def test_atomic_write_creates_parents_and_replaces(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "dir" / "report.json"

    written = atomic_write(target, "first\n")
    atomic_write(target, "second\n")

    assert written == target
    assert target.read_text(encoding="utf-8") == "second\n"
    assert [p.name for p in target.parent.iterdir()] == ["report.json"]


def test_sha256_json_ignores_key_order() -> None:
    assert sha256_json({"a": 1, "b": [1, 2]}) == sha256_json({"b": [1, 2], "a": 1})
    assert sha256_json({"a": 1}) != sha256_json({"a": 2})


def test_sha256_file_matches_text_digest(tmp_path: Path) -> None:
    path = tmp_path / "payload.txt"
    path.write_bytes("héllo".encode())

    assert sha256_file(path) == sha256_text("héllo")
    assert len(sha256_text("")) == 64
