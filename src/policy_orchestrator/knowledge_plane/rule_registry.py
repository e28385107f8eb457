"""
policy-orchestrator — rule registry

File: src/policy_orchestrator/knowledge_plane/rule_registry.py

Purpose
- Load, validate and index ``RuleDocument`` instances; answer applicability
  lookups ordered by scope precedence.

Document formats
- Markdown (``*.md``): a ``---`` fenced YAML front-matter header followed by an
  opaque human-readable body.
- YAML (``*.yaml`` / ``*.yml``): a single mapping; an optional ``body`` key
  carries the prose.

Header fields: ``id``, ``scope``, ``applies_to`` (required); ``directives``,
``checks`` (optional).

Concurrency
- ``match`` reads an immutable snapshot; ``register`` and ``reload`` build a new
  snapshot under an exclusive lock and swap it in atomically.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final, cast

import yaml

from policy_orchestrator.domain.errors import InvalidRuleError
from policy_orchestrator.domain.models import (
    Applicability,
    CheckSpec,
    JSONValue,
    RuleContext,
    RuleDocument,
    RuleScope,
)

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES: Final[frozenset[str]] = frozenset({".md", ".markdown"})
YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})
FRONT_MATTER_FENCE: Final[str] = "---"

_REQUIRED_HEADER_FIELDS: Final[frozenset[str]] = frozenset({"id", "scope", "applies_to"})
_ALLOWED_HEADER_FIELDS: Final[frozenset[str]] = _REQUIRED_HEADER_FIELDS | {
    "directives",
    "checks",
    "body",
}

# Directives with a known value shape; everything else is opaque JSON.
_NUMERIC_DIRECTIVES: Final[frozenset[str]] = frozenset(
    {"verification_threshold", "auto_proceed_max_files", "max_workers", "retries"}
)


@dataclass(frozen=True, slots=True)
class _Snapshot:
    documents: tuple[RuleDocument, ...] = ()

    def by_id(self) -> dict[str, RuleDocument]:
        return {doc.id: doc for doc in self.documents}


class RuleRegistry:
    """Process-wide index of rule documents.

    Registration order is remembered and breaks ties between documents of the
    same scope. A registry loaded from a directory can be rebuilt with
    ``reload()``.
    """

    __slots__ = ("_lock", "_snapshot", "_source_dir")

    def __init__(self, documents: Iterable[RuleDocument] = ()) -> None:
        self._lock = threading.Lock()
        self._snapshot = _Snapshot()
        self._source_dir: Path | None = None
        for document in documents:
            self.register(document)

    @classmethod
    def from_directory(cls, path: str | Path) -> RuleRegistry:
        registry = cls()
        registry.load_directory(path)
        return registry

    @property
    def documents(self) -> tuple[RuleDocument, ...]:
        """All documents in registration order."""

        return self._snapshot.documents

    @property
    def source_dir(self) -> Path | None:
        return self._source_dir

    def __len__(self) -> int:
        return len(self._snapshot.documents)

    def get(self, rule_id: str) -> RuleDocument | None:
        return self._snapshot.by_id().get(rule_id)

    def register(self, document: RuleDocument) -> RuleDocument:
        """Add ``document`` to the index or raise ``InvalidRuleError``."""

        with self._lock:
            self._snapshot = _Snapshot(_append_checked(self._snapshot.documents, document))
        logger.debug(
            "rule registered",
            extra={"rule_id": document.id, "scope": document.scope.value},
        )
        return document

    def match(self, context: RuleContext) -> list[RuleDocument]:
        """Return matching documents, highest precedence first, ties by registration order."""

        snapshot = self._snapshot
        indexed = [
            (index, doc)
            for index, doc in enumerate(snapshot.documents)
            if doc.applicability.matches(context)
        ]
        indexed.sort(key=lambda item: (-item[1].precedence, item[0]))
        return [doc for _, doc in indexed]

    def load_directory(self, path: str | Path) -> tuple[RuleDocument, ...]:
        """Register every rule document under ``path`` in lexical file order."""

        root = Path(path).expanduser()
        documents = load_rule_documents(root)
        with self._lock:
            merged = self._snapshot.documents
            for document in documents:
                merged = _append_checked(merged, document)
            self._snapshot = _Snapshot(merged)
            self._source_dir = root
        logger.info(
            "rule directory loaded",
            extra={"rules_dir": str(root), "document_count": len(documents)},
        )
        return documents

    def reload(self) -> tuple[RuleDocument, ...]:
        """Atomically rebuild the index from the directory it was loaded from.

        Documents registered programmatically are dropped. On any load error
        the previous snapshot stays in place.
        """

        if self._source_dir is None:
            raise RuntimeError("reload() requires a registry loaded with load_directory()")
        documents = load_rule_documents(self._source_dir)
        rebuilt: tuple[RuleDocument, ...] = ()
        for document in documents:
            rebuilt = _append_checked(rebuilt, document)
        with self._lock:
            self._snapshot = _Snapshot(rebuilt)
        logger.info(
            "rule directory reloaded",
            extra={"rules_dir": str(self._source_dir), "document_count": len(rebuilt)},
        )
        return rebuilt


def load_rule_documents(root: Path) -> tuple[RuleDocument, ...]:
    if not root.exists():
        raise FileNotFoundError(f"rule directory does not exist: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"rule path is not a directory: {root}")

    suffixes = MARKDOWN_SUFFIXES | YAML_SUFFIXES
    files = sorted(
        (item for item in root.rglob("*") if item.is_file() and item.suffix.lower() in suffixes),
        key=lambda item: item.relative_to(root).as_posix(),
    )
    return tuple(load_rule_file(item, relative_to=root) for item in files)


def load_rule_file(path: Path, *, relative_to: Path | None = None) -> RuleDocument:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidRuleError(f"unable to read rule document {path}: {exc}") from exc
    source = path.relative_to(relative_to).as_posix() if relative_to is not None else str(path)
    if path.suffix.lower() in MARKDOWN_SUFFIXES:
        return parse_markdown_rule(text, source=source)
    return parse_yaml_rule(text, source=source)


def parse_markdown_rule(text: str, *, source: str = "<memory>") -> RuleDocument:
    """Parse a Markdown document with a fenced YAML front-matter header."""

    header_text, body = split_front_matter(text, source=source)
    header = _load_yaml_mapping(header_text, source=source)
    if "body" in header:
        raise InvalidRuleError(f"{source}: 'body' is not a header field in Markdown documents")
    return parse_rule_mapping(header, body=body.strip("\n"), source=source)


def parse_yaml_rule(text: str, *, source: str = "<memory>") -> RuleDocument:
    payload = _load_yaml_mapping(text, source=source)
    body = payload.get("body", "")
    if not isinstance(body, str):
        raise InvalidRuleError(f"{source}: body must be a string")
    return parse_rule_mapping(payload, body=body, source=source)


def split_front_matter(text: str, *, source: str = "<memory>") -> tuple[str, str]:
    lines = text.lstrip("\ufeff").splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONT_MATTER_FENCE:
        raise InvalidRuleError(f"{source}: missing '---' front-matter header")
    for index in range(1, len(lines)):
        if lines[index].strip() == FRONT_MATTER_FENCE:
            return "".join(lines[1:index]), "".join(lines[index + 1 :])
    raise InvalidRuleError(f"{source}: unterminated front-matter header")


def parse_rule_mapping(
    payload: Mapping[str, object],
    *,
    body: str = "",
    source: str = "<memory>",
) -> RuleDocument:
    """Build a validated ``RuleDocument`` from a decoded header mapping."""

    raw_id = payload.get("id")
    rule_id = raw_id.strip() if isinstance(raw_id, str) and raw_id.strip() else None

    keys = set(payload)
    missing = sorted(_REQUIRED_HEADER_FIELDS - keys)
    if missing:
        raise InvalidRuleError(f"{source}: missing required fields: {missing}", rule_id=rule_id)
    unknown = sorted(keys - _ALLOWED_HEADER_FIELDS)
    if unknown:
        raise InvalidRuleError(
            f"{source}: unknown fields {unknown}; allowed fields: {sorted(_ALLOWED_HEADER_FIELDS)}",
            rule_id=rule_id,
        )

    try:
        applicability = Applicability.from_mapping(payload["applies_to"], f"{source}.applies_to")
        directives = _parse_directives(payload.get("directives"), f"{source}.directives")
        checks = _parse_checks(payload.get("checks"), f"{source}.checks")
        document = RuleDocument(
            id=cast("str", payload["id"]),
            scope=cast("RuleScope", payload["scope"]),
            applicability=applicability,
            directives=directives,
            checks=checks,
            body=body,
            source_path=source,
        )
    except ValueError as exc:
        raise InvalidRuleError(str(exc), rule_id=rule_id) from exc
    return document


def validate_document(document: RuleDocument) -> None:
    """Raise ``InvalidRuleError`` for documents that can never be resolved."""

    if document.applicability.is_empty:
        raise InvalidRuleError("applicability predicate must not be empty", rule_id=document.id)
    for key, value in document.directives:
        problem = directive_value_problem(key, value)
        if problem is not None:
            raise InvalidRuleError(f"directive {key!r}: {problem}", rule_id=document.id)


def directive_value_problem(key: str, value: JSONValue) -> str | None:
    """Return why ``value`` is unusable for a well-known directive ``key``."""

    if key == "timeout":
        try:
            parse_duration_seconds(value)
        except ValueError as exc:
            return str(exc)
        return None
    if key in _NUMERIC_DIRECTIVES:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return "must be a non-negative number"
        if key == "verification_threshold" and value > 100:
            return "must be <= 100"
        return None
    if key == "weights":
        if not isinstance(value, dict):
            return "must be a mapping of category to weight"
        for category, weight in value.items():
            if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
                return f"weight for {category!r} must be a non-negative number"
    return None


def parse_duration_seconds(value: object) -> float:
    """Parse ``10``, ``10.5``, ``"10s"``, ``"500ms"`` or ``"2m"`` into seconds."""

    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '10s'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        multiplier = 1.0
        for suffix, factor in (("ms", 0.001), ("s", 1.0), ("m", 60.0)):
            if text.endswith(suffix):
                text = text[: -len(suffix)].strip()
                multiplier = factor
                break
        try:
            seconds = float(text) * multiplier
        except ValueError:
            raise ValueError(f"invalid duration {value!r}") from None
    else:
        raise ValueError("duration must be a number or a string like '10s'")
    if seconds <= 0:
        raise ValueError("duration must be > 0")
    return seconds


def _append_checked(
    existing: Sequence[RuleDocument], document: RuleDocument
) -> tuple[RuleDocument, ...]:
    validate_document(document)
    for other in existing:
        if other.id == document.id:
            raise InvalidRuleError(
                f"duplicate rule id (first seen in {other.source_path or '<memory>'})",
                rule_id=document.id,
            )
    if document.scope is RuleScope.PROJECT:
        keys = set(document.directive_keys)
        for other in existing:
            if other.scope is not RuleScope.PROJECT:
                continue
            if not other.applicability.overlaps(document.applicability):
                continue
            shared = sorted(keys.intersection(other.directive_keys))
            if shared:
                raise InvalidRuleError(
                    f"project-scope conflict with {other.id!r} on directive keys {shared}",
                    rule_id=document.id,
                )
    return (*existing, document)


def _parse_directives(value: object, path: str) -> tuple[tuple[str, JSONValue], ...]:
    if value is None:
        return ()
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected mapping, got {type(value).__name__}")
    parsed: list[tuple[str, JSONValue]] = []
    for key, item in value.items():
        if not isinstance(key, str):
            raise ValueError(f"{path}: keys must be strings, got {type(key).__name__}")
        parsed.append((key, cast("JSONValue", item)))
    return tuple(parsed)


def _parse_checks(value: object, path: str) -> tuple[CheckSpec, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"{path}: expected list, got {type(value).__name__}")
    return tuple(
        CheckSpec.from_mapping(item, f"{path}[{index}]") for index, item in enumerate(value)
    )


def _load_yaml_mapping(text: str, *, source: str) -> dict[str, object]:
    try:
        loaded = cast("object", yaml.safe_load(text))
    except yaml.YAMLError as exc:
        raise InvalidRuleError(f"{source}: invalid YAML ({exc})") from exc
    if not isinstance(loaded, Mapping):
        raise InvalidRuleError(
            f"{source}: expected a YAML mapping header, got {type(loaded).__name__}"
        )
    parsed: dict[str, object] = {}
    for key, item in loaded.items():
        if not isinstance(key, str):
            raise InvalidRuleError(f"{source}: header keys must be strings")
        parsed[key] = item
    return parsed


__all__ = [
    "RuleRegistry",
    "directive_value_problem",
    "load_rule_documents",
    "load_rule_file",
    "parse_duration_seconds",
    "parse_markdown_rule",
    "parse_rule_mapping",
    "parse_yaml_rule",
    "split_front_matter",
    "validate_document",
]
