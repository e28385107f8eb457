"""
policy-orchestrator — workflow definitions

File: src/policy_orchestrator/control_plane/definition.py

Purpose
- Parse a YAML workflow definition into a ``WorkflowDefinition``.

Document shape::

    workflow_id: wf-...        # optional; generated when absent
    project: billing           # optional
    frameworks: [django]
    files: [src/app.py]        # extra touched files not owned by a task
    tasks:
      - id: fix-null-check
        description: Guard against a missing invoice total
        category: bugfix
        files: [src/app.py]
        affected_file_count: 1   # optional; defaults to len(files)
        command: make fix        # optional; a string is split like a shell would

Every error is a ``WorkflowDefinitionError`` naming the offending field path.
"""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from policy_orchestrator.domain.errors import WorkflowDefinitionError
from policy_orchestrator.domain.ids import validate_workflow_id
from policy_orchestrator.domain.models import Task
from policy_orchestrator.utils.hashing import sha256_text

_ALLOWED_KEYS = frozenset({"workflow_id", "project", "frameworks", "files", "tasks"})
_TASK_KEYS = frozenset(
    {"id", "description", "category", "files", "affected_file_count", "command"}
)


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    tasks: tuple[Task, ...]
    workflow_id: str | None = None
    project: str | None = None
    frameworks: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    source: str | None = None
    digest: str | None = None

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for task in self.tasks:
            if task.id in seen:
                raise WorkflowDefinitionError(f"tasks: duplicate task id {task.id!r}")
            seen.add(task.id)


def load_workflow_definition(path: str | Path) -> WorkflowDefinition:
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise WorkflowDefinitionError(f"{source}: cannot read workflow definition: {exc}") from exc
    return parse_workflow_definition(text, source=str(source))


def parse_workflow_definition(text: str, *, source: str = "<memory>") -> WorkflowDefinition:
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise WorkflowDefinitionError(f"{source}: invalid YAML: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise WorkflowDefinitionError(f"{source}: workflow definition must be a mapping")

    unknown = sorted(str(key) for key in payload if key not in _ALLOWED_KEYS)
    if unknown:
        raise WorkflowDefinitionError(f"{source}: unknown keys: {unknown}")

    workflow_id = payload.get("workflow_id")
    if workflow_id is not None:
        try:
            workflow_id = validate_workflow_id(str(workflow_id))
        except ValueError as exc:
            raise WorkflowDefinitionError(f"{source}: workflow_id: {exc}") from exc

    project = payload.get("project")
    if project is not None and not isinstance(project, str):
        raise WorkflowDefinitionError(f"{source}: project: expected string")

    raw_tasks = payload.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise WorkflowDefinitionError(f"{source}: tasks: expected a non-empty list")

    tasks = tuple(
        _parse_task(item, f"{source}: tasks[{index}]") for index, item in enumerate(raw_tasks)
    )
    return WorkflowDefinition(
        tasks=tasks,
        workflow_id=workflow_id,
        project=project,
        frameworks=_str_list(payload.get("frameworks", []), f"{source}: frameworks"),
        files=_str_list(payload.get("files", []), f"{source}: files"),
        source=source,
        digest=sha256_text(text),
    )


def _parse_task(item: object, path: str) -> Task:
    if not isinstance(item, Mapping):
        raise WorkflowDefinitionError(f"{path}: expected mapping")
    unknown = sorted(str(key) for key in item if key not in _TASK_KEYS)
    if unknown:
        raise WorkflowDefinitionError(f"{path}: unknown keys: {unknown}")
    for required in ("id", "description", "category"):
        if not isinstance(item.get(required), str) or not item.get(required).strip():
            raise WorkflowDefinitionError(f"{path}.{required}: required non-empty string")

    command = item.get("command", [])
    if isinstance(command, str):
        try:
            command = shlex.split(command)
        except ValueError as exc:
            raise WorkflowDefinitionError(f"{path}.command: {exc}") from exc
    try:
        return Task(
            id=item["id"],
            description=item["description"],
            category=item["category"],
            files=_str_list(item.get("files", []), f"{path}.files"),
            affected_file_count=item.get("affected_file_count"),
            command=_str_list(command, f"{path}.command"),
        )
    except ValueError as exc:
        raise WorkflowDefinitionError(f"{path}: {exc}") from exc


def _str_list(value: object, path: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise WorkflowDefinitionError(f"{path}: expected a list of strings")
    return tuple(value)


__all__ = ["WorkflowDefinition", "load_workflow_definition", "parse_workflow_definition"]
