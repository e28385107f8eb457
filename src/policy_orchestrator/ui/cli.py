"""Command-line interface router for policy-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from policy_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    assert_valid_config,
    effective_config,
    load_config,
)
from policy_orchestrator.constants import EXIT_BLOCKED, EXIT_COMPLETE, EXIT_INTERNAL_ERROR
from policy_orchestrator.control_plane import (
    ActionClassifier,
    ClassifierPolicy,
    CommandTaskExecutor,
    NoopTaskExecutor,
    WorkflowEngine,
    WorkflowSnapshot,
    load_workflow_definition,
)
from policy_orchestrator.domain.errors import OrchestratorError, WorkflowDefinitionError
from policy_orchestrator.domain.ids import generate_workflow_id, validate_workflow_id
from policy_orchestrator.domain.models import (
    ApprovalDecision,
    ApprovalSignal,
    BlockReason,
    HealthReport,
    RuleContext,
    WorkflowState,
)
from policy_orchestrator.knowledge_plane import RuleRegistry, RuleResolver
from policy_orchestrator.observability import setup_logging, shutdown_logging
from policy_orchestrator.persistence import WorkflowNotFoundError, WorkflowStore
from policy_orchestrator.ui.render import CLIRenderer, create_renderer
from policy_orchestrator.utils.fs import atomic_write
from policy_orchestrator.verification_plane import CheckRunner, LocalSubprocessExecutor

STATUS_LIST_LIMIT: Final[int] = 20


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = EXIT_INTERNAL_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _Runtime:
    config: dict[str, Any]
    repo_root: Path
    resolver: RuleResolver
    store: WorkflowStore


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="porch",
        description=(
            "policy-orchestrator: policy-driven workflow gating and verification.\n\n"
            "Common workflows:\n"
            "  porch run workflow.yaml         Plan, execute and verify a workflow\n"
            "  porch status                    List recent workflows\n"
            "  porch approve <workflow-id>     Unblock a blocked workflow\n"
            "  porch rules src/app.py          Show the effective policy for files\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Directory checks and task commands run in (default: current directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./policy_orchestrator.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON instead of text.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and mirror logs to stderr.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    engine_options = argparse.ArgumentParser(add_help=False)
    engine_options.add_argument(
        "--rules-dir",
        default=None,
        help="Rule document directory (overrides paths.rules_dir).",
    )
    engine_options.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Readiness threshold override (overrides workflow.verification_threshold).",
    )
    engine_options.add_argument(
        "--no-execute",
        action="store_true",
        default=False,
        help="Do not run task commands; treat tasks as already performed.",
    )
    engine_options.add_argument(
        "--report-out",
        default=None,
        help="Write the health report as JSON to this path.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        parents=[common, engine_options],
        help="Run a workflow definition through plan, execute and verify",
        description=(
            "Run a workflow until it completes or blocks.\n\n"
            "Exit codes: 0 complete, 1 blocked or cancelled, 2 internal error.\n\n"
            "Examples:\n"
            "  porch run workflow.yaml\n"
            "  porch run workflow.yaml --no-execute --report-out report.json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("workflow_path", help="Path to a YAML workflow definition.")
    run_parser.set_defaults(handler=_cmd_run)

    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show one workflow, or list recent workflows",
    )
    status_parser.add_argument("workflow_id", nargs="?", default=None)
    status_parser.set_defaults(handler=_cmd_status)

    approve_parser = subparsers.add_parser(
        "approve",
        parents=[common, engine_options],
        help="Send an approval signal to a blocked workflow and resume it",
        description=(
            "Approve (default), reject or clarify a blocked workflow.\n\n"
            "Examples:\n"
            "  porch approve wf-01J... --note 'go with option 1'\n"
            "  porch approve wf-01J... --task add-cache --reject\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    approve_parser.add_argument("workflow_id")
    decision = approve_parser.add_mutually_exclusive_group()
    decision.add_argument(
        "--reject",
        dest="decision",
        action="store_const",
        const=ApprovalDecision.REJECT.value,
        help="Reject the blocked tasks; the workflow stays blocked.",
    )
    decision.add_argument(
        "--clarify",
        dest="decision",
        action="store_const",
        const=ApprovalDecision.CLARIFY.value,
        help="Record a clarification without changing state.",
    )
    approve_parser.add_argument("--task", dest="task_id", default=None, help="Target one task.")
    approve_parser.add_argument("--note", default="", help="Free-text note stored with the signal.")
    approve_parser.set_defaults(handler=_cmd_approve, decision=ApprovalDecision.APPROVE.value)

    rules_parser = subparsers.add_parser(
        "rules",
        parents=[common],
        help="Show the effective policy for a set of files",
    )
    rules_parser.add_argument("files", nargs="+")
    rules_parser.add_argument(
        "--framework",
        dest="frameworks",
        action="append",
        default=[],
        help="Detected framework (repeatable).",
    )
    rules_parser.add_argument("--project", default=None)
    rules_parser.add_argument("--rules-dir", default=None)
    rules_parser.set_defaults(handler=_cmd_rules)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the redacted effective configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_INTERNAL_ERROR

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    workflow_path = _resolve_path(_require_str(args.workflow_path, "workflow_path"), Path.cwd())
    try:
        definition = load_workflow_definition(workflow_path)
    except WorkflowDefinitionError as exc:
        raise CLIError(str(exc), exit_code=EXIT_INTERNAL_ERROR) from exc

    workflow_id = definition.workflow_id or generate_workflow_id()
    if runtime.store.get(workflow_id) is not None:
        raise CLIError(
            f"workflow {workflow_id} already exists; use 'porch status' or 'porch approve'",
            exit_code=EXIT_INTERNAL_ERROR,
        )

    engine = WorkflowEngine(
        definition, workflow_id=workflow_id, **_engine_dependencies(args, runtime)
    )
    snapshot = _drive(engine, runtime, args)
    return _finish(args, "run", snapshot)


def _cmd_status(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args, with_rules=False)
    workflow_id = _optional_str(getattr(args, "workflow_id", None))

    if workflow_id is None:
        summaries = runtime.store.list_workflows(limit=STATUS_LIST_LIMIT)
        if _flag(args, "json"):
            _emit_json(
                {
                    "command": "status",
                    "workflows": [
                        {
                            "workflow_id": item.workflow_id,
                            "state": item.state.value,
                            "block_reason": item.block_reason,
                            "updated_at": item.updated_at,
                        }
                        for item in summaries
                    ],
                }
            )
            return EXIT_COMPLETE
        renderer = _get_renderer(args)
        if not summaries:
            renderer.text(f"No workflows found in {runtime.store.path}")
            renderer.next_steps(["porch run workflow.yaml"])
            return EXIT_COMPLETE
        renderer.table(
            ["WORKFLOW", "STATE", "BLOCK REASON", "UPDATED"],
            [
                [item.workflow_id, item.state.value, item.block_reason or "-", item.updated_at]
                for item in summaries
            ],
            title="Recent workflows:",
        )
        return EXIT_COMPLETE

    snapshot = _load_snapshot(runtime, workflow_id)
    if _flag(args, "json"):
        history = [
            {
                "fingerprint": record.fingerprint,
                "total": record.total,
                "no_checks_run": record.no_checks_run,
                "recorded_at": record.recorded_at,
            }
            for record in runtime.store.health_history(snapshot.workflow_id)
        ]
        _emit_json({"command": "status", "workflow": snapshot.to_dict(), "health_history": history})
        return EXIT_COMPLETE

    _render_snapshot(_get_renderer(args), snapshot)
    return EXIT_COMPLETE


def _cmd_approve(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    workflow_id = _require_str(args.workflow_id, "workflow_id")
    snapshot = _load_snapshot(runtime, workflow_id)
    if snapshot.state is not WorkflowState.BLOCKED:
        raise CLIError(
            f"workflow {workflow_id} is {snapshot.state.value}; only blocked workflows "
            "accept approval signals",
            exit_code=EXIT_BLOCKED,
        )

    engine = WorkflowEngine.restore(snapshot, **_engine_dependencies(args, runtime))
    signal = ApprovalSignal(
        workflow_id=snapshot.workflow_id,
        decision=ApprovalDecision(args.decision),
        note=str(getattr(args, "note", "") or ""),
        task_id=_optional_str(getattr(args, "task_id", None)),
    )
    try:
        engine.signal(signal)
    except (OrchestratorError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_BLOCKED) from exc

    if engine.state is WorkflowState.BLOCKED:
        snapshot = engine.snapshot()
        runtime.store.save(snapshot)
        return _finish(args, "approve", snapshot)

    snapshot = _drive(engine, runtime, args)
    return _finish(args, "approve", snapshot)


def _cmd_rules(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args, with_store=False)
    files = [str(item) for item in args.files]
    frameworks = [str(item) for item in args.frameworks]
    project = _optional_str(getattr(args, "project", None))

    overall = runtime.resolver.resolve_context(
        RuleContext.from_paths(files, frameworks=frameworks, project=project)
    )
    groups = runtime.resolver.resolve_files(files, frameworks=frameworks, project=project)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "rules",
                "rules_dir": _display_source_dir(runtime.resolver.registry),
                "policy": overall.to_dict(),
                "groups": [
                    {
                        "extension": group.extension,
                        "files": list(group.files),
                        "policy": group.policy.to_dict(),
                    }
                    for group in groups
                ],
            }
        )
        return EXIT_COMPLETE

    renderer = _get_renderer(args)
    renderer.kv("Rules directory", _display_source_dir(runtime.resolver.registry))
    renderer.kv("Matched documents", ", ".join(overall.document_ids) or "(defaults only)")
    renderer.table(
        ["DIRECTIVE", "VALUE", "SOURCE"],
        [
            [key, json.dumps(overall.directives[key], sort_keys=True), overall.provenance[key]]
            for key in sorted(overall.directives)
        ],
        title="Effective directives:",
    )
    for group in groups:
        label = group.extension or "(no extension)"
        renderer.table(
            ["CHECK", "CATEGORY", "KIND", "SOURCE"],
            [
                [
                    check.name,
                    check.category,
                    check.kind.value,
                    group.policy.check_sources.get(check.name, "-"),
                ]
                for check in group.policy.checks
            ],
            title=f"Checks for {label} ({len(group.files)} file(s)):",
        )
    if overall.conflicts:
        renderer.section("Conflicts:")
        renderer.items([item.describe() for item in overall.conflicts])
    return EXIT_COMPLETE


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return EXIT_COMPLETE

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return EXIT_COMPLETE


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


def _build_runtime(
    args: argparse.Namespace, *, with_rules: bool = True, with_store: bool = True
) -> _Runtime:
    repo_root = _repo_root(args)
    config = _load_effective_config(args)

    registry = RuleRegistry()
    if with_rules:
        rules_dir = Path(_config_str(config, ("paths", "rules_dir")))
        if rules_dir.is_dir():
            try:
                registry.load_directory(rules_dir)
            except OrchestratorError as exc:
                raise CLIError(str(exc), exit_code=EXIT_INTERNAL_ERROR) from exc
        elif getattr(args, "rules_dir", None) is not None:
            raise CLIError(f"rules directory not found: {rules_dir}", exit_code=EXIT_INTERNAL_ERROR)

    store = WorkflowStore(Path(_config_str(config, ("paths", "state_db"))))
    if with_store:
        store.migrate()
    return _Runtime(
        config=config,
        repo_root=repo_root,
        resolver=RuleResolver.from_config(registry, config),
        store=store,
    )


def _engine_dependencies(args: argparse.Namespace, runtime: _Runtime) -> dict[str, Any]:
    checks = runtime.config["checks"]
    executor = LocalSubprocessExecutor(max_output_chars=int(checks["max_output_chars"]))
    cwd = str(runtime.repo_root)

    def runner_factory() -> CheckRunner:
        return CheckRunner(
            executor,
            default_timeout_seconds=float(checks["default_timeout_seconds"]),
            default_retries=int(checks["default_retries"]),
            cwd=cwd,
        )

    task_executor = (
        NoopTaskExecutor() if _flag(args, "no_execute") else CommandTaskExecutor(executor, cwd=cwd)
    )
    return {
        "resolver": runtime.resolver,
        "classifier": ActionClassifier(ClassifierPolicy.from_config(runtime.config)),
        "task_executor": task_executor,
        "runner_factory": runner_factory,
    }


def _drive(engine: WorkflowEngine, runtime: _Runtime, args: argparse.Namespace) -> WorkflowSnapshot:
    """Run ``engine`` under per-workflow logging, persist the result, export the report."""

    setup_logging(runtime.config, workflow_id=engine.workflow_id)
    try:
        try:
            snapshot = asyncio.run(engine.run())
        except KeyboardInterrupt:
            engine.cancel("interrupted")
            snapshot = engine.snapshot()
        runtime.store.save(snapshot)
    finally:
        shutdown_logging()

    report_out = _optional_str(getattr(args, "report_out", None))
    if report_out is not None:
        report = _report_of(snapshot)
        if report is None:
            raise CLIError(
                f"workflow {snapshot.workflow_id} has no health report to export",
                exit_code=_exit_code_for(snapshot),
            )
        atomic_write(_resolve_path(report_out, Path.cwd()), report.to_json() + "\n")
    return snapshot


def _finish(args: argparse.Namespace, command: str, snapshot: WorkflowSnapshot) -> int:
    exit_code = _exit_code_for(snapshot)
    if _flag(args, "json"):
        _emit_json({"command": command, "exit_code": exit_code, "workflow": snapshot.to_dict()})
        return exit_code
    _render_snapshot(_get_renderer(args), snapshot)
    return exit_code


def _exit_code_for(snapshot: WorkflowSnapshot) -> int:
    if snapshot.state is WorkflowState.COMPLETE:
        return EXIT_COMPLETE
    if snapshot.block is not None and snapshot.block.reason is BlockReason.INTERNAL_ERROR:
        return EXIT_INTERNAL_ERROR
    return EXIT_BLOCKED


def _report_of(snapshot: WorkflowSnapshot) -> HealthReport | None:
    if snapshot.health_report is not None:
        return snapshot.health_report
    if snapshot.block is not None:
        return snapshot.block.health_report
    return None


def _load_snapshot(runtime: _Runtime, workflow_id: str) -> WorkflowSnapshot:
    try:
        return runtime.store.load(validate_workflow_id(workflow_id))
    except WorkflowNotFoundError as exc:
        raise CLIError(str(exc), exit_code=EXIT_INTERNAL_ERROR) from exc
    except ValueError as exc:
        raise CLIError(f"invalid workflow id: {exc}", exit_code=EXIT_INTERNAL_ERROR) from exc


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _render_snapshot(renderer: CLIRenderer, snapshot: WorkflowSnapshot) -> None:
    renderer.kv("Workflow", snapshot.workflow_id)
    renderer.state("State", snapshot.state.value)
    if snapshot.override:
        renderer.kv("Override", snapshot.override)

    renderer.table(
        ["TASK", "CATEGORY", "STATUS", "DECISION", "RISK"],
        [
            [
                task.id,
                task.category,
                task.status.value,
                task.classification.decision.value if task.classification else "-",
                task.classification.risk.value if task.classification else "-",
            ]
            for task in snapshot.tasks
        ],
        title="Tasks:",
    )

    report = _report_of(snapshot)
    if report is not None:
        _render_report(renderer, report)

    block = snapshot.block
    if block is None:
        return
    renderer.section("Blocked:")
    renderer.kv("  Reason", block.reason.value)
    renderer.kv("  Message", block.message)
    if block.error and renderer.verbose:
        renderer.kv("  Error", block.error)
    for task_id, options in block.recommendations:
        renderer.section(f"Options for {task_id}:")
        for index, option in enumerate(options.options, start=1):
            marker = " (recommended)" if option.recommended else ""
            renderer.text(f"  {index}. {option.approach}{marker}")
            if renderer.verbose:
                renderer.items([f"+ {item}" for item in option.pros], prefix="   ")
                renderer.items([f"- {item}" for item in option.cons], prefix="   ")
    for task_id, question in block.questions:
        renderer.kv(f"  Question for {task_id}", question)

    steps = [f"porch approve {snapshot.workflow_id}"]
    if block.task_ids:
        steps.append(f"porch approve {snapshot.workflow_id} --task {block.task_ids[0]} --reject")
    renderer.next_steps(steps)


def _render_report(renderer: CLIRenderer, report: HealthReport) -> None:
    if report.no_checks_run:
        renderer.kv("Readiness", "no checks ran")
    else:
        renderer.kv("Readiness", f"{report.total:.1f}")
    renderer.table(
        ["CATEGORY", "WEIGHT", "PASSED", "TOTAL", "ERRORS", "SCORE"],
        [
            [
                score.category,
                f"{score.weight:g}",
                str(score.passed),
                str(score.total),
                str(score.errors),
                f"{score.score:.1f}" if score.evaluated else "-",
            ]
            for score in report.category_scores
        ],
        title="Category scores:",
    )
    shown = report.results if renderer.verbose else report.failed_results + report.error_results
    renderer.table(
        ["CHECK", "CATEGORY", "STATUS", "MESSAGE"],
        [
            [result.name, result.category, result.status.value, _truncate(result.message, 60)]
            for result in shown
        ],
        title="Check results:" if renderer.verbose else "Failing checks:",
    )


# ---------------------------------------------------------------------------
# Helpers: config, paths, arguments
# ---------------------------------------------------------------------------


def _repo_root(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "repo_root", None), "repo_root")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.exists() or not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=EXIT_INTERNAL_ERROR)
    return candidate


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    overrides: dict[str, object] = {}
    rules_dir = _optional_str(getattr(args, "rules_dir", None))
    if rules_dir is not None:
        overrides["paths.rules_dir"] = str(_resolve_path(rules_dir, Path.cwd()))
    threshold = getattr(args, "threshold", None)
    if threshold is not None:
        overrides["workflow.verification_threshold"] = float(threshold)
    if _flag(args, "verbose"):
        overrides["observability.log_to_stderr"] = True

    try:
        loaded = load_config(config_path, profile=profile, cli_overrides=overrides)
        return assert_valid_config(loaded, active_profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_INTERNAL_ERROR) from exc


def _config_str(config: Mapping[str, object], path: Sequence[str]) -> str:
    current: object = config
    for part in path:
        if not isinstance(current, Mapping) or part not in current:
            raise CLIError(f"missing config path: {'.'.join(path)}", exit_code=EXIT_INTERNAL_ERROR)
        current = current[part]
    if not isinstance(current, str) or not current.strip():
        raise CLIError(f"config path {'.'.join(path)} must be a non-empty string")
    return current.strip()


def _resolve_path(path_arg: str, base: Path) -> Path:
    candidate = Path(path_arg).expanduser()
    return candidate.resolve() if candidate.is_absolute() else (base / candidate).resolve()


def _display_source_dir(registry: RuleRegistry) -> str:
    return str(registry.source_dir) if registry.source_dir is not None else "(none)"


def _truncate(text: str, max_len: int) -> str:
    flat = " ".join(text.split())
    if len(flat) <= max_len:
        return flat
    return flat[: max_len - 3] + "..."


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"missing required argument: {name}", exit_code=EXIT_INTERNAL_ERROR)
    return value.strip()


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
