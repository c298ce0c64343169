"""Conduit CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import aiosqlite

from conduit.config import EngineConfig, load_config, load_workflow
from conduit.engine.engine import WorkflowEngine, plan_workflow
from conduit.engine.models import RunRecord, RunStatus, TriggerEvent, TriggerKind
from conduit.engine.registry import RunRegistry
from conduit.engine.secrets import EnvSecretResolver, SecretMasker
from conduit.engine.storage import SqliteArtifactStore, SqliteCacheStore
from conduit.errors import ConfigError
from conduit.logs import configure_logging
from conduit.runners import LocalStepRunner

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_inputs(pairs: list[str]) -> dict[str, str]:
    """``["a=1", "b=x=y"]`` → ``{"a": "1", "b": "x=y"}``."""
    inputs: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid input '{pair}': expected key=value")
        inputs[key.strip()] = value
    return inputs


def build_event(kind: str, ref: str, inputs: dict[str, str]) -> TriggerEvent:
    payload: dict = {}
    if inputs:
        payload["inputs"] = inputs
    if kind == TriggerKind.PULL_REQUEST.value:
        payload.setdefault("action", "opened")
    return TriggerEvent(kind=TriggerKind(kind), ref=ref, payload=payload)


def format_run(run: RunRecord) -> str:
    """Multi-line human-readable summary of a run."""
    lines = [f"{run.run_id}  {run.workflow_name}  {run.status.value}"]
    if run.error_message:
        lines.append(f"  error: {run.error_message}")
    for inst in run.instances:
        duration = f" {inst.duration_seconds:.1f}s" if inst.duration_seconds is not None else ""
        reason = f" ({inst.reason})" if inst.reason else ""
        lines.append(f"  {inst.id:<30} {inst.state.value}{reason}{duration}")
        for step in inst.steps:
            code = "" if step.exit_code is None else f" exit={step.exit_code}"
            lines.append(f"    [{step.index}] {step.name:<40} {step.state.value}{code}")
    return "\n".join(lines)


async def _open_db(config: EngineConfig) -> aiosqlite.Connection:
    db_path = Path(config.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    return db


# ── Commands ─────────────────────────────────────────────────────────────────


def _cmd_validate(args) -> int:
    definition = load_workflow(args.workflow)
    instances, _ = plan_workflow(definition)
    print(f"{definition.name}: {len(definition.jobs)} jobs, {len(instances)} instances — OK")
    return 0


def _cmd_plan(args) -> int:
    definition = load_workflow(args.workflow)
    _, graph = plan_workflow(definition)
    for stage, ids in enumerate(graph.levels(), start=1):
        print(f"stage {stage}: {', '.join(ids)}")
    return 0


async def _cmd_run(args, config: EngineConfig, masker: SecretMasker) -> int:
    definition = load_workflow(args.workflow)
    event = build_event(args.event, args.ref, parse_inputs(args.input or []))

    db = await _open_db(config)
    try:
        registry = RunRegistry(db)
        cache_store = SqliteCacheStore(db, default_retention_days=config.cache_retention_days)
        artifact_store = SqliteArtifactStore(
            db, default_retention_days=config.artifact_retention_days
        )
        await registry.initialize()
        await cache_store.initialize()

        engine = WorkflowEngine(
            registry,
            LocalStepRunner(config.workspace_dir, log_tail_bytes=config.log_tail_bytes),
            cache_store=cache_store,
            artifact_store=artifact_store,
            secret_resolver=EnvSecretResolver(),
            config=config,
            masker=masker,
        )
        runs = await engine.trigger(event, definition)
    finally:
        await db.close()

    if not runs:
        print(f"No trigger of '{definition.name}' matched {event.kind.value} {event.ref}")
        return 1
    for run in runs:
        print(format_run(run))
    return 0 if all(r.status == RunStatus.SUCCEEDED for r in runs) else 1


async def _cmd_runs(args, config: EngineConfig) -> int:
    db = await _open_db(config)
    try:
        registry = RunRegistry(db)
        await registry.initialize()
        status = RunStatus(args.status) if args.status else None
        runs = await registry.list_runs(status=status, workflow_name=args.workflow, limit=args.limit)
    finally:
        await db.close()

    if not runs:
        print("No runs found.")
        return 0
    for run in runs:
        created = run.created_at.strftime("%Y-%m-%d %H:%M:%S") if run.created_at else "-"
        print(f"{run.run_id:<18} {run.workflow_name:<24} {run.status.value:<10} {created}")
    return 0


async def _cmd_show(args, config: EngineConfig) -> int:
    db = await _open_db(config)
    try:
        registry = RunRegistry(db)
        await registry.initialize()
        run = await registry.get_run(args.run_id)
        if run is None:
            print(f"Run not found: {args.run_id}", file=sys.stderr)
            return 1
        if args.json:
            print(json.dumps(run.model_dump(mode="json"), indent=2))
            return 0
        print(format_run(run))
        if args.logs:
            for inst in run.instances:
                for step in inst.steps:
                    if not step.log_ref:
                        continue
                    content = await registry.read_log(step.log_ref)
                    print(f"\n── {inst.id} [{step.index}] {step.name} ──")
                    print(content or "")
    finally:
        await db.close()
    return 0


async def _cmd_gc(args, config: EngineConfig) -> int:
    db = await _open_db(config)
    try:
        cache_store = SqliteCacheStore(db)
        artifact_store = SqliteArtifactStore(db)
        await cache_store.initialize()

        expired_caches = await cache_store.evict_expired()
        expired_artifacts = await artifact_store.evict_expired()
        evicted = 0
        max_bytes = args.max_bytes if args.max_bytes is not None else config.cache_max_bytes
        if max_bytes is not None:
            evicted = await cache_store.evict_to_size(max_bytes)
        blobs = await cache_store.collect_garbage()
    finally:
        await db.close()

    print(
        f"Removed {expired_caches} expired caches, {expired_artifacts} expired artifacts, "
        f"{evicted} caches over size limit, {blobs} unreferenced blobs"
    )
    return 0


# ── Main ─────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conduit",
        description="Conduit — workflow execution engine",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Engine settings file (default: ./conduit.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # conduit validate
    validate_parser = subparsers.add_parser("validate", help="Validate a workflow file")
    validate_parser.add_argument("workflow", type=Path)

    # conduit plan
    plan_parser = subparsers.add_parser("plan", help="Show the execution stages of a workflow")
    plan_parser.add_argument("workflow", type=Path)

    # conduit run
    run_parser = subparsers.add_parser("run", help="Trigger a workflow locally")
    run_parser.add_argument("workflow", type=Path)
    run_parser.add_argument(
        "--event",
        default=TriggerKind.MANUAL.value,
        choices=[k.value for k in TriggerKind],
        help="Event kind (default: manual)",
    )
    run_parser.add_argument("--ref", default="refs/heads/main", help="Git ref of the event")
    run_parser.add_argument(
        "--input",
        action="append",
        metavar="KEY=VALUE",
        help="Manual / workflow-call input (repeatable)",
    )
    run_parser.add_argument(
        "--max-parallel",
        type=int,
        help="Override the number of concurrently running job instances",
    )

    # conduit runs
    runs_parser = subparsers.add_parser("runs", help="List recorded runs")
    runs_parser.add_argument("--status", choices=[s.value for s in RunStatus])
    runs_parser.add_argument("--workflow", help="Filter by workflow name")
    runs_parser.add_argument("--limit", type=int, default=20)

    # conduit show
    show_parser = subparsers.add_parser("show", help="Show one run")
    show_parser.add_argument("run_id")
    show_parser.add_argument("--logs", action="store_true", help="Print masked step logs")
    show_parser.add_argument("--json", action="store_true", help="Print the run record as JSON")

    # conduit gc
    gc_parser = subparsers.add_parser("gc", help="Evict expired caches/artifacts and orphan blobs")
    gc_parser.add_argument(
        "--max-bytes",
        type=int,
        default=None,
        help="Evict least-recently-used caches beyond this total size",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    masker = SecretMasker()
    configure_logging(args.log_level, masker)

    try:
        config = load_config(args.config)
        masker.mask_token = config.mask_token
        if getattr(args, "max_parallel", None):
            config = config.model_copy(update={"max_parallel": args.max_parallel})

        match args.command:
            case "validate":
                return _cmd_validate(args)
            case "plan":
                return _cmd_plan(args)
            case "run":
                return asyncio.run(_cmd_run(args, config, masker))
            case "runs":
                return asyncio.run(_cmd_runs(args, config))
            case "show":
                return asyncio.run(_cmd_show(args, config))
            case "gc":
                return asyncio.run(_cmd_gc(args, config))
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
