"""Step executor — runs one job instance's steps inside one execution context.

Key exports:
    StepExecutor — restore caches, run steps sequentially, evaluate outputs,
        save caches and upload artifacts.
    StepRunner, Workspace, LogSink — Protocols for the sandbox boundary and
        the log store.
    StepInvocation, StepRunnerResult, JobOutcome — values exchanged with the
        runner and the scheduler.

Steps never run concurrently with each other. Cache restore strictly precedes
the first step and cache save strictly follows the last. Secrets are handed to
the runner at invocation time only; logs and outputs are masked before they
leave this module.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar, runtime_checkable

from conduit.engine.context import RunContext, build_needs_context
from conduit.engine.expressions import (
    ExpressionContext,
    compile_expression,
    evaluate_condition,
    to_output_string,
)
from conduit.engine.models import (
    ActionStep,
    CacheSpec,
    JobInstance,
    JobState,
    JobTemplate,
    StepResult,
    StepState,
)
from conduit.engine.storage import ArtifactStore, CacheStore
from conduit.errors import (
    ArtifactConflict,
    ExpressionError,
    InfrastructureError,
    StepFailure,
    StepTimeout,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MATRIX_PLACEHOLDER = re.compile(r"\{matrix\.([A-Za-z0-9_-]+)\}")


# ── Runner Boundary ──────────────────────────────────────────────────────────


@dataclass
class StepInvocation:
    """Everything the runner needs to execute one step."""

    run_id: str
    instance_id: str
    step_index: int
    step_name: str
    kind: str  # "run" or "uses"
    command: str
    with_: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None
    timeout_seconds: float | None = None


@dataclass
class StepRunnerResult:
    exit_code: int
    outputs: dict[str, str] = field(default_factory=dict)
    log: str = ""  # Possibly truncated tail
    timed_out: bool = False


class StepRunner(Protocol):
    """The sandbox/process boundary. The engine does not implement it."""

    async def execute(self, invocation: StepInvocation) -> StepRunnerResult:
        """Run one step. Raises InfrastructureError when the sandbox is unreachable."""
        ...

    async def terminate(self, instance_id: str) -> None:
        """Ask the step currently running for ``instance_id`` to stop."""
        ...


@runtime_checkable
class Workspace(Protocol):
    """Moves files in and out of an instance's execution context."""

    async def pack(self, instance_id: str, paths: list[str]) -> bytes | None:
        """Archive ``paths``; None when none of them exist."""
        ...

    async def unpack(self, instance_id: str, blob: bytes) -> None:
        """Extract ``blob``; raises InfrastructureError when it is unreadable."""
        ...


class LogSink(Protocol):
    async def write_log(self, run_id: str, log_ref: str, content: str) -> None: ...


@dataclass
class JobOutcome:
    """Terminal result of one job instance as reported to the scheduler."""

    state: JobState
    reason: str | None = None


# ── Executor ─────────────────────────────────────────────────────────────────


class StepExecutor:
    """Executes job instances against a StepRunner.

    Stateless between instances; one executor serves every worker of every
    run. Cache, artifact and workspace collaborators are optional: without
    them the corresponding phases are skipped.
    """

    def __init__(
        self,
        runner: StepRunner,
        *,
        workspace: Workspace | None = None,
        cache_store: CacheStore | None = None,
        artifact_store: ArtifactStore | None = None,
        log_sink: LogSink | None = None,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        default_job_timeout_minutes: float | None = None,
        cache_retention_days: int | None = None,
    ):
        self._runner = runner
        self._workspace = workspace
        self._cache_store = cache_store
        self._artifact_store = artifact_store
        self._log_sink = log_sink
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = retry_backoff_seconds
        self._default_job_timeout = default_job_timeout_minutes
        self._cache_retention_days = cache_retention_days

    @property
    def runner(self) -> StepRunner:
        return self._runner

    async def execute(
        self,
        instance: JobInstance,
        template: JobTemplate,
        ctx: RunContext,
        upstream: list[JobInstance] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> JobOutcome:
        """Run ``instance`` to a terminal outcome.

        Mutates ``instance.steps``, ``instance.outputs`` and
        ``instance.artifacts``. Never raises for step failures; those are
        reported through the returned JobOutcome.
        """
        upstream = upstream or []
        loop = asyncio.get_running_loop()

        def cancelled() -> bool:
            return ctx.cancelled or (cancel_event is not None and cancel_event.is_set())

        timeout_minutes = template.timeout_minutes or self._default_job_timeout
        deadline = loop.time() + timeout_minutes * 60 if timeout_minutes else None

        job_env = {**ctx.env, **template.env}
        secret_env = await self._resolve_secrets(template, ctx)

        await self._download_artifacts(instance, template, ctx)
        exact_hits, cache_hit = await self._restore_caches(instance, template)

        job_ctx: dict[str, Any] = {
            "id": instance.id,
            "template": instance.template,
            "status": "success",
            "cache_hit": cache_hit,
        }
        needs_ctx = build_needs_context(upstream)
        steps_ctx: dict[str, Any] = {}
        failed = False
        reason: str | None = None
        timed_out = False

        for index, step in enumerate(template.steps):
            result = StepResult(index=index, name=step.display_name, step_id=step.id)
            instance.steps.append(result)

            if timed_out:
                result.state = StepState.CANCELLED
                continue
            if deadline is not None and loop.time() >= deadline:
                logger.warning("Job %s exceeded its %s minute timeout", instance.id, timeout_minutes)
                timed_out, failed, reason = True, True, StepTimeout.reason
                result.state = StepState.CANCELLED
                continue

            env = {**job_env, **step.env}
            expr_ctx = ExpressionContext(
                status="failure" if failed else "success",
                cancelled=cancelled(),
                needs=needs_ctx,
                matrix=dict(instance.matrix),
                env=env,
                inputs=dict(ctx.inputs),
                steps=steps_ctx,
                job=job_ctx,
                run={"id": ctx.run_id, "workflow": ctx.workflow_name},
                event=ctx.expression_roots()["event"],
            )
            if not evaluate_condition(step.condition, expr_ctx):
                result.state = StepState.CANCELLED if cancelled() else StepState.SKIPPED
                result.completed_at = datetime.now(timezone.utc)
                _record_step(steps_ctx, step.id, result, conclusion=result.outcome)
                logger.debug("Step %s/%d not run (%s)", instance.id, index, result.state.value)
                continue

            timeout_seconds = step.timeout_minutes * 60 if step.timeout_minutes else None
            capped_by_job = False
            if deadline is not None:
                remaining = max(deadline - loop.time(), 0.0)
                if timeout_seconds is None or remaining < timeout_seconds:
                    timeout_seconds = remaining
                    capped_by_job = True

            invocation = StepInvocation(
                run_id=ctx.run_id,
                instance_id=instance.id,
                step_index=index,
                step_name=result.name,
                kind=step.kind,
                command=step.command,
                with_=dict(step.with_) if isinstance(step, ActionStep) else {},
                env={**_builtin_env(ctx, instance), **env, **secret_env},
                working_directory=step.working_directory,
                timeout_seconds=timeout_seconds,
            )

            result.state = StepState.RUNNING
            result.started_at = datetime.now(timezone.utc)
            logger.info("Step started: %s [%d] %s", instance.id, index, result.name)
            try:
                outcome = await self._with_retries(
                    f"step {instance.id}[{index}]", lambda: self._runner.execute(invocation)
                )
                error: StepFailure | None = None
                if outcome.timed_out:
                    error = StepTimeout(instance.id, result.name, outcome.exit_code, "timed out")
                elif outcome.exit_code != 0:
                    error = StepFailure(instance.id, result.name, outcome.exit_code)
            except InfrastructureError as e:
                logger.error("Runner unavailable for %s [%d]: %s", instance.id, index, e)
                outcome = StepRunnerResult(exit_code=-1, log=f"runner unavailable: {e}")
                error = StepFailure(instance.id, result.name, None, "runner unavailable")

            result.completed_at = datetime.now(timezone.utc)
            result.exit_code = outcome.exit_code
            result.outputs = ctx.masker.mask_mapping(outcome.outputs)
            result.log_ref = f"{ctx.run_id}/{instance.id}/{index}"
            await self._store_log(ctx, result.log_ref, outcome.log)

            if cancelled():
                result.state = StepState.CANCELLED
            elif error is None:
                result.state = StepState.SUCCEEDED
            else:
                result.state = StepState.FAILED
                logger.info("%s", ctx.masker.mask(str(error)))
                if isinstance(error, StepTimeout) and capped_by_job:
                    timed_out, failed, reason = True, True, error.reason
                elif not step.continue_on_error:
                    failed = True
                    reason = reason or error.reason

            conclusion = (
                "success"
                if result.state == StepState.FAILED and step.continue_on_error and not timed_out
                else result.outcome
            )
            _record_step(steps_ctx, step.id, result, conclusion=conclusion)
            job_ctx["status"] = "failure" if failed else "success"

        if cancelled():
            state = JobState.CANCELLED
            reason = ctx.cancel_reason or "cancelled"
        elif failed:
            state = JobState.FAILED
        else:
            state = JobState.SUCCEEDED

        final_ctx = ExpressionContext(
            status="failure" if failed else "success",
            cancelled=state == JobState.CANCELLED,
            needs=needs_ctx,
            matrix=dict(instance.matrix),
            env=job_env,
            inputs=dict(ctx.inputs),
            steps=steps_ctx,
            job=job_ctx,
            run={"id": ctx.run_id, "workflow": ctx.workflow_name},
            event=ctx.expression_roots()["event"],
        )
        instance.outputs = self._evaluate_outputs(template, final_ctx, ctx)

        await self._save_caches(instance, template, final_ctx, exact_hits)
        try:
            await self._upload_artifacts(instance, template, final_ctx, ctx)
        except ArtifactConflict as e:
            logger.error("%s", e)
            if state == JobState.SUCCEEDED:
                state, reason = JobState.FAILED, "artifact_conflict"

        logger.info(
            "Job finished: %s → %s%s",
            instance.id,
            state.value,
            f" ({reason})" if reason else "",
        )
        return JobOutcome(state=state, reason=reason if state != JobState.SUCCEEDED else None)

    async def publish_artifacts(self, run_id: str, instance: JobInstance) -> None:
        """Make a succeeded instance's artifacts visible downstream."""
        if self._artifact_store is None or not instance.artifacts:
            return
        try:
            await self._with_retries(
                f"artifact publish {instance.id}",
                lambda: self._artifact_store.publish(run_id, instance.id),
            )
        except InfrastructureError as e:
            logger.warning("Could not publish artifacts of %s: %s", instance.id, e)

    # ── Secrets ──────────────────────────────────────────────────────────────

    async def _resolve_secrets(self, template: JobTemplate, ctx: RunContext) -> dict[str, str]:
        env: dict[str, str] = {}
        for name in template.secrets:
            value = await ctx.resolve_secret(name, template.environment)
            if value is None:
                logger.warning(
                    "Secret '%s' not found for job '%s' (scope %s); exposing an empty value",
                    name,
                    template.name,
                    template.environment or "repository",
                )
                value = ""
            env[name] = value
        return env

    # ── Artifacts ────────────────────────────────────────────────────────────

    async def _download_artifacts(
        self, instance: JobInstance, template: JobTemplate, ctx: RunContext
    ) -> None:
        if not template.download_artifacts:
            return
        if self._artifact_store is None or self._workspace is None:
            logger.debug("No artifact store or workspace; skipping downloads for %s", instance.id)
            return
        for name in template.download_artifacts:
            try:
                blob = await self._with_retries(
                    f"artifact download {name}",
                    lambda name=name: self._artifact_store.download(ctx.run_id, name),
                )
            except InfrastructureError as e:
                logger.warning("Artifact '%s' unavailable for %s: %s", name, instance.id, e)
                continue
            if blob is None:
                logger.warning("Artifact '%s' not published in run %s", name, ctx.run_id)
                continue
            try:
                await self._workspace.unpack(instance.id, blob)
            except (InfrastructureError, OSError) as e:
                logger.warning("Artifact '%s' could not be extracted for %s: %s", name, instance.id, e)
                continue
            logger.info("Artifact downloaded: %s → %s", name, instance.id)

    async def _upload_artifacts(
        self,
        instance: JobInstance,
        template: JobTemplate,
        expr_ctx: ExpressionContext,
        ctx: RunContext,
    ) -> None:
        if not template.artifacts:
            return
        if self._artifact_store is None or self._workspace is None:
            logger.debug("No artifact store or workspace; skipping uploads for %s", instance.id)
            return
        for spec in template.artifacts:
            if not evaluate_condition(spec.condition, expr_ctx):
                continue
            try:
                blob = await self._workspace.pack(instance.id, list(spec.paths))
            except (InfrastructureError, OSError) as e:
                logger.warning("Artifact '%s' upload skipped: %s", spec.name, e)
                continue
            if blob is None:
                logger.warning("Artifact '%s': no files matched %s", spec.name, spec.paths)
                continue
            try:
                await self._with_retries(
                    f"artifact upload {spec.name}",
                    lambda spec=spec, blob=blob: self._artifact_store.upload(
                        ctx.run_id,
                        spec.name,
                        instance.id,
                        blob,
                        retention_days=spec.retention_days,
                    ),
                )
            except InfrastructureError as e:
                logger.warning("Artifact '%s' upload skipped: %s", spec.name, e)
                continue
            instance.artifacts.append(spec.name)

    # ── Caches ───────────────────────────────────────────────────────────────

    async def _restore_caches(
        self, instance: JobInstance, template: JobTemplate
    ) -> tuple[set[str], bool]:
        """Returns the keys restored by exact hit and whether every cache hit exactly."""
        exact: set[str] = set()
        if not template.caches:
            return exact, False
        if self._cache_store is None or self._workspace is None:
            logger.debug("No cache store or workspace; skipping restores for %s", instance.id)
            return exact, False

        for spec in template.caches:
            key = cache_key(spec.key, instance.matrix)
            restore_keys = [cache_key(k, instance.matrix) for k in spec.restore_keys]
            try:
                entry = await self._with_retries(
                    f"cache restore {key}",
                    lambda key=key, restore_keys=restore_keys: self._cache_store.get(
                        key, restore_keys
                    ),
                )
            except InfrastructureError as e:
                logger.warning("Cache unavailable, treating '%s' as a miss: %s", key, e)
                continue
            if entry is None or entry.blob is None:
                logger.info("Cache miss: %s", key)
                continue
            try:
                await self._workspace.unpack(instance.id, entry.blob)
            except (InfrastructureError, OSError) as e:
                logger.warning("Cache '%s' could not be restored, treating it as a miss: %s", entry.key, e)
                continue
            if entry.exact:
                exact.add(key)
            logger.info("Cache restored: %s from %s", key, entry.key)
        return exact, len(exact) == len(template.caches)

    async def _save_caches(
        self,
        instance: JobInstance,
        template: JobTemplate,
        expr_ctx: ExpressionContext,
        exact_hits: set[str],
    ) -> None:
        if not template.caches or self._cache_store is None or self._workspace is None:
            return
        for spec in template.caches:
            key = cache_key(spec.key, instance.matrix)
            if key in exact_hits:
                continue
            if not evaluate_condition(spec.condition, expr_ctx):
                continue
            try:
                blob = await self._workspace.pack(instance.id, list(spec.paths))
            except (InfrastructureError, OSError) as e:
                logger.warning("Cache save skipped for '%s': %s", key, e)
                continue
            if blob is None:
                logger.debug("Cache '%s': nothing to save", key)
                continue
            await self._put_cache(spec, key, blob)

    async def _put_cache(self, spec: CacheSpec, key: str, blob: bytes) -> None:
        retention = (
            spec.retention_days if spec.retention_days is not None else self._cache_retention_days
        )
        try:
            await self._with_retries(
                f"cache save {key}",
                lambda: self._cache_store.put(key, blob, retention_days=retention),
            )
        except InfrastructureError as e:
            logger.warning("Cache save skipped for '%s': %s", key, e)

    # ── Outputs & Logs ───────────────────────────────────────────────────────

    def _evaluate_outputs(
        self, template: JobTemplate, expr_ctx: ExpressionContext, ctx: RunContext
    ) -> dict[str, str]:
        outputs: dict[str, str] = {}
        for name, source in template.outputs.items():
            try:
                value = compile_expression(source).evaluate(expr_ctx)
            except ExpressionError as e:
                logger.warning("Output '%s' of job '%s' failed to evaluate: %s", name, template.name, e)
                value = None
            outputs[name] = ctx.masker.mask(to_output_string(value))
        return outputs

    async def _store_log(self, ctx: RunContext, log_ref: str, log: str) -> None:
        if self._log_sink is None:
            return
        try:
            await self._log_sink.write_log(ctx.run_id, log_ref, ctx.masker.mask(log))
        except Exception:
            logger.exception("Failed to store log %s", log_ref)

    # ── Retry ────────────────────────────────────────────────────────────────

    async def _with_retries(self, what: str, call: Callable[[], Awaitable[T]]) -> T:
        """Retry ``call`` on InfrastructureError with exponential backoff."""
        attempt = 1
        while True:
            try:
                return await call()
            except InfrastructureError as e:
                if attempt >= self._retry_attempts:
                    raise
                delay = self._retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    what,
                    attempt,
                    self._retry_attempts,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)
                attempt += 1


# ── Helpers ──────────────────────────────────────────────────────────────────


def cache_key(template: str, matrix: dict[str, Any]) -> str:
    """Substitute ``{matrix.<axis>}`` placeholders. Unknown axes are left as-is."""

    def _sub(m: re.Match[str]) -> str:
        axis = m.group(1)
        return to_output_string(matrix[axis]) if axis in matrix else m.group(0)

    return _MATRIX_PLACEHOLDER.sub(_sub, template)


def _record_step(
    steps_ctx: dict[str, Any], step_id: str | None, result: StepResult, *, conclusion: str
) -> None:
    if not step_id:
        return
    steps_ctx[step_id] = {
        "outputs": dict(result.outputs),
        "outcome": result.outcome,
        "conclusion": conclusion,
    }


def _builtin_env(ctx: RunContext, instance: JobInstance) -> dict[str, str]:
    return {
        "CI": "true",
        "CONDUIT_RUN_ID": ctx.run_id,
        "CONDUIT_WORKFLOW": ctx.workflow_name,
        "CONDUIT_JOB": instance.template,
        "CONDUIT_INSTANCE": instance.id,
        "CONDUIT_EVENT": ctx.event.kind.value,
        "CONDUIT_REF": ctx.event.ref,
    }
