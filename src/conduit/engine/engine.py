"""Workflow engine — turns trigger events into finished, persisted runs.

Key exports:
    WorkflowEngine — evaluate_event(), plan(), start_run(), trigger(), cancel().
    plan_workflow — expand matrices and build the instance graph.
    validate_expressions — compile every expression of a definition up front.

Data flow: TriggerEvaluator → RunRequest → MatrixExpander → DependencyGraph →
Scheduler → StepExecutor (caches, artifacts) → RunRegistry.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from conduit.engine.context import RunContext
from conduit.engine.executor import StepExecutor, StepRunner, Workspace
from conduit.engine.expressions import (
    ExpressionContext,
    compile_expression,
    interpolate,
    interpolations,
)
from conduit.engine.graph import DependencyGraph
from conduit.engine.matrix import MatrixExpander
from conduit.engine.models import (
    JobInstance,
    RunRecord,
    RunRequest,
    RunStatus,
    TriggerEvent,
    WorkflowDefinition,
)
from conduit.engine.registry import RunRegistry
from conduit.engine.scheduler import ConcurrencyGroups, GroupMember, Scheduler
from conduit.engine.secrets import SecretMasker, SecretResolver
from conduit.engine.storage import ArtifactStore, CacheStore
from conduit.engine.triggers import CronClock, CroniterClock, TriggerEvaluator
from conduit.errors import ConfigError, ExpressionError

if TYPE_CHECKING:
    from conduit.config import EngineConfig

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Runs workflow definitions to completion.

    Responsibilities:
        - Decide which triggers an event fires (TriggerEvaluator)
        - Expand matrices and build the instance graph; reject bad
          definitions before anything is dispatched
        - Schedule instances and persist every state change
        - Serialize runs sharing a workflow-level concurrency group

    Usage:
        engine = WorkflowEngine(registry, LocalStepRunner(...), config=config)
        runs = await engine.trigger(TriggerEvent(kind="push", ref="main"), definition)
    """

    def __init__(
        self,
        registry: RunRegistry,
        runner: StepRunner,
        *,
        cache_store: CacheStore | None = None,
        artifact_store: ArtifactStore | None = None,
        secret_resolver: SecretResolver | None = None,
        workspace: Workspace | None = None,
        config: EngineConfig | None = None,
        clock: CronClock | None = None,
        groups: ConcurrencyGroups | None = None,
        masker: SecretMasker | None = None,
    ):
        if config is None:
            from conduit.config import EngineConfig

            config = EngineConfig()
        self._registry = registry
        self._config = config
        self._resolver = secret_resolver
        self._groups = groups or ConcurrencyGroups()
        self._masker = masker
        self._evaluator = TriggerEvaluator(
            clock or CroniterClock(window_seconds=self._config.cron_window_seconds)
        )
        self._expander = MatrixExpander()

        if workspace is None and isinstance(runner, Workspace):
            workspace = runner
        self._executor = StepExecutor(
            runner,
            workspace=workspace,
            cache_store=cache_store,
            artifact_store=artifact_store,
            log_sink=registry,
            retry_attempts=self._config.retry_attempts,
            retry_backoff_seconds=self._config.retry_backoff_seconds,
            default_job_timeout_minutes=self._config.default_job_timeout_minutes,
            cache_retention_days=self._config.cache_retention_days,
        )

        # Runs currently executing (run_id → context, scheduler once started)
        self._contexts: dict[str, RunContext] = {}
        self._schedulers: dict[str, Scheduler] = {}
        self._group_wakeups: dict[str, asyncio.Event] = {}

    @property
    def executor(self) -> StepExecutor:
        return self._executor

    def active_runs(self) -> list[str]:
        return list(self._contexts)

    # ── Triggering ───────────────────────────────────────────────────────────

    def evaluate_event(
        self,
        event: TriggerEvent,
        definition: WorkflowDefinition,
        now: datetime | None = None,
    ) -> list[RunRequest]:
        """Run requests this event starts (one per matching trigger)."""
        return self._evaluator.evaluate(event, definition, now=now)

    async def trigger(
        self,
        event: TriggerEvent,
        definition: WorkflowDefinition,
        now: datetime | None = None,
    ) -> list[RunRecord]:
        """Evaluate ``event`` and run every resulting request concurrently."""
        requests = self.evaluate_event(event, definition, now)
        if not requests:
            logger.info("Event %s on '%s' matched no trigger", event.kind.value, definition.name)
            return []
        return list(await asyncio.gather(*(self.start_run(definition, r) for r in requests)))

    # ── Planning ─────────────────────────────────────────────────────────────

    def plan(self, definition: WorkflowDefinition) -> tuple[list[JobInstance], DependencyGraph]:
        """Expand matrices and link instances.

        Raises:
            ConfigError: invalid matrix, unknown job, dependency cycle or a
                malformed expression.
        """
        return plan_workflow(definition, self._expander)

    # ── Run Lifecycle ────────────────────────────────────────────────────────

    async def start_run(self, definition: WorkflowDefinition, request: RunRequest) -> RunRecord:
        """Execute one run to a terminal state and persist it.

        Configuration errors are recorded on the run (status ``failed``) and
        nothing is dispatched.
        """
        run = RunRecord(
            run_id=request.run_id,
            workflow_name=definition.name,
            trigger_kind=request.trigger_kind,
            event=request.event.model_dump(mode="json"),
            created_at=request.created_at,
        )
        await self._registry.create_run(run)
        logger.info(
            "Run %s created for '%s' (%s %s)",
            run.run_id,
            definition.name,
            request.event.kind.value,
            request.event.ref or "-",
        )

        try:
            instances, graph = self.plan(definition)
        except ConfigError as e:
            logger.error("Run %s rejected: %s", run.run_id, e)
            run.status = RunStatus.FAILED
            run.error_message = str(e)
            run.completed_at = datetime.now(timezone.utc)
            await self._registry.update_run(run)
            return run

        ctx = RunContext(
            run_id=run.run_id,
            workflow_name=definition.name,
            event=request.event,
            inputs=dict(request.inputs),
            env=dict(definition.env),
            masker=self._masker or SecretMasker(self._config.mask_token),
            resolver=self._resolver,
        )
        self._contexts[run.run_id] = ctx
        run.instances = instances
        for inst in instances:
            await self._registry.save_instance(run.run_id, inst)

        member = None
        try:
            member = await self._enter_run_group(definition, ctx)

            run.status = RunStatus.RUNNING
            run.started_at = datetime.now(timezone.utc)
            await self._registry.update_run(run)

            async def persist(instance: JobInstance) -> None:
                await self._registry.save_instance(run.run_id, instance)

            scheduler = Scheduler(
                graph,
                instances,
                definition.jobs,
                self._executor,
                ctx,
                max_parallel=self._config.max_parallel,
                groups=self._groups,
                on_transition=persist,
                timeout_minutes=definition.timeout_minutes,
            )
            self._schedulers[run.run_id] = scheduler
            run.status = await scheduler.run()
        finally:
            if member is not None:
                self._groups.release(*member)
            self._schedulers.pop(run.run_id, None)
            self._contexts.pop(run.run_id, None)
            ctx.teardown()

        if run.status == RunStatus.CANCELLED:
            run.error_message = ctx.cancel_reason or "cancelled"
        run.completed_at = datetime.now(timezone.utc)
        await self._registry.update_run(run)

        logger.info("Run %s finished: %s", run.run_id, run.status.value)
        return run

    async def cancel(self, run_id: str, reason: str = "cancelled") -> bool:
        """Cancel an in-flight run. Returns False if it is not running here."""
        scheduler = self._schedulers.get(run_id)
        if scheduler is not None:
            scheduler.cancel(reason)
            return True
        ctx = self._contexts.get(run_id)
        if ctx is not None:
            # Still waiting for its concurrency group
            ctx.cancel(reason)
            wakeup = self._group_wakeups.get(run_id)
            if wakeup is not None:
                wakeup.set()
            return True
        return False

    # ── Workflow-level Concurrency ───────────────────────────────────────────

    async def _enter_run_group(
        self, definition: WorkflowDefinition, ctx: RunContext
    ) -> tuple[str, GroupMember] | None:
        """Wait until this run holds its workflow's concurrency group."""
        spec = definition.concurrency
        if spec is None:
            return None

        roots = ctx.expression_roots()
        group = interpolate(spec.group, ExpressionContext(**roots))
        wakeup = asyncio.Event()

        def preempt(reason: str) -> None:
            ctx.cancel(reason)
            scheduler = self._schedulers.get(ctx.run_id)
            if scheduler is not None:
                scheduler.cancel(reason)
            wakeup.set()

        member = GroupMember(run_id=ctx.run_id, name=ctx.run_id, wake=wakeup.set, preempt=preempt)
        self._groups.join(group, member, cancel_in_progress=spec.cancel_in_progress)
        self._group_wakeups[ctx.run_id] = wakeup
        try:
            while not self._groups.try_acquire(group, member):
                if ctx.cancelled:
                    self._groups.release(group, member)
                    return None
                logger.info("Run %s waiting for concurrency group '%s'", ctx.run_id, group)
                wakeup.clear()
                await wakeup.wait()
        finally:
            self._group_wakeups.pop(ctx.run_id, None)
        return group, member


def plan_workflow(
    definition: WorkflowDefinition, expander: MatrixExpander | None = None
) -> tuple[list[JobInstance], DependencyGraph]:
    """Expand every template and link the instances. Raises ConfigError."""
    validate_expressions(definition)
    expander = expander or MatrixExpander()

    instances: list[JobInstance] = []
    by_template: dict[str, list[str]] = {}
    for name, template in definition.jobs.items():
        ids = []
        for instance_id, assignment in expander.expand(template):
            instances.append(JobInstance(id=instance_id, template=name, matrix=assignment))
            ids.append(instance_id)
        by_template[name] = ids

    graph = DependencyGraph.build(by_template, definition.jobs)
    for inst in instances:
        inst.needs = graph.dependencies(inst.id)
    return instances, graph


def validate_expressions(definition: WorkflowDefinition) -> None:
    """Parse every condition, output and group expression.

    Raises:
        ExpressionError: with the job (and step) that holds the bad expression.
    """
    sources: list[tuple[str, str]] = []
    if definition.concurrency:
        sources += [("workflow concurrency", s) for s in interpolations(definition.concurrency.group)]
    for name, job in definition.jobs.items():
        if job.condition:
            sources.append((f"job '{name}' if", job.condition))
        for out_name, source in job.outputs.items():
            sources.append((f"job '{name}' output '{out_name}'", source))
        if job.concurrency:
            sources += [(f"job '{name}' concurrency", s) for s in interpolations(job.concurrency.group)]
        for cache in job.caches:
            sources.append((f"job '{name}' cache '{cache.key}' if", cache.condition))
        for artifact in job.artifacts:
            sources.append((f"job '{name}' artifact '{artifact.name}' if", artifact.condition))
        for index, step in enumerate(job.steps):
            if step.condition:
                sources.append((f"job '{name}' step {index} if", step.condition))

    for where, source in sources:
        try:
            compile_expression(source)
        except ExpressionError as e:
            msg = f"Invalid expression in {where}: {e}"
            raise ExpressionError(msg) from e
