"""Scheduler — walks the dependency graph and dispatches job instances.

Key exports:
    Scheduler — drives one run's instances from Pending to a terminal state.
    ConcurrencyGroups — cross-run registry serializing members of a group.
    GroupMember — one waiter or holder of a concurrency group.
    TransitionCallback — Protocol for persistence hooks.

All state mutation happens on the scheduler's own loop (:meth:`Scheduler.run`)
reading a mailbox. Workers, timers, other runs and callers of
:meth:`Scheduler.cancel` only post messages.

Transitions::

    Pending → Blocked → Ready → Running → Succeeded | Failed
                  │        │
                  └→ Skipped (dependency not successful, no status function,
                  │           or the condition evaluated false)
    any non-terminal → Cancelled (run cancellation, timeout, preemption)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from conduit.engine.context import RunContext, dependency_status, job_expression_context
from conduit.engine.executor import JobOutcome, StepExecutor
from conduit.engine.expressions import (
    ExpressionContext,
    evaluate_condition,
    interpolate,
    uses_status_function,
)
from conduit.engine.graph import DependencyGraph
from conduit.engine.models import (
    ConcurrencySpec,
    JobInstance,
    JobState,
    JobTemplate,
    RunStatus,
)
from conduit.errors import ExpressionError

logger = logging.getLogger(__name__)


class TransitionCallback(Protocol):
    """Called after every instance state change (persistence hook)."""

    async def __call__(self, instance: JobInstance) -> None: ...


# ── Concurrency Groups ───────────────────────────────────────────────────────


@dataclass(eq=False)
class GroupMember:
    """A holder or waiter of a concurrency group.

    ``wake`` is called when the group may have become free for this member;
    ``preempt`` when a newer run with ``cancel_in_progress`` supersedes it.
    Both must only post work, never block.
    """

    run_id: str
    name: str
    wake: Callable[[], None]
    preempt: Callable[[str], None]


class ConcurrencyGroups:
    """Serializes group members across runs, in order of joining.

    Shared by every scheduler of the process. Not thread-safe; all runs
    share one event loop.
    """

    def __init__(self) -> None:
        self._holders: dict[str, GroupMember] = {}
        self._waiting: dict[str, list[GroupMember]] = {}

    def join(self, group: str, member: GroupMember, *, cancel_in_progress: bool = False) -> None:
        """Queue ``member`` for ``group``.

        With ``cancel_in_progress`` every member of an older run (holder or
        waiter) is preempted. Members of the same run are never preempted.
        """
        queue = self._waiting.setdefault(group, [])
        if cancel_in_progress:
            holder = self._holders.get(group)
            if holder is not None and holder.run_id != member.run_id:
                logger.info("Concurrency group '%s': %s supersedes %s", group, member.name, holder.name)
                holder.preempt("superseded")
            for waiter in [w for w in queue if w.run_id != member.run_id]:
                logger.info("Concurrency group '%s': %s supersedes %s", group, member.name, waiter.name)
                queue.remove(waiter)
                waiter.preempt("superseded")
        if member not in queue and self._holders.get(group) is not member:
            queue.append(member)

    def try_acquire(self, group: str, member: GroupMember) -> bool:
        """Take the group if it is free and ``member`` is first in line."""
        holder = self._holders.get(group)
        if holder is member:
            return True
        if holder is not None:
            return False
        queue = self._waiting.get(group, [])
        if queue and queue[0] is not member:
            return False
        if queue:
            queue.pop(0)
        self._holders[group] = member
        return True

    def release(self, group: str, member: GroupMember) -> None:
        """Give up the group (or a place in line) and wake the next member."""
        if self._holders.get(group) is member:
            del self._holders[group]
        queue = self._waiting.get(group, [])
        if member in queue:
            queue.remove(member)
        if queue and group not in self._holders:
            queue[0].wake()
        if not queue:
            self._waiting.pop(group, None)

    def holder(self, group: str) -> GroupMember | None:
        return self._holders.get(group)

    def waiting(self, group: str) -> list[GroupMember]:
        return list(self._waiting.get(group, []))


# ── Mailbox Messages ─────────────────────────────────────────────────────────


@dataclass
class _Completed:
    instance_id: str
    outcome: JobOutcome


@dataclass
class _CancelRun:
    reason: str


@dataclass
class _CancelInstance:
    instance_id: str
    reason: str


@dataclass
class _Wake:
    pass


# ── Scheduler ────────────────────────────────────────────────────────────────


class Scheduler:
    """Drives one run's job instances to terminal states.

    Dispatch order among Ready instances is FIFO by the resolution pass in
    which they became ready, ties broken by instance id. An instance is
    admitted when a worker slot is free (``max_parallel``), its template's
    ``max_parallel`` is not exceeded and its concurrency group is free.

    Usage:
        scheduler = Scheduler(graph, instances, templates, executor, ctx)
        status = await scheduler.run()
    """

    def __init__(
        self,
        graph: DependencyGraph,
        instances: list[JobInstance],
        templates: Mapping[str, JobTemplate],
        executor: StepExecutor,
        ctx: RunContext,
        *,
        max_parallel: int = 4,
        groups: ConcurrencyGroups | None = None,
        on_transition: TransitionCallback | None = None,
        timeout_minutes: float | None = None,
    ):
        self._graph = graph
        self._instances: dict[str, JobInstance] = {inst.id: inst for inst in instances}
        self._templates = templates
        self._executor = executor
        self._ctx = ctx
        self._max_parallel = max(1, max_parallel)
        self._groups = groups or ConcurrencyGroups()
        self._on_transition = on_transition
        self._timeout_minutes = timeout_minutes

        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._tick = 0
        self._ready_at: dict[str, int] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._stop_events: dict[str, asyncio.Event] = {}
        self._stopping: dict[str, str] = {}  # running instance id → cancel reason
        self._terminations: set[asyncio.Task] = set()
        self._members: dict[str, tuple[str, GroupMember]] = {}

        # Instance ids in the order they were admitted (each exactly once)
        self.dispatched: list[str] = []

    # ── Public API ───────────────────────────────────────────────────────────

    @property
    def run_id(self) -> str:
        return self._ctx.run_id

    @property
    def instances(self) -> list[JobInstance]:
        return list(self._instances.values())

    def cancel(self, reason: str = "cancelled") -> None:
        """Request run-level cancellation. Safe to call from anywhere on the loop."""
        self._mailbox.put_nowait(_CancelRun(reason))

    def cancel_instance(self, instance_id: str, reason: str = "cancelled") -> None:
        self._mailbox.put_nowait(_CancelInstance(instance_id, reason))

    async def run(self) -> RunStatus:
        """Run until every instance is terminal and return the run result."""
        loop = asyncio.get_running_loop()
        timer = None
        if self._timeout_minutes:
            timer = loop.call_later(self._timeout_minutes * 60, self.cancel, "timeout")

        try:
            for inst in self._instances.values():
                if inst.state == JobState.PENDING:
                    await self._transition(inst, JobState.BLOCKED)

            if self._ctx.cancelled:
                await self._cancel_run(self._ctx.cancel_reason or "cancelled")

            await self._resolve()
            await self._dispatch()
            while not self._all_terminal():
                message = await self._mailbox.get()
                await self._handle(message)
                await self._resolve()
                await self._dispatch()
        finally:
            if timer is not None:
                timer.cancel()
            if self._terminations:
                await asyncio.gather(*self._terminations, return_exceptions=True)

        return self._result()

    # ── Message Handling ─────────────────────────────────────────────────────

    async def _handle(self, message: object) -> None:
        match message:
            case _Completed(instance_id=instance_id, outcome=outcome):
                await self._on_completed(instance_id, outcome)
            case _CancelRun(reason=reason):
                await self._cancel_run(reason)
            case _CancelInstance(instance_id=instance_id, reason=reason):
                await self._cancel_one(instance_id, reason)
            case _Wake():
                pass

    async def _on_completed(self, instance_id: str, outcome: JobOutcome) -> None:
        self._workers.pop(instance_id, None)
        self._stop_events.pop(instance_id, None)
        inst = self._instances[instance_id]

        state, reason = outcome.state, outcome.reason
        stop_reason = self._stopping.pop(instance_id, None)
        if stop_reason is not None:
            state, reason = JobState.CANCELLED, stop_reason

        inst.completed_at = datetime.now(timezone.utc)
        await self._transition(inst, state, reason)

        if state == JobState.SUCCEEDED:
            await self._executor.publish_artifacts(self._ctx.run_id, inst)
        self._leave_group(instance_id)

    async def _cancel_run(self, reason: str) -> None:
        if not self._ctx.cancelled:
            logger.info("Cancelling run %s (%s)", self._ctx.run_id, reason)
        self._ctx.cancel(reason)
        for inst in self._instances.values():
            if inst.state.is_terminal:
                continue
            if inst.state == JobState.RUNNING:
                self._request_stop(inst.id, reason)
            else:
                await self._cancel_waiting(inst, reason)

    async def _cancel_one(self, instance_id: str, reason: str) -> None:
        inst = self._instances.get(instance_id)
        if inst is None or inst.state.is_terminal:
            return
        logger.info("Cancelling %s in run %s (%s)", instance_id, self._ctx.run_id, reason)
        if inst.state == JobState.RUNNING:
            self._request_stop(instance_id, reason)
        else:
            await self._cancel_waiting(inst, reason)

    async def _cancel_waiting(self, inst: JobInstance, reason: str) -> None:
        inst.completed_at = datetime.now(timezone.utc)
        await self._transition(inst, JobState.CANCELLED, reason)
        self._leave_group(inst.id)

    def _request_stop(self, instance_id: str, reason: str) -> None:
        if instance_id in self._stopping:
            return
        self._stopping[instance_id] = reason
        event = self._stop_events.get(instance_id)
        if event is not None:
            event.set()
        task = asyncio.create_task(self._terminate(instance_id))
        self._terminations.add(task)
        task.add_done_callback(self._terminations.discard)

    async def _terminate(self, instance_id: str) -> None:
        try:
            await self._executor.runner.terminate(instance_id)
        except Exception:
            logger.exception("Runner failed to terminate %s", instance_id)

    # ── Resolution ───────────────────────────────────────────────────────────

    async def _resolve(self) -> None:
        """Move Blocked instances whose dependencies are all terminal.

        Repeats until nothing changes so skips cascade within one pass.
        """
        self._tick += 1
        changed = True
        while changed:
            changed = False
            for instance_id in sorted(self._instances):
                inst = self._instances[instance_id]
                if inst.state != JobState.BLOCKED:
                    continue
                upstream = [self._instances[d] for d in self._graph.dependencies(instance_id)]
                if any(not dep.state.is_terminal for dep in upstream):
                    continue
                await self._resolve_one(inst, upstream)
                changed = True

    async def _resolve_one(self, inst: JobInstance, upstream: list[JobInstance]) -> None:
        template = self._templates[inst.template]
        status = dependency_status(upstream)
        if status != "success" and not uses_status_function(template.condition):
            inst.completed_at = datetime.now(timezone.utc)
            await self._transition(inst, JobState.SKIPPED, f"dependency {status}")
            return

        expr_ctx = job_expression_context(
            self._ctx, inst, upstream, env={**self._ctx.env, **template.env}
        )
        try:
            ok = evaluate_condition(template.condition, expr_ctx)
        except ExpressionError as e:
            logger.error("Condition of %s failed to evaluate: %s", inst.id, e)
            inst.completed_at = datetime.now(timezone.utc)
            await self._transition(inst, JobState.FAILED, "expression")
            return

        if not ok:
            inst.completed_at = datetime.now(timezone.utc)
            await self._transition(inst, JobState.SKIPPED, "condition")
            return

        self._ready_at[inst.id] = self._tick
        await self._transition(inst, JobState.READY)
        if template.concurrency is not None:
            self._join_group(inst, template.concurrency, expr_ctx)

    # ── Dispatch ─────────────────────────────────────────────────────────────

    async def _dispatch(self) -> None:
        ready = sorted(
            (self._ready_at[i], i) for i, inst in self._instances.items() if inst.state == JobState.READY
        )
        for _, instance_id in ready:
            if len(self._workers) >= self._max_parallel:
                return
            inst = self._instances[instance_id]
            template = self._templates[inst.template]
            if template.max_parallel is not None:
                running = sum(
                    1 for i in self._workers if self._instances[i].template == inst.template
                )
                if running >= template.max_parallel:
                    continue
            membership = self._members.get(instance_id)
            if membership is not None and not self._groups.try_acquire(*membership):
                continue
            await self._start(inst, template)

    async def _start(self, inst: JobInstance, template: JobTemplate) -> None:
        inst.started_at = datetime.now(timezone.utc)
        await self._transition(inst, JobState.RUNNING)
        self.dispatched.append(inst.id)

        upstream = [self._instances[d] for d in self._graph.dependencies(inst.id)]
        stop = asyncio.Event()
        self._stop_events[inst.id] = stop
        self._workers[inst.id] = asyncio.create_task(
            self._work(inst, template, upstream, stop), name=f"conduit-{inst.id}"
        )

    async def _work(
        self,
        inst: JobInstance,
        template: JobTemplate,
        upstream: list[JobInstance],
        stop: asyncio.Event,
    ) -> None:
        """Worker body: execute and post the outcome. Never mutates state."""
        try:
            outcome = await self._executor.execute(
                inst, template, self._ctx, upstream, cancel_event=stop
            )
        except Exception:
            logger.exception("Job %s failed with an unexpected error", inst.id)
            outcome = JobOutcome(JobState.FAILED, "error")
        await self._mailbox.put(_Completed(inst.id, outcome))

    # ── Concurrency Groups ───────────────────────────────────────────────────

    def _join_group(
        self, inst: JobInstance, spec: ConcurrencySpec, expr_ctx: ExpressionContext
    ) -> None:
        try:
            group = interpolate(spec.group, expr_ctx)
        except ExpressionError as e:
            logger.warning("Concurrency group of %s failed to evaluate: %s", inst.id, e)
            group = spec.group
        instance_id = inst.id
        member = GroupMember(
            run_id=self._ctx.run_id,
            name=f"{self._ctx.run_id}/{instance_id}",
            wake=lambda: self._mailbox.put_nowait(_Wake()),
            preempt=lambda reason: self.cancel_instance(instance_id, reason),
        )
        self._members[instance_id] = (group, member)
        self._groups.join(group, member, cancel_in_progress=spec.cancel_in_progress)

    def _leave_group(self, instance_id: str) -> None:
        membership = self._members.pop(instance_id, None)
        if membership is not None:
            self._groups.release(*membership)

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _transition(self, inst: JobInstance, state: JobState, reason: str | None = None) -> None:
        previous = inst.state
        inst.state = state
        if reason is not None:
            inst.reason = reason
        logger.debug("%s: %s → %s", inst.id, previous.value, state.value)
        if self._on_transition is not None:
            try:
                await self._on_transition(inst)
            except Exception:
                logger.exception("Transition callback failed for %s", inst.id)

    def _all_terminal(self) -> bool:
        return all(inst.state.is_terminal for inst in self._instances.values())

    def _result(self) -> RunStatus:
        states = [inst.state for inst in self._instances.values()]
        if self._ctx.cancelled or JobState.CANCELLED in states:
            return RunStatus.CANCELLED
        if JobState.FAILED in states:
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED
