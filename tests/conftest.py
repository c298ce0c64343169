"""Shared fixtures and fakes for the Conduit test suite."""

from __future__ import annotations

import asyncio
import json

import aiosqlite
import pytest_asyncio

from conduit.engine.executor import StepInvocation, StepRunnerResult
from conduit.engine.models import WorkflowDefinition


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test.db")) as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys=ON")
        yield conn


# ── Fakes ────────────────────────────────────────────────────────────────────


class FakeRunner:
    """In-memory StepRunner.

    ``results`` maps a step command to a StepRunnerResult, an exception to
    raise, or a callable taking the invocation. Commands listed in ``hold``
    park until :meth:`release` or :meth:`terminate` is called for their
    instance; a terminated step reports exit code 143.
    """

    def __init__(self, results: dict | None = None, *, hold: set[str] | None = None, delay: float = 0.0):
        self.results = results or {}
        self.hold = hold or set()
        self.delay = delay
        self.invocations: list[StepInvocation] = []
        self.terminated: list[str] = []
        self.running = 0
        self.peak = 0
        self.held: dict[str, asyncio.Event] = {}

    async def execute(self, invocation: StepInvocation) -> StepRunnerResult:
        self.invocations.append(invocation)
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            if invocation.command in self.hold:
                event = self.held.setdefault(invocation.instance_id, asyncio.Event())
                await event.wait()
                if invocation.instance_id in self.terminated:
                    return StepRunnerResult(exit_code=143, log="terminated")
            elif self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)

            result = self.results.get(invocation.command)
            if isinstance(result, Exception):
                raise result
            if callable(result):
                return result(invocation)
            return result or StepRunnerResult(exit_code=0, log=f"ran {invocation.command}")
        finally:
            self.running -= 1

    async def terminate(self, instance_id: str) -> None:
        self.terminated.append(instance_id)
        self.held.setdefault(instance_id, asyncio.Event()).set()

    def release(self, instance_id: str) -> None:
        self.held.setdefault(instance_id, asyncio.Event()).set()

    async def wait_held(self, instance_id: str) -> None:
        """Yield until a held step of ``instance_id`` is parked."""
        for _ in range(5000):
            if instance_id in self.held:
                return
            await asyncio.sleep(0.001)
        raise AssertionError(f"{instance_id} never reached a held step")

    def commands_for(self, instance_id: str) -> list[str]:
        return [i.command for i in self.invocations if i.instance_id == instance_id]

    def instances_run(self) -> list[str]:
        return list(dict.fromkeys(i.instance_id for i in self.invocations))


class FakeWorkspace:
    """Workspace backed by a dict of ``{instance_id: {path: content}}``."""

    def __init__(self) -> None:
        self.files: dict[str, dict[str, str]] = {}

    async def pack(self, instance_id: str, paths: list[str]) -> bytes | None:
        files = self.files.get(instance_id, {})
        selected = {p: files[p] for p in paths if p in files}
        if not selected:
            return None
        return json.dumps(selected, sort_keys=True).encode()

    async def unpack(self, instance_id: str, blob: bytes) -> None:
        self.files.setdefault(instance_id, {}).update(json.loads(blob))


def make_workflow(jobs: dict, **overrides) -> WorkflowDefinition:
    raw: dict = {"name": "ci", "on": [{"event": "push"}], "jobs": jobs}
    raw.update(overrides)
    return WorkflowDefinition.model_validate(raw)


def run_job(command: str = "true", **overrides) -> dict:
    job: dict = {"steps": [{"run": command}]}
    job.update(overrides)
    return job
