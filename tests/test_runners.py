"""Tests for LocalStepRunner — real subprocesses in a temporary workspace."""

from __future__ import annotations

import asyncio

import pytest

from conduit.engine.executor import StepInvocation
from conduit.runners import UNSUPPORTED_ACTION_EXIT, LocalStepRunner


def make_invocation(command: str, **overrides) -> StepInvocation:
    defaults: dict = dict(
        run_id="run-1",
        instance_id="build",
        step_index=0,
        step_name=command,
        kind="run",
        command=command,
    )
    defaults.update(overrides)
    return StepInvocation(**defaults)


@pytest.fixture
def runner(tmp_path):
    return LocalStepRunner(tmp_path / "workspaces")


class TestExecute:
    async def test_success_captures_log(self, runner):
        result = await runner.execute(make_invocation("echo hello"))
        assert result.exit_code == 0
        assert result.log.strip() == "hello"
        assert result.timed_out is False

    async def test_non_zero_exit(self, runner):
        result = await runner.execute(make_invocation("echo oops >&2; exit 3"))
        assert result.exit_code == 3
        assert "oops" in result.log

    async def test_env_is_passed(self, runner):
        inv = make_invocation('echo "$GREETING"', env={"GREETING": "hi there"})
        result = await runner.execute(inv)
        assert result.log.strip() == "hi there"

    async def test_outputs_file(self, runner):
        inv = make_invocation('echo "version=1.2" >> "$CONDUIT_OUTPUT"; echo "version=1.3" >> "$CONDUIT_OUTPUT"; echo junk >> "$CONDUIT_OUTPUT"')
        result = await runner.execute(inv)
        assert result.outputs == {"version": "1.3"}

    async def test_outputs_reset_between_steps(self, runner):
        await runner.execute(make_invocation('echo "a=1" >> "$CONDUIT_OUTPUT"'))
        result = await runner.execute(make_invocation("true"))
        assert result.outputs == {}

    async def test_runs_in_instance_workspace(self, runner):
        await runner.execute(make_invocation("mkdir -p sub && echo data > sub/file.txt", instance_id="test#18"))
        path = runner.workspace_path("test#18")
        assert path.name == "test_18"
        assert (path / "sub" / "file.txt").read_text().strip() == "data"

        result = await runner.execute(
            make_invocation("cat file.txt", instance_id="test#18", working_directory="sub")
        )
        assert result.log.strip() == "data"

    async def test_log_tail_truncation(self, tmp_path):
        runner = LocalStepRunner(tmp_path, log_tail_bytes=10)
        result = await runner.execute(make_invocation("printf '0123456789\\nabc\\ndef\\n'"))
        assert result.log == "abc\ndef\n"

    async def test_truncated_partial_line_is_dropped(self, tmp_path):
        runner = LocalStepRunner(tmp_path, log_tail_bytes=10)
        result = await runner.execute(make_invocation("printf 'token=hunter2hunter2'"))
        assert result.log == ""

    async def test_short_log_is_kept_whole(self, tmp_path):
        runner = LocalStepRunner(tmp_path, log_tail_bytes=10)
        result = await runner.execute(make_invocation("printf 'ok\\n'"))
        assert result.log == "ok\n"

    async def test_timeout(self, runner):
        result = await runner.execute(make_invocation("sleep 5", timeout_seconds=0.2))
        assert result.timed_out is True
        assert result.exit_code != 0

    async def test_uses_step_is_unsupported(self, runner):
        result = await runner.execute(make_invocation("actions/checkout@v4", kind="uses"))
        assert result.exit_code == UNSUPPORTED_ACTION_EXIT
        assert "actions/checkout@v4" in result.log

    async def test_terminate(self, runner):
        task = asyncio.create_task(runner.execute(make_invocation("sleep 5")))
        for _ in range(5000):
            if "build" in runner._procs:
                break
            await asyncio.sleep(0.001)
        await runner.terminate("build")
        result = await asyncio.wait_for(task, timeout=5)
        assert result.exit_code != 0
        assert result.timed_out is False

    async def test_terminate_idle_instance_is_noop(self, runner):
        await runner.terminate("nothing-running")


class TestWorkspace:
    async def test_pack_and_unpack(self, runner):
        await runner.execute(make_invocation("mkdir -p dist && echo wheel > dist/app.whl && echo x > other.txt"))

        blob = await runner.pack("build", ["dist"])
        assert blob is not None
        await runner.unpack("deploy", blob)

        deploy = runner.workspace_path("deploy")
        assert (deploy / "dist" / "app.whl").read_text().strip() == "wheel"
        assert not (deploy / "other.txt").exists()

    async def test_pack_glob(self, runner):
        await runner.execute(make_invocation("echo a > a.log && echo b > b.log && echo c > c.txt"))
        blob = await runner.pack("build", ["*.log"])
        await runner.unpack("copy", blob)
        copied = sorted(p.name for p in runner.workspace_path("copy").iterdir())
        assert copied == ["a.log", "b.log"]

    async def test_pack_nothing(self, runner):
        assert await runner.pack("build", ["missing"]) is None

    async def test_cleanup(self, runner):
        await runner.execute(make_invocation("touch f"))
        runner.cleanup("build")
        assert not runner.workspace_path("build").exists()
