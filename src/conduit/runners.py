"""Local step runner — executes ``run`` steps as shell subprocesses.

Each job instance gets its own workspace directory under the configured
``workspace_dir``. Steps write outputs as ``key=value`` lines to the file
named by ``$CONDUIT_OUTPUT``. Only the tail of each step's combined
stdout/stderr is kept; once truncated, the partial first line is dropped.

Also implements the executor's Workspace protocol: caches and artifacts move
in and out of the instance workspace as tar.gz blobs.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import re
import shutil
import signal
import tarfile
from pathlib import Path

from conduit.engine.executor import StepInvocation, StepRunnerResult
from conduit.errors import InfrastructureError

logger = logging.getLogger(__name__)

UNSUPPORTED_ACTION_EXIT = 127
_CHUNK = 64 * 1024


class LocalStepRunner:
    """Runs steps on the local machine.

    Usage:
        runner = LocalStepRunner(".conduit/workspaces", log_tail_bytes=65536)
        result = await runner.execute(invocation)
    """

    def __init__(self, workspace_dir: str | Path, *, log_tail_bytes: int = 64 * 1024):
        self._root = Path(workspace_dir)
        self._log_tail_bytes = log_tail_bytes
        self._procs: dict[str, asyncio.subprocess.Process] = {}

    def workspace_path(self, instance_id: str) -> Path:
        """Directory of one instance. Instance ids may contain ``#``."""
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", instance_id)
        return self._root / safe

    # ── StepRunner ───────────────────────────────────────────────────────────

    async def execute(self, invocation: StepInvocation) -> StepRunnerResult:
        if invocation.kind != "run":
            msg = f"Action '{invocation.command}' is not available to the local runner"
            logger.warning("%s (%s)", msg, invocation.instance_id)
            return StepRunnerResult(exit_code=UNSUPPORTED_ACTION_EXIT, log=msg)

        workspace = self.workspace_path(invocation.instance_id)
        cwd = workspace / invocation.working_directory if invocation.working_directory else workspace
        output_file = workspace / ".conduit" / f"output-{invocation.step_index}"
        try:
            cwd.mkdir(parents=True, exist_ok=True)
            output_file.parent.mkdir(parents=True, exist_ok=True)
            output_file.write_text("")
        except OSError as e:
            raise InfrastructureError(f"Cannot prepare workspace {workspace}: {e}") from e

        env = {**os.environ, **invocation.env, "CONDUIT_OUTPUT": str(output_file.resolve())}
        try:
            proc = await asyncio.create_subprocess_shell(
                invocation.command,
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise InfrastructureError(f"Cannot start step process: {e}") from e

        self._procs[invocation.instance_id] = proc
        tail = _LogTail(self._log_tail_bytes)
        timed_out = False
        try:
            await asyncio.wait_for(self._drain(proc, tail), timeout=invocation.timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                "Step %s[%d] timed out after %.0fs",
                invocation.instance_id,
                invocation.step_index,
                invocation.timeout_seconds or 0,
            )
            _kill_group(proc, signal.SIGKILL)
            await proc.wait()
        finally:
            self._procs.pop(invocation.instance_id, None)

        exit_code = proc.returncode if proc.returncode is not None else -1
        return StepRunnerResult(
            exit_code=exit_code,
            outputs=_read_outputs(output_file),
            log=tail.text(),
            timed_out=timed_out,
        )

    async def terminate(self, instance_id: str) -> None:
        proc = self._procs.get(instance_id)
        if proc is None or proc.returncode is not None:
            return
        logger.info("Terminating step process of %s (pid %d)", instance_id, proc.pid)
        _kill_group(proc, signal.SIGTERM)

    async def _drain(self, proc: asyncio.subprocess.Process, tail: _LogTail) -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_CHUNK)
            if not chunk:
                break
            tail.extend(chunk)
        await proc.wait()

    # ── Workspace ────────────────────────────────────────────────────────────

    async def pack(self, instance_id: str, paths: list[str]) -> bytes | None:
        try:
            return await asyncio.to_thread(_pack, self.workspace_path(instance_id), paths)
        except (tarfile.TarError, OSError) as e:
            raise InfrastructureError(f"Cannot archive {paths} of {instance_id}: {e}") from e

    async def unpack(self, instance_id: str, blob: bytes) -> None:
        try:
            await asyncio.to_thread(_unpack, self.workspace_path(instance_id), blob)
        except (tarfile.TarError, OSError) as e:
            raise InfrastructureError(f"Cannot extract archive into {instance_id}: {e}") from e

    def cleanup(self, instance_id: str) -> None:
        shutil.rmtree(self.workspace_path(instance_id), ignore_errors=True)


# ── Helpers ──────────────────────────────────────────────────────────────────


class _LogTail:
    """Keeps the last ``limit`` bytes of a stream.

    Once bytes have been dropped the first line may be a fragment the masker
    cannot recognize, so :meth:`text` drops it as well.
    """

    def __init__(self, limit: int):
        self._limit = limit
        self._buf = bytearray()
        self.truncated = False

    def extend(self, chunk: bytes) -> None:
        self._buf.extend(chunk)
        if len(self._buf) > self._limit:
            del self._buf[: len(self._buf) - self._limit]
            self.truncated = True

    def text(self) -> str:
        text = self._buf.decode(errors="replace")
        if self.truncated:
            _, _, text = text.partition("\n")
        return text


def _kill_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _read_outputs(path: Path) -> dict[str, str]:
    """Parse ``key=value`` lines. Later lines win."""
    outputs: dict[str, str] = {}
    try:
        text = path.read_text()
    except OSError:
        return outputs
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key:
            outputs[key] = value
    return outputs


def _pack(root: Path, patterns: list[str]) -> bytes | None:
    files: list[Path] = []
    for pattern in patterns:
        for match in sorted(root.glob(pattern)):
            if match.is_dir():
                files.extend(p for p in sorted(match.rglob("*")) if p.is_file())
            elif match.is_file():
                files.append(match)
    if not files:
        return None

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for path in dict.fromkeys(files):
            tar.add(str(path), arcname=path.relative_to(root).as_posix(), recursive=False)
    return buf.getvalue()


def _unpack(root: Path, blob: bytes) -> None:
    root.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        tar.extractall(path=str(root), filter="data")
