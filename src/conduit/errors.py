"""Exception taxonomy for Conduit.

Configuration problems (``ConfigError`` and subclasses) are fatal and are
raised before any job is dispatched. Step failures are recoverable at the
graph level: they mark one job instance failed and propagate to dependents
through the scheduler, never aborting the whole run. Infrastructure errors
are retried at the call site and, for caches and artifacts, degrade to a miss
or a skipped upload.
"""

from __future__ import annotations


class ConduitError(Exception):
    """Base class for every error raised by Conduit."""


# ── Configuration (fatal, before dispatch) ───────────────────────────────────


class ConfigError(ConduitError):
    """The workflow cannot be turned into an executable run."""


class InvalidMatrix(ConfigError):
    """A matrix specification cannot be expanded."""

    def __init__(self, job: str, message: str):
        self.job = job
        super().__init__(f"Job '{job}': invalid matrix: {message}")


class UnknownJob(ConfigError):
    """A ``needs`` entry names a job that does not exist."""

    def __init__(self, job: str, missing: str, known: list[str] | None = None):
        self.job = job
        self.missing = missing
        msg = f"Job '{job}' needs unknown job '{missing}'"
        if known is not None:
            msg += f". Known jobs: {sorted(known)}"
        super().__init__(msg)


class CyclicDependency(ConfigError):
    """The ``needs`` graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class ExpressionError(ConfigError):
    """A condition or output expression is malformed."""


class TriggerInputError(ConfigError):
    """Manual or workflow-call inputs do not satisfy the trigger's input spec."""


# ── Execution ────────────────────────────────────────────────────────────────


class StepFailure(ConduitError):
    """A step finished with a non-zero result."""

    reason = "failure"

    def __init__(self, job: str, step: str, exit_code: int | None, message: str = ""):
        self.job = job
        self.step = step
        self.exit_code = exit_code
        text = f"[{job}] step '{step}' failed (exit={exit_code})"
        if message:
            text += f": {message}"
        super().__init__(text)


class StepTimeout(StepFailure):
    """A step (or its job) ran past its time budget."""

    reason = "timeout"


class InfrastructureError(ConduitError):
    """A collaborator (runner, cache, artifact store) is unreachable or broken."""


class SecretNotFound(ConduitError):
    """The secret resolver has no value for a name in the requested scope."""

    def __init__(self, scope: str, name: str):
        self.scope = scope
        self.name = name
        super().__init__(f"Secret '{name}' not found in scope '{scope}'")


class ArtifactConflict(ConduitError):
    """An artifact with the same name was already uploaded in this run."""

    def __init__(self, run_id: str, name: str):
        self.run_id = run_id
        self.name = name
        super().__init__(f"Artifact '{name}' already exists in run {run_id}")
