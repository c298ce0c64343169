"""Engine Pydantic models — workflow definitions and runtime state.

Key exports:
    Definition models (frozen): WorkflowDefinition, JobTemplate, StepSpec
        (RunStep | ActionStep), TriggerSpec (PushTrigger | PullRequestTrigger |
        ScheduleTrigger | ManualTrigger | WorkflowCallTrigger), MatrixSpec,
        CacheSpec, ArtifactSpec, ConcurrencySpec, InputSpec
    Event models: TriggerEvent, RunRequest
    Runtime state models: JobInstance, StepResult, RunRecord, CacheEntry, Artifact
    Enums: TriggerKind, JobState, StepState, RunStatus, InputType
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Discriminator, Field, Tag, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class TriggerKind(str, Enum):
    """Normalized event kinds delivered to the engine."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    WORKFLOW_CALL = "workflow_call"


class JobState(str, Enum):
    """Job instance lifecycle states."""

    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED}
)


class StepState(str, Enum):
    """Step lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Aggregate run states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InputType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    CHOICE = "choice"


# ── Identifiers ──────────────────────────────────────────────────────────────

JOB_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]*$")

MatrixValue = Union[bool, int, float, str]

_FROZEN = {"frozen": True, "populate_by_name": True}


# ── Trigger Specs ────────────────────────────────────────────────────────────


class InputSpec(BaseModel):
    """A declared input of a manual or workflow-call trigger."""

    type: InputType = InputType.STRING
    required: bool = False
    default: Any = None
    options: list[str] = []
    description: str = ""

    model_config = _FROZEN


class PushTrigger(BaseModel):
    event: Literal["push"] = "push"
    branches: list[str] = []
    branches_ignore: list[str] = []
    tags: list[str] = []

    model_config = _FROZEN


class PullRequestTrigger(BaseModel):
    event: Literal["pull_request"] = "pull_request"
    branches: list[str] = []  # Matched against the base branch
    types: list[str] = []  # Activity types, e.g. "opened", "synchronize"

    model_config = _FROZEN


class ScheduleTrigger(BaseModel):
    event: Literal["schedule"] = "schedule"
    cron: list[str] = Field(min_length=1)

    model_config = _FROZEN


class ManualTrigger(BaseModel):
    event: Literal["manual"] = "manual"
    inputs: dict[str, InputSpec] = {}

    model_config = _FROZEN


class WorkflowCallTrigger(BaseModel):
    event: Literal["workflow_call"] = "workflow_call"
    inputs: dict[str, InputSpec] = {}

    model_config = _FROZEN


TriggerSpec = Annotated[
    Union[PushTrigger, PullRequestTrigger, ScheduleTrigger, ManualTrigger, WorkflowCallTrigger],
    Field(discriminator="event"),
]


# ── Step Specs ───────────────────────────────────────────────────────────────


class _StepBase(BaseModel):
    id: str | None = None
    name: str | None = None
    condition: str | None = Field(None, alias="if")
    env: dict[str, str] = {}
    working_directory: str | None = None
    timeout_minutes: float | None = None
    continue_on_error: bool = False

    model_config = _FROZEN


class RunStep(_StepBase):
    """A shell command executed by the StepRunner."""

    kind: Literal["run"] = "run"
    run: str

    @property
    def command(self) -> str:
        return self.run

    @property
    def display_name(self) -> str:
        return self.name or self.id or self.run.splitlines()[0][:60]


class ActionStep(_StepBase):
    """A reference to a packaged action, executed by the StepRunner."""

    kind: Literal["uses"] = "uses"
    uses: str
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")

    @property
    def command(self) -> str:
        return self.uses

    @property
    def display_name(self) -> str:
        return self.name or self.id or self.uses


def _step_kind(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("kind") or ("uses" if "uses" in value else "run")
    return getattr(value, "kind", None)


StepSpec = Annotated[
    Union[Annotated[RunStep, Tag("run")], Annotated[ActionStep, Tag("uses")]],
    Discriminator(_step_kind),
]


# ── Job Templates ────────────────────────────────────────────────────────────


class MatrixSpec(BaseModel):
    """Matrix axes plus include/exclude overrides.

    In YAML the axes are written inline next to ``include``/``exclude``::

        matrix:
          node: [18, 20]
          exclude: [{node: 18}]
    """

    axes: dict[str, list[MatrixValue]] = {}
    include: list[dict[str, MatrixValue]] = []
    exclude: list[dict[str, MatrixValue]] = []

    model_config = _FROZEN

    @model_validator(mode="before")
    @classmethod
    def _collect_inline_axes(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "axes" in data:
            return data
        axes = {k: v for k, v in data.items() if k not in ("include", "exclude")}
        return {
            "axes": axes,
            "include": data.get("include") or [],
            "exclude": data.get("exclude") or [],
        }


class ConcurrencySpec(BaseModel):
    """Jobs (or runs) sharing a group key never run at the same time."""

    group: str
    cancel_in_progress: bool = False

    model_config = _FROZEN


class CacheSpec(BaseModel):
    """A dependency cache restored before the first step and saved after the last."""

    key: str
    restore_keys: list[str] = []
    paths: list[str] = Field(min_length=1)
    condition: str = Field("success()", alias="if")
    retention_days: int | None = None

    model_config = _FROZEN


class ArtifactSpec(BaseModel):
    """Files uploaded as a named artifact after the last step."""

    name: str
    paths: list[str] = Field(min_length=1)
    condition: str = Field("success()", alias="if")
    retention_days: int | None = None

    model_config = _FROZEN


class JobTemplate(BaseModel):
    """A declared unit of work; expanded into one or more JobInstances."""

    name: str
    steps: list[StepSpec] = Field(min_length=1)
    needs: list[str] = []
    matrix: MatrixSpec | None = None
    environment: str | None = None
    condition: str | None = Field(None, alias="if")
    concurrency: ConcurrencySpec | None = None
    env: dict[str, str] = {}
    secrets: list[str] = []
    outputs: dict[str, str] = {}
    caches: list[CacheSpec] = []
    artifacts: list[ArtifactSpec] = []
    download_artifacts: list[str] = []
    timeout_minutes: float | None = None
    max_parallel: int | None = Field(None, ge=1)

    model_config = _FROZEN

    @model_validator(mode="before")
    @classmethod
    def _normalize_needs(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("needs"), str):
            data = {**data, "needs": [data["needs"]]}
        return data

    @model_validator(mode="after")
    def _validate_job(self) -> JobTemplate:
        if not JOB_NAME_PATTERN.match(self.name):
            msg = f"Job name '{self.name}' must match pattern {JOB_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        step_ids = [s.id for s in self.steps if s.id]
        dupes = sorted({sid for sid in step_ids if step_ids.count(sid) > 1})
        if dupes:
            msg = f"Job '{self.name}': duplicate step ids {dupes}"
            raise ValueError(msg)
        return self


class WorkflowDefinition(BaseModel):
    """Complete, validated workflow. Immutable after load."""

    name: str
    triggers: list[TriggerSpec] = Field(default_factory=list, alias="on")
    jobs: dict[str, JobTemplate] = Field(min_length=1)
    env: dict[str, str] = {}
    concurrency: ConcurrencySpec | None = None
    timeout_minutes: float | None = None

    model_config = _FROZEN

    @model_validator(mode="before")
    @classmethod
    def _inject_job_names(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("jobs"), dict):
            return data
        jobs = {}
        for name, job in data["jobs"].items():
            if isinstance(job, dict) and "name" not in job:
                job = {**job, "name": name}
            jobs[name] = job
        return {**data, "jobs": jobs}

    @model_validator(mode="after")
    def _validate_job_keys(self) -> WorkflowDefinition:
        for key, job in self.jobs.items():
            if job.name != key:
                msg = f"Job key '{key}' does not match job name '{job.name}'"
                raise ValueError(msg)
        return self

    def get_job(self, name: str) -> JobTemplate | None:
        return self.jobs.get(name)


# ── Events ───────────────────────────────────────────────────────────────────


class TriggerEvent(BaseModel):
    """Normalized event delivered by the (external) event-delivery collaborator."""

    kind: TriggerKind
    ref: str = ""
    payload: dict[str, Any] = {}

    model_config = {"frozen": True}

    @property
    def branch(self) -> str | None:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/") :]
        if self.ref.startswith("refs/"):
            return None
        return self.ref or None

    @property
    def tag(self) -> str | None:
        if self.ref.startswith("refs/tags/"):
            return self.ref[len("refs/tags/") :]
        return None


class RunRequest(BaseModel):
    """A decision by the TriggerEvaluator that a run should start."""

    run_id: str
    workflow_name: str
    trigger_index: int
    trigger_kind: TriggerKind
    event: TriggerEvent
    inputs: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Runtime State Models ─────────────────────────────────────────────────────


class StepResult(BaseModel):
    """Outcome of one step inside a job instance."""

    index: int
    name: str
    step_id: str | None = None
    state: StepState = StepState.PENDING
    exit_code: int | None = None
    log_ref: str | None = None
    outputs: dict[str, str] = {}
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def outcome(self) -> str:
        """Status word as exposed to expressions (``success``, ``failure``, ...)."""
        return _STATUS_WORDS.get(self.state.value, self.state.value)


class JobInstance(BaseModel):
    """A JobTemplate bound to one concrete matrix assignment.

    Mutated only by the Scheduler (state) and the StepExecutor (steps,
    outputs, artifacts).
    """

    id: str
    template: str
    matrix: dict[str, MatrixValue] = {}
    state: JobState = JobState.PENDING
    needs: list[str] = []
    outputs: dict[str, str] = {}
    artifacts: list[str] = []
    steps: list[StepResult] = []
    reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def result(self) -> str:
        return _STATUS_WORDS.get(self.state.value, self.state.value)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class RunRecord(BaseModel):
    """The durable record of one run — the engine's sole external output."""

    run_id: str
    workflow_name: str
    trigger_kind: TriggerKind | None = None
    event: dict[str, Any] = {}
    status: RunStatus = RunStatus.PENDING
    instances: list[JobInstance] = []
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    def get_instance(self, instance_id: str) -> JobInstance | None:
        for inst in self.instances:
            if inst.id == instance_id:
                return inst
        return None


class CacheEntry(BaseModel):
    """A stored dependency cache."""

    key: str
    digest: str
    size: int
    created_at: datetime
    last_access_at: datetime
    expires_at: datetime | None = None
    blob: bytes | None = None  # Populated on restore only
    exact: bool = False  # True when restored by exact key


class Artifact(BaseModel):
    """A named, durable output of a job instance."""

    run_id: str
    name: str
    instance_id: str
    digest: str
    size: int
    published: bool = False
    created_at: datetime
    expires_at: datetime | None = None


# Status words used by expressions (``needs.build.result == 'success'``)
_STATUS_WORDS = {
    "succeeded": "success",
    "failed": "failure",
    "skipped": "skipped",
    "cancelled": "cancelled",
}
