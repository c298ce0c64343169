"""Workflow execution engine.

Takes a validated workflow definition and drives it to completion: trigger
matching, matrix fan-out, dependency graph, bounded-parallel scheduling,
sequential step execution, caches and artifacts.

Key exports:
    WorkflowEngine — Facade: evaluate_event(), plan(), start_run(), trigger()
    Scheduler, ConcurrencyGroups — The concurrency core
    StepExecutor — Runs one job instance's steps
    TriggerEvaluator, MatrixExpander, DependencyGraph — Planning
    SqliteCacheStore, SqliteArtifactStore, RunRegistry — SQLite persistence
    WorkflowDefinition, JobTemplate, JobInstance, RunRecord — Models
"""

from conduit.engine.context import RunContext
from conduit.engine.engine import WorkflowEngine, plan_workflow, validate_expressions
from conduit.engine.executor import (
    JobOutcome,
    LogSink,
    StepExecutor,
    StepInvocation,
    StepRunner,
    StepRunnerResult,
    Workspace,
)
from conduit.engine.expressions import (
    Expression,
    ExpressionContext,
    compile_expression,
    evaluate_condition,
    uses_status_function,
)
from conduit.engine.graph import DependencyGraph
from conduit.engine.matrix import MatrixExpander
from conduit.engine.models import (
    ActionStep,
    Artifact,
    ArtifactSpec,
    CacheEntry,
    CacheSpec,
    ConcurrencySpec,
    InputSpec,
    InputType,
    JobInstance,
    JobState,
    JobTemplate,
    ManualTrigger,
    MatrixSpec,
    PullRequestTrigger,
    PushTrigger,
    RunRecord,
    RunRequest,
    RunStatus,
    RunStep,
    ScheduleTrigger,
    StepResult,
    StepState,
    TriggerEvent,
    TriggerKind,
    WorkflowCallTrigger,
    WorkflowDefinition,
)
from conduit.engine.registry import RunRegistry
from conduit.engine.scheduler import ConcurrencyGroups, GroupMember, Scheduler
from conduit.engine.secrets import (
    EnvSecretResolver,
    SecretMasker,
    SecretResolver,
    StaticSecretResolver,
)
from conduit.engine.storage import (
    ArtifactStore,
    CacheStore,
    SqliteArtifactStore,
    SqliteCacheStore,
)
from conduit.engine.triggers import CronClock, CroniterClock, TriggerEvaluator

__all__ = [
    # Engine
    "WorkflowEngine",
    "plan_workflow",
    "validate_expressions",
    "RunContext",
    # Scheduling
    "Scheduler",
    "ConcurrencyGroups",
    "GroupMember",
    # Execution
    "StepExecutor",
    "StepRunner",
    "StepInvocation",
    "StepRunnerResult",
    "JobOutcome",
    "Workspace",
    "LogSink",
    # Planning
    "TriggerEvaluator",
    "CronClock",
    "CroniterClock",
    "MatrixExpander",
    "DependencyGraph",
    # Expressions
    "Expression",
    "ExpressionContext",
    "compile_expression",
    "evaluate_condition",
    "uses_status_function",
    # Persistence
    "RunRegistry",
    "CacheStore",
    "ArtifactStore",
    "SqliteCacheStore",
    "SqliteArtifactStore",
    # Secrets
    "SecretResolver",
    "StaticSecretResolver",
    "EnvSecretResolver",
    "SecretMasker",
    # Definition models
    "WorkflowDefinition",
    "JobTemplate",
    "RunStep",
    "ActionStep",
    "MatrixSpec",
    "CacheSpec",
    "ArtifactSpec",
    "ConcurrencySpec",
    "InputSpec",
    "PushTrigger",
    "PullRequestTrigger",
    "ScheduleTrigger",
    "ManualTrigger",
    "WorkflowCallTrigger",
    # Runtime state models
    "TriggerEvent",
    "RunRequest",
    "JobInstance",
    "StepResult",
    "RunRecord",
    "CacheEntry",
    "Artifact",
    # Enums
    "TriggerKind",
    "JobState",
    "StepState",
    "RunStatus",
    "InputType",
]
