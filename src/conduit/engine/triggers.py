"""Trigger evaluation — does an incoming event start one or more runs?

The evaluator is stateless. Schedule triggers delegate the "is this cron
expression due" question to a :class:`CronClock` collaborator.
"""

from __future__ import annotations

import fnmatch
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from croniter import croniter

from conduit.engine.models import (
    InputSpec,
    InputType,
    ManualTrigger,
    PullRequestTrigger,
    PushTrigger,
    RunRequest,
    ScheduleTrigger,
    TriggerEvent,
    WorkflowCallTrigger,
    WorkflowDefinition,
)
from conduit.errors import TriggerInputError

logger = logging.getLogger(__name__)


# ── Clock Collaborator ───────────────────────────────────────────────────────


class CronClock(Protocol):
    """Answers whether a cron expression is due at ``now``."""

    def is_due(self, expression: str, now: datetime) -> bool: ...


class CroniterClock:
    """Cron clock backed by croniter.

    An expression is due when one of its fire times falls inside the window
    ``(now - window, now]``. The window should match the polling interval of
    whatever delivers schedule events.
    """

    def __init__(self, window_seconds: int = 60):
        self._window = timedelta(seconds=window_seconds)

    def is_due(self, expression: str, now: datetime) -> bool:
        try:
            itr = croniter(expression, now)
        except (ValueError, KeyError) as e:
            msg = f"Invalid cron expression: {expression}"
            raise ValueError(msg) from e
        # get_prev is strictly before ``now``; an exact hit on ``now`` counts too
        if croniter.match(expression, now):
            return True
        previous = itr.get_prev(datetime)
        return now - previous < self._window


# ── Evaluator ────────────────────────────────────────────────────────────────


class TriggerEvaluator:
    """Matches a TriggerEvent against a workflow's trigger specs.

    Usage:
        evaluator = TriggerEvaluator(CroniterClock())
        requests = evaluator.evaluate(event, definition, now=datetime.now(timezone.utc))
    """

    def __init__(self, clock: CronClock | None = None):
        self._clock = clock or CroniterClock()

    def evaluate(
        self,
        event: TriggerEvent,
        definition: WorkflowDefinition,
        *,
        now: datetime | None = None,
    ) -> list[RunRequest]:
        """Return one RunRequest per matching trigger spec.

        Raises:
            TriggerInputError: a manual/workflow-call event carries inputs that
                violate the trigger's input declarations.
        """
        if not definition.triggers:
            logger.debug("Workflow '%s' has no triggers; never runs", definition.name)
            return []

        now = now or datetime.now(timezone.utc)
        requests: list[RunRequest] = []

        for index, spec in enumerate(definition.triggers):
            if spec.event != event.kind.value:
                continue

            inputs: dict[str, Any] | None = {}
            match spec:
                case PushTrigger():
                    matched = _push_matches(spec, event)
                case PullRequestTrigger():
                    matched = _pull_request_matches(spec, event)
                case ScheduleTrigger():
                    matched = self._schedule_due(spec, event, now)
                case ManualTrigger() | WorkflowCallTrigger():
                    inputs = resolve_inputs(spec.inputs, event.payload.get("inputs") or {})
                    matched = True
                case _:
                    matched = False

            if not matched:
                continue

            request = RunRequest(
                run_id=f"run-{uuid.uuid4().hex[:12]}",
                workflow_name=definition.name,
                trigger_index=index,
                trigger_kind=event.kind,
                event=event,
                inputs=inputs or {},
            )
            logger.info(
                "Workflow '%s' triggered by %s (%s) -> %s",
                definition.name,
                event.kind.value,
                event.ref or "-",
                request.run_id,
            )
            requests.append(request)

        return requests

    def _schedule_due(self, spec: ScheduleTrigger, event: TriggerEvent, now: datetime) -> bool:
        # A schedule event may name the expression that fired it
        fired = event.payload.get("cron")
        for expression in spec.cron:
            if fired and fired != expression:
                continue
            if self._clock.is_due(expression, now):
                return True
        return False


# ── Filters ──────────────────────────────────────────────────────────────────


def _glob_any(value: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatchcase(value, p) for p in patterns)


def _branch_allowed(branch: str | None, include: list[str], ignore: list[str]) -> bool:
    if branch is None:
        return False
    if include and not _glob_any(branch, include):
        return False
    return not (ignore and _glob_any(branch, ignore))


def _push_matches(spec: PushTrigger, event: TriggerEvent) -> bool:
    tag = event.tag
    if tag is not None:
        return bool(spec.tags) and _glob_any(tag, spec.tags)
    if spec.tags and not spec.branches and not spec.branches_ignore:
        # Tag-only filter: branch pushes do not match
        return False
    return _branch_allowed(event.branch, spec.branches, spec.branches_ignore)


def _pull_request_matches(spec: PullRequestTrigger, event: TriggerEvent) -> bool:
    if spec.types:
        action = event.payload.get("action")
        if action not in spec.types:
            return False
    base = event.payload.get("base_ref") or event.branch
    if spec.branches:
        return base is not None and _glob_any(base, spec.branches)
    return True


def resolve_inputs(specs: dict[str, InputSpec], provided: dict[str, Any]) -> dict[str, Any]:
    """Validate provided inputs and fill defaults.

    Raises:
        TriggerInputError: unknown input, missing required input, or a value of
            the wrong type.
    """
    unknown = sorted(set(provided) - set(specs))
    if unknown:
        msg = f"Unknown inputs: {unknown}"
        raise TriggerInputError(msg)

    resolved: dict[str, Any] = {}
    for name, spec in specs.items():
        if name in provided and provided[name] is not None:
            resolved[name] = _coerce_input(name, spec, provided[name])
        elif spec.default is not None:
            resolved[name] = _coerce_input(name, spec, spec.default)
        elif spec.required:
            msg = f"Missing required input '{name}'"
            raise TriggerInputError(msg)
        else:
            resolved[name] = None
    return resolved


def _coerce_input(name: str, spec: InputSpec, value: Any) -> Any:
    match spec.type:
        case InputType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
        case InputType.NUMBER:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
            if isinstance(value, str):
                try:
                    return float(value) if "." in value else int(value)
                except ValueError:
                    pass
        case InputType.CHOICE:
            if str(value) in spec.options:
                return str(value)
            msg = f"Input '{name}' must be one of {spec.options}, got {value!r}"
            raise TriggerInputError(msg)
        case InputType.STRING:
            return str(value)

    msg = f"Input '{name}' expects a {spec.type.value}, got {value!r}"
    raise TriggerInputError(msg)
