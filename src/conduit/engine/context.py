"""Per-run state shared by the scheduler and its workers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from conduit.engine.expressions import ExpressionContext
from conduit.engine.models import JobInstance, JobState, TriggerEvent
from conduit.engine.secrets import REPOSITORY_SCOPE, SecretMasker, SecretResolver
from conduit.errors import SecretNotFound

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Process-wide state of one run.

    Created at run start and torn down at run completion, at which point
    resolved secrets are dropped. The cancellation flag is an asyncio.Event
    so workers can both poll it at step boundaries and await it.
    """

    run_id: str
    workflow_name: str
    event: TriggerEvent
    inputs: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    masker: SecretMasker = field(default_factory=SecretMasker)
    resolver: SecretResolver | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: str | None = None
    _secrets: dict[tuple[str, str], str | None] = field(default_factory=dict, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self.cancel_event.is_set():
            self.cancel_reason = reason
            self.cancel_event.set()

    async def resolve_secret(self, name: str, scope: str | None = None) -> str | None:
        """Resolve a secret lazily, environment scope first, then repository.

        Resolved values are registered with the masker before they are
        returned. Returns None when no scope has the secret.
        """
        scopes = [scope] if scope and scope != REPOSITORY_SCOPE else []
        scopes.append(REPOSITORY_SCOPE)
        for sc in scopes:
            key = (sc, name)
            if key in self._secrets:
                value = self._secrets[key]
                if value is not None:
                    return value
                continue
            if self.resolver is None:
                break
            try:
                value = await self.resolver.resolve(sc, name)
            except SecretNotFound:
                self._secrets[key] = None
                continue
            self.masker.add(value)
            self._secrets[key] = value
            return value
        return None

    def expression_roots(self) -> dict[str, Any]:
        """The run-wide context roots (``run``, ``event``, ``inputs``, ``env``)."""
        return {
            "run": {"id": self.run_id, "workflow": self.workflow_name},
            "event": {
                "kind": self.event.kind.value,
                "ref": self.event.ref,
                "branch": self.event.branch,
                "tag": self.event.tag,
                "payload": self.event.payload,
            },
            "inputs": dict(self.inputs),
            "env": dict(self.env),
        }

    def teardown(self) -> None:
        """Zero resolved secrets. The masker keeps its values for late log lines."""
        for key in list(self._secrets):
            self._secrets[key] = None
        self._secrets.clear()
        self.resolver = None


def dependency_status(upstream: Iterable[JobInstance]) -> str:
    """Aggregate dependency outcome: ``success``, ``failure`` or ``skipped``."""
    states = [inst.state for inst in upstream]
    if any(s == JobState.FAILED for s in states):
        return "failure"
    if any(s != JobState.SUCCEEDED for s in states):
        return "skipped"
    return "success"


def build_needs_context(upstream: Iterable[JobInstance]) -> dict[str, Any]:
    """``needs.<template>.result`` / ``needs.<template>.outputs`` for expressions.

    Instances of one matrixed template are folded together: the result is the
    worst state among them, outputs are merged in instance id order.
    """
    by_template: dict[str, list[JobInstance]] = {}
    for inst in upstream:
        by_template.setdefault(inst.template, []).append(inst)

    needs: dict[str, Any] = {}
    for template, instances in by_template.items():
        outputs: dict[str, str] = {}
        for inst in sorted(instances, key=lambda i: i.id):
            outputs.update(inst.outputs)
        needs[template] = {"result": _fold_result(instances), "outputs": outputs}
    return needs


_FOLD_ORDER = (
    (JobState.FAILED, "failure"),
    (JobState.CANCELLED, "cancelled"),
    (JobState.SKIPPED, "skipped"),
)


def _fold_result(instances: list[JobInstance]) -> str:
    for state, word in _FOLD_ORDER:
        if any(i.state == state for i in instances):
            return word
    return "success"


def job_expression_context(
    ctx: RunContext,
    instance: JobInstance,
    upstream: list[JobInstance],
    *,
    env: dict[str, str] | None = None,
) -> ExpressionContext:
    """Context for a job-level ``if`` condition."""
    roots = ctx.expression_roots()
    if env is not None:
        roots["env"] = env
    return ExpressionContext(
        status=dependency_status(upstream),
        cancelled=ctx.cancelled,
        needs=build_needs_context(upstream),
        matrix=dict(instance.matrix),
        job={"id": instance.id, "template": instance.template},
        **roots,
    )
