"""Matrix expansion — one JobTemplate into N concrete assignments."""

from __future__ import annotations

import hashlib
import itertools
import json
import logging
from typing import Any

from conduit.engine.models import JobTemplate, MatrixSpec, MatrixValue
from conduit.errors import InvalidMatrix

logger = logging.getLogger(__name__)

Assignment = dict[str, MatrixValue]


class MatrixExpander:
    """Expands job matrices into ``(instance_id, assignment)`` pairs.

    Ordering is deterministic: the cartesian product follows axis declaration
    order, then ``include`` entries follow in declaration order. Identical
    workflows therefore always produce identical instance ids.
    """

    def expand(self, template: JobTemplate) -> list[tuple[str, Assignment]]:
        if template.matrix is None:
            return [(template.name, {})]

        combos = self.combinations(template.name, template.matrix)
        return list(zip(_instance_ids(template.name, combos), combos))

    def combinations(self, job: str, matrix: MatrixSpec) -> list[Assignment]:
        """Product of axes, minus excludes, plus includes."""
        for axis, values in matrix.axes.items():
            if not values:
                raise InvalidMatrix(job, f"axis '{axis}' has no values")

        for entry in matrix.exclude:
            unknown = sorted(set(entry) - set(matrix.axes))
            if unknown:
                raise InvalidMatrix(job, f"exclude references undeclared axes {unknown}")
            if not entry:
                raise InvalidMatrix(job, "empty exclude entry would remove every combination")

        combos: list[Assignment] = []
        if matrix.axes:
            names = list(matrix.axes)
            for values in itertools.product(*(matrix.axes[n] for n in names)):
                combo = dict(zip(names, values))
                if any(_matches(combo, entry) for entry in matrix.exclude):
                    continue
                combos.append(combo)

        for entry in matrix.include:
            extra = dict(entry)
            if not extra:
                raise InvalidMatrix(job, "empty include entry")
            if any(_same_assignment(extra, c) for c in combos):
                logger.debug("Job '%s': include %s duplicates an existing combination", job, extra)
                continue
            combos.append(extra)

        if not combos:
            raise InvalidMatrix(job, "expansion produced no combinations")
        return combos


def _matches(combo: Assignment, entry: dict[str, Any]) -> bool:
    return all(k in combo and _value_eq(combo[k], v) for k, v in entry.items())


def _value_eq(a: Any, b: Any) -> bool:
    # 1 == True in Python; matrix values must match by type as well
    return type(a) is type(b) and a == b


def _same_assignment(a: Assignment, b: Assignment) -> bool:
    return a.keys() == b.keys() and all(_value_eq(a[k], b[k]) for k in a)


def _label(assignment: Assignment) -> str:
    return "-".join(_render(v) for v in assignment.values())


def _render(value: MatrixValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _digest(assignment: Assignment) -> str:
    canonical = json.dumps(assignment, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:8]


def _instance_ids(job: str, combos: list[Assignment]) -> list[str]:
    labels = [_label(c) for c in combos]
    ids = []
    for combo, label in zip(combos, labels):
        if labels.count(label) > 1:
            label = _digest(combo)
        ids.append(f"{job}#{label}")
    return ids
