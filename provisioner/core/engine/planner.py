"""
Dependency planner — turn a step set into a linear execution order.

Pure: no I/O, no subprocess. The same step list always yields the
same plan. Ties between steps that are ready at the same time are
broken by declaration order, so a profile written as a straight
sequence runs exactly in that sequence.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from provisioner.core.errors import ProvisionError
from provisioner.core.models.step import StepDescriptor


class PlanningError(ProvisionError):
    """The declared steps cannot be planned. Nothing has executed."""


class UnknownDependencyError(PlanningError):
    def __init__(self, step_id: str, missing: str):
        self.step_id = step_id
        self.missing = missing
        super().__init__(f"Step '{step_id}' depends on unknown step '{missing}'")


class CyclicDependencyError(PlanningError):
    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        if len(cycle) == 1:
            msg = f"Step '{cycle[0]}' depends on itself"
        else:
            # a -> b reads "a depends on b"
            msg = "Dependency cycle detected: " + " -> ".join([*cycle, cycle[0]])
        super().__init__(msg)


class DuplicateStepError(PlanningError):
    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Duplicate step ID: {step_id}")


@dataclass(frozen=True)
class ProvisioningPlan:
    """An ordered, dependency-respecting sequence of steps.

    Computed once per run and never modified afterwards.
    """

    order: tuple[str, ...]
    steps: Mapping[str, StepDescriptor] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", MappingProxyType(dict(self.steps)))

    def __len__(self) -> int:
        return len(self.order)

    def __iter__(self) -> Iterator[StepDescriptor]:
        return (self.steps[sid] for sid in self.order)

    def position(self, step_id: str) -> int:
        """0-based position of a step in the plan."""
        return self.order.index(step_id)


def _find_cycle(remaining: list[str], deps: dict[str, tuple[str, ...]]) -> list[str]:
    """Walk dependency edges inside ``remaining`` until a node repeats.

    Every node left over by Kahn's algorithm has at least one
    dependency that is also left over, so the walk always closes.
    """
    pending = set(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = remaining[0]
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = next(d for d in deps[node] if d in pending)
    return path[seen[node]:]


def validate_steps(steps: Sequence[StepDescriptor]) -> None:
    """Check ids and references; raise the first problem found."""
    ids: set[str] = set()
    for step in steps:
        if step.id in ids:
            raise DuplicateStepError(step.id)
        ids.add(step.id)

    for step in steps:
        for dep in step.depends_on:
            if dep == step.id:
                raise CyclicDependencyError([step.id])
            if dep not in ids:
                raise UnknownDependencyError(step.id, dep)


def plan_steps(steps: Sequence[StepDescriptor]) -> ProvisioningPlan:
    """Topologically order ``steps`` (Kahn's algorithm, stable).

    Args:
        steps: The full step set, in declaration order.

    Returns:
        ProvisioningPlan whose order respects every ``depends_on`` edge.

    Raises:
        DuplicateStepError: two steps share an id.
        UnknownDependencyError: a ``depends_on`` id is not declared.
        CyclicDependencyError: the graph has a cycle (incl. self-loops).
    """
    validate_steps(steps)

    index = {s.id: i for i, s in enumerate(steps)}
    deps = {s.id: tuple(dict.fromkeys(s.depends_on)) for s in steps}

    in_degree: dict[str, int] = {sid: len(d) for sid, d in deps.items()}
    # dep → steps that depend on it
    adj: dict[str, list[str]] = {s.id: [] for s in steps}
    for sid, d in deps.items():
        for dep in d:
            adj[dep].append(sid)

    ready = [(index[sid], sid) for sid, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, node = heapq.heappop(ready)
        order.append(node)
        for successor in adj[node]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, (index[successor], successor))

    if len(order) < len(steps):
        planned = set(order)
        remaining = [s.id for s in steps if s.id not in planned]
        raise CyclicDependencyError(_find_cycle(remaining, deps))

    return ProvisioningPlan(order=tuple(order), steps={s.id: s for s in steps})
