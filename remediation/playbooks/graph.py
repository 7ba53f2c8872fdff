"""Step dependency graph checks and wave planning."""

from typing import Dict, List, Optional, Sequence, Set

from .errors import GraphError
from .models import ConditionalBranchStep, RemediationPlaybook, StepBase


def _dependency_map(steps: Sequence[StepBase]) -> Dict[str, List[str]]:
    return {step.id: list(step.dependencies) for step in steps}


def find_cycle(steps: Sequence[StepBase]) -> Optional[List[str]]:
    """
    Find a dependency cycle among steps.

    Args:
        steps: Steps whose dependencies all resolve

    Returns:
        The cycle as a list of step ids (first id repeated at the end),
        or None if the graph is acyclic
    """
    deps = _dependency_map(steps)
    visiting: Set[str] = set()
    done: Set[str] = set()
    path: List[str] = []

    def visit(step_id: str) -> Optional[List[str]]:
        if step_id in done:
            return None
        if step_id in visiting:
            start = path.index(step_id)
            return path[start:] + [step_id]

        visiting.add(step_id)
        path.append(step_id)
        for dep in deps.get(step_id, []):
            cycle = visit(dep)
            if cycle:
                return cycle
        path.pop()
        visiting.discard(step_id)
        done.add(step_id)
        return None

    for step in steps:
        cycle = visit(step.id)
        if cycle:
            return cycle
    return None


def validate_step_graph(steps: Sequence[StepBase], section: str = "steps") -> None:
    """
    Validate that steps form a well-formed DAG.

    Args:
        steps: Steps to check
        section: Name of the section, used in error messages

    Raises:
        GraphError: On duplicate ids, unknown dependencies, cycles, or branch
            targets that are unknown or not downstream of their branch step
    """
    seen: Set[str] = set()
    for step in steps:
        if step.id in seen:
            raise GraphError.duplicate_step(step.id, section)
        seen.add(step.id)

    for step in steps:
        for dep in step.dependencies:
            if dep == step.id:
                raise GraphError.cyclic([step.id, step.id])
            if dep not in seen:
                raise GraphError.dangling_reference(step.id, dep, seen)

        if isinstance(step, ConditionalBranchStep):
            for field in ("true_step", "false_step"):
                target = getattr(step.config, field)
                if target is not None and target not in seen:
                    raise GraphError.dangling_reference(
                        step.id, target, seen, field=f"config.{field}"
                    )

    cycle = find_cycle(steps)
    if cycle:
        raise GraphError.cyclic(cycle)

    deps = _dependency_map(steps)
    for step in steps:
        if not isinstance(step, ConditionalBranchStep):
            continue
        for field in ("true_step", "false_step"):
            target = getattr(step.config, field)
            if target is not None and step.id not in _ancestors(deps, target):
                raise GraphError.unordered_branch_target(step.id, target, field)


def _ancestors(deps: Dict[str, List[str]], step_id: str) -> Set[str]:
    """Every step ``step_id`` depends on, directly or transitively."""
    found: Set[str] = set()
    stack = list(deps.get(step_id, []))
    while stack:
        current = stack.pop()
        if current not in found:
            found.add(current)
            stack.extend(deps.get(current, []))
    return found


def validate_playbook_graph(playbook: RemediationPlaybook) -> None:
    """
    Validate a playbook's step DAG and its rollback plan.

    Rollback steps run sequentially, so only their ids must be unique.
    """
    validate_step_graph(playbook.steps)

    seen: Set[str] = set()
    for step in playbook.rollback_plan:
        if step.id in seen:
            raise GraphError.duplicate_step(step.id, "rollback_plan")
        seen.add(step.id)


def execution_waves(steps: Sequence[StepBase]) -> List[List[str]]:
    """
    Group steps into dependency waves (Kahn levels).

    Every step in wave N depends only on steps in waves < N. Within a wave,
    steps keep their declared order.

    Args:
        steps: A validated, acyclic step list

    Returns:
        List of waves, each a list of step ids

    Raises:
        GraphError: If the steps contain a cycle
    """
    remaining = {step.id: set(step.dependencies) for step in steps}
    order = [step.id for step in steps]
    placed: Set[str] = set()
    waves: List[List[str]] = []

    while remaining:
        wave = [sid for sid in order if sid in remaining and remaining[sid] <= placed]
        if not wave:
            raise GraphError.cyclic(find_cycle(steps) or sorted(remaining))
        waves.append(wave)
        for sid in wave:
            placed.add(sid)
            del remaining[sid]

    return waves


def dependents_of(steps: Sequence[StepBase], step_id: str) -> List[str]:
    """Ids of steps that directly depend on the given step."""
    return [step.id for step in steps if step_id in step.dependencies]
